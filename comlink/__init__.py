"""Transports, conversation multiplexing and trim coordination for replicated conversations."""

__version__ = "0.1.0"

__all__ = ["grpc_transport", "memory", "multiplex", "transport", "trim", "wire"]