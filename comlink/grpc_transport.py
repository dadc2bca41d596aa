"""Network transport over gRPC.

Every replica runs a gRPC server that accepts frames from its peers,
and dials peers lazily as a client when it sends. Each send is one
unary call; connections are cached per peer. A failed send is not
retried, because recovery of lost messages belongs to a higher layer.

Once a cluster id has been installed, outgoing calls carry it as
metadata and incoming calls with a missing or different cluster id are
rejected. That keeps two clusters whose conversation ids overlap from
merging by accident. Connections are unencrypted.
"""

from __future__ import annotations

import threading
from concurrent import futures
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import grpc

from comlink.transport import (
    Channel,
    ClosedError,
    Inbound,
    Network,
    TransportError,
    UnknownPeerError,
)
from comlink.wire import WireError, decode_frame, encode_frame

CLUSTER_ID_METADATA_KEY = "x-comlink-cluster-id"
"""Metadata key holding the sender's hex-encoded cluster id."""

EXEMPT_HANDSHAKE_METHODS = frozenset({"/comlink.v1.Cluster/Join"})
"""Full method names that skip the cluster id check.

A joining replica calls Join to learn the cluster id, so it cannot
send that id with the call.
"""

_SEND_METHOD = "/comlink.v1.Transport/Send"
_RECV_BUFFER = 1024
_MAX_WORKERS = 16
_PUT_POLL = 0.1
_STOP_GRACE = 1.0


@dataclass(frozen=True)
class Peer:
    """Routing-table entry: a replica id and its network address."""

    id: bytes
    addr: str


def _deny(message: str) -> grpc.RpcMethodHandler:
    def handler(request, context):
        context.abort(grpc.StatusCode.PERMISSION_DENIED, message)

    return grpc.unary_unary_rpc_method_handler(handler)


class _ClusterIdInterceptor(grpc.ServerInterceptor):
    def __init__(self, network: "GrpcNetwork") -> None:
        self._network = network

    def intercept_service(self, continuation, handler_call_details):
        if handler_call_details.method in EXEMPT_HANDSHAKE_METHODS:
            return continuation(handler_call_details)
        expected = self._network._cluster_id_hex()
        if not expected:
            # No cluster id installed yet: accept everything.
            return continuation(handler_call_details)
        values = [
            value
            for key, value in (handler_call_details.invocation_metadata or ())
            if key == CLUSTER_ID_METADATA_KEY
        ]
        if not values:
            return _deny(f"grpc: peer did not send {CLUSTER_ID_METADATA_KEY} metadata")
        if values[0] != expected:
            return _deny(
                f"grpc: cluster id mismatch (peer={values[0]}, server={expected})"
            )
        return continuation(handler_call_details)


class GrpcNetwork(Network):
    """A :class:`~comlink.transport.Network` backed by gRPC over TCP.

    Build it with :func:`listen`, register any extra handlers, then call
    :meth:`start`.
    """

    def __init__(self, local: bytes, listen_addr: str, peers: Iterable[Peer]) -> None:
        self._local = bytes(local)
        self._inbox: Channel[Inbound] = Channel(_RECV_BUFFER)
        self._lock = threading.Lock()
        self._cluster_hex = ""
        self._peers: Dict[bytes, str] = {bytes(p.id): p.addr for p in peers}
        self._conns: Dict[bytes, grpc.Channel] = {}
        self._started = False
        self._closed = False

        self._server = grpc.server(
            futures.ThreadPoolExecutor(max_workers=_MAX_WORKERS),
            interceptors=[_ClusterIdInterceptor(self)],
        )
        self._server.add_generic_rpc_handlers(
            (
                grpc.method_handlers_generic_handler(
                    "comlink.v1.Transport",
                    {"Send": grpc.unary_unary_rpc_method_handler(self._handle_send)},
                ),
            )
        )
        try:
            port = self._server.add_insecure_port(listen_addr)
        except RuntimeError as exc:
            raise TransportError(f"grpc: listen {listen_addr}: {exc}") from exc
        if not port:
            raise TransportError(f"grpc: listen {listen_addr}: could not bind")
        host = listen_addr.rsplit(":", 1)[0] if ":" in listen_addr else listen_addr
        self._addr = f"{host or '[::]'}:{port}"

    def start(self) -> None:
        """Begin serving. Later calls, and calls after close, do nothing."""
        with self._lock:
            if self._started or self._closed:
                return
            self._started = True
        self._server.start()

    def register_handlers(self, handlers: Iterable[grpc.GenericRpcHandler]) -> None:
        """Add extra services to the shared server; only before :meth:`start`."""
        with self._lock:
            if self._started:
                raise TransportError("grpc: cannot register handlers after start")
        self._server.add_generic_rpc_handlers(tuple(handlers))

    def set_cluster_id(self, cluster_id: bytes) -> None:
        """Install the cluster id sent on and required of every call."""
        with self._lock:
            self._cluster_hex = bytes(cluster_id).hex()

    def _cluster_id_hex(self) -> str:
        with self._lock:
            return self._cluster_hex

    def addr(self) -> str:
        """The address actually bound, including an OS-assigned port."""
        return self._addr

    def add_peer(self, replica: bytes, addr: str) -> None:
        """Add or re-point a route; a changed address drops the cached connection."""
        key = bytes(replica)
        stale: Optional[grpc.Channel] = None
        with self._lock:
            if self._closed:
                return
            existing = self._peers.get(key)
            if existing is not None and existing != addr:
                stale = self._conns.pop(key, None)
            self._peers[key] = addr
        if stale is not None:
            stale.close()

    def remove_peer(self, replica: bytes) -> None:
        """Drop a route and its cached connection."""
        key = bytes(replica)
        with self._lock:
            self._peers.pop(key, None)
            stale = self._conns.pop(key, None)
        if stale is not None:
            stale.close()

    def local(self) -> bytes:
        return self._local

    def recv(self) -> Channel[Inbound]:
        return self._inbox

    def _outgoing_metadata(self, method: str):
        if method in EXEMPT_HANDSHAKE_METHODS:
            return None
        cluster_hex = self._cluster_id_hex()
        if not cluster_hex:
            return None
        return ((CLUSTER_ID_METADATA_KEY, cluster_hex),)

    def send(self, peer: Optional[bytes], payload: bytes, timeout: Optional[float] = None) -> None:
        """Dial ``peer`` if needed and hand ``payload`` to its server."""
        if peer is None:
            raise UnknownPeerError()
        key = bytes(peer)
        with self._lock:
            if self._closed:
                raise ClosedError()
            addr = self._peers.get(key)
            if addr is None:
                raise UnknownPeerError()
            conn = self._conns.get(key)

        if conn is None:
            fresh = grpc.insecure_channel(addr)
            with self._lock:
                existing = self._conns.get(key)
                if existing is not None or self._closed:
                    conn = existing
                else:
                    self._conns[key] = fresh
                    conn = fresh
            if conn is not fresh:
                fresh.close()
            if conn is None:
                raise ClosedError()

        call = conn.unary_unary(_SEND_METHOD)
        try:
            call(
                encode_frame(self._local, bytes(payload)),
                timeout=timeout,
                metadata=self._outgoing_metadata(_SEND_METHOD),
            )
        except grpc.RpcError as exc:
            code = exc.code() if hasattr(exc, "code") else None
            details = exc.details() if hasattr(exc, "details") else str(exc)
            name = code.name if code is not None else "UNKNOWN"
            raise TransportError(
                f"grpc: send to {addr}: code = {name} desc = {details}"
            ) from exc

    def _handle_send(self, request: bytes, context) -> bytes:
        try:
            frame = decode_frame(request)
        except WireError as exc:
            context.abort(grpc.StatusCode.INVALID_ARGUMENT, str(exc))
        item = Inbound(sender=frame.sender, payload=frame.payload)
        while context.is_active():
            try:
                self._inbox.put(item, timeout=_PUT_POLL)
                return b""
            except TimeoutError:
                continue
            except ClosedError:
                context.abort(grpc.StatusCode.UNAVAILABLE, "transport: closed")
        context.abort(grpc.StatusCode.CANCELLED, "grpc: caller went away")

    def close(self) -> None:
        """Stop the server, close outgoing connections and the receive channel."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conns = list(self._conns.values())
            self._conns = {}
        for conn in conns:
            conn.close()
        self._server.stop(_STOP_GRACE).wait()
        self._inbox.close()


def listen(local: Optional[bytes], listen_addr: str, peers: Optional[Iterable[Peer]] = None) -> GrpcNetwork:
    """Bind a gRPC network to ``listen_addr`` without serving yet.

    ``listen_addr`` may use port 0 for an OS-assigned port; read it back
    with :meth:`GrpcNetwork.addr`.
    """
    if local is None:
        raise ValueError("grpc: nil local replica id")
    return GrpcNetwork(local, listen_addr, peers or ())