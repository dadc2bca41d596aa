"""Abstract network surface shared by every comlink transport.

A transport carries opaque byte payloads addressed by replica id (raw
bytes). It never interprets message structure; higher layers marshal
their envelopes before sending and unmarshal them on receipt.
"""

from __future__ import annotations

import abc
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Generic, Iterator, Optional, TypeVar

T = TypeVar("T")


class TransportError(Exception):
    """Base class for transport failures."""


class UnknownPeerError(TransportError):
    """The peer is not reachable from this network."""

    def __init__(self, message: str = "transport: unknown peer") -> None:
        super().__init__(message)


class ClosedError(TransportError):
    """The network (or channel) has been closed."""

    def __init__(self, message: str = "transport: closed") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class Inbound:
    """A message received from a peer."""

    sender: bytes
    payload: bytes


class Channel(Generic[T]):
    """A thread-safe, closable FIFO queue.

    ``maxsize`` bounds the number of buffered items; zero or a negative
    value means unbounded. Items buffered before ``close`` remain
    readable; once drained, ``get`` raises :class:`ClosedError`.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._maxsize = maxsize
        self._items: Deque[T] = deque()
        self._cond = threading.Condition()
        self._is_closed = False

    def _full(self) -> bool:
        return self._maxsize > 0 and len(self._items) >= self._maxsize

    def offer(self, item: T) -> bool:
        """Enqueue without blocking; return False if full or closed."""
        with self._cond:
            if self._is_closed or self._full():
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def put(self, item: T, timeout: Optional[float] = None) -> None:
        """Enqueue, waiting for room up to ``timeout`` seconds."""
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._is_closed or not self._full(), timeout
            )
            if not ready:
                raise TimeoutError("channel: put timed out")
            if self._is_closed:
                raise ClosedError()
            self._items.append(item)
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> T:
        """Dequeue, waiting up to ``timeout`` seconds (0 = do not wait).

        Raises TimeoutError when nothing arrives in time and
        ClosedError when the channel is closed and drained.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: bool(self._items) or self._is_closed, timeout
            )
            if not ready:
                raise TimeoutError("channel: get timed out")
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            raise ClosedError()

    def close(self) -> None:
        """Close the channel; idempotent."""
        with self._cond:
            self._is_closed = True
            self._cond.notify_all()

    def closed(self) -> bool:
        with self._cond:
            return self._is_closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.get()
            except ClosedError:
                return


class Network(abc.ABC):
    """Per-replica view of the network.

    ``send`` returns once the payload has been handed to the underlying
    transport, not when the peer has processed it.
    """

    @abc.abstractmethod
    def local(self) -> bytes:
        """The replica id this network represents."""

    @abc.abstractmethod
    def send(self, peer: bytes, payload: bytes, timeout: Optional[float] = None) -> None:
        """Deliver ``payload`` to ``peer``."""

    @abc.abstractmethod
    def recv(self) -> Channel[Inbound]:
        """Channel of incoming messages; closed when the network closes."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the network and close its receive channel."""

    def __enter__(self) -> "Network":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()