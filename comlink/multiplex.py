"""Several conversations sharing one underlying network.

Each conversation gets its own :class:`MultiplexView`, which behaves
like a :class:`~comlink.transport.Network`. Outgoing payloads are
wrapped in a multiplex frame that carries the conversation id. On
receipt the frame is decoded and the inner payload goes to the view
registered for that conversation.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional

from comlink.transport import Channel, ClosedError, Inbound, Network
from comlink.wire import WireError, decode_multiplex_frame, encode_multiplex_frame

_DEFAULT_BUF_SIZE = 256
_POLL_INTERVAL = 0.02


class Multiplex:
    """Hosts many conversation views on one underlying network.

    The underlying network is not closed by :meth:`close`; the caller
    owns it.
    """

    def __init__(self, underlying: Network, buf_size: int = 0) -> None:
        self._underlying = underlying
        self._buf_size = buf_size if buf_size > 0 else _DEFAULT_BUF_SIZE
        self._lock = threading.Lock()
        self._views: Dict[bytes, MultiplexView] = {}
        self._stopped = threading.Event()
        self._closed = False
        self._pump_thread = threading.Thread(
            target=self._pump, name="comlink-multiplex", daemon=True
        )
        self._pump_thread.start()

    def for_conversation(self, conversation_id: bytes) -> "MultiplexView":
        """Return the view bound to ``conversation_id``, creating it if needed."""
        key = bytes(conversation_id)
        with self._lock:
            if self._closed:
                raise ClosedError("multiplex: closed")
            view = self._views.get(key)
            if view is None:
                view = MultiplexView(self, key, self._buf_size)
                self._views[key] = view
            return view

    def local(self) -> bytes:
        """The underlying network's replica id."""
        return self._underlying.local()

    def close(self) -> None:
        """Stop dispatching and close every view's receive channel."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            views = list(self._views.values())
            self._views = {}
            self._stopped.set()
        if threading.current_thread() is not self._pump_thread:
            self._pump_thread.join()
        for view in views:
            view._mark_closed()

    def __enter__(self) -> "Multiplex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _send(self, peer: bytes, wrapped: bytes, timeout: Optional[float]) -> None:
        self._underlying.send(peer, wrapped, timeout)

    def _detach(self, key: bytes, view: "MultiplexView") -> None:
        with self._lock:
            if self._views.get(key) is view:
                del self._views[key]

    def _pump(self) -> None:
        inbox = self._underlying.recv()
        while not self._stopped.is_set():
            try:
                inbound = inbox.get(timeout=_POLL_INTERVAL)
            except TimeoutError:
                continue
            except ClosedError:
                return
            try:
                frame = decode_multiplex_frame(inbound.payload)
            except WireError:
                continue
            with self._lock:
                view = self._views.get(frame.conversation_id)
            if view is None:
                continue
            # A full view buffer drops the message rather than stalling
            # every other conversation.
            view._inbox.offer(Inbound(sender=inbound.sender, payload=frame.payload))


class MultiplexView(Network):
    """A network view bound to one conversation id."""

    def __init__(self, multiplex: Multiplex, conversation_id: bytes, buf_size: int) -> None:
        self._multiplex = multiplex
        self._conversation_id = bytes(conversation_id)
        self._inbox: Channel[Inbound] = Channel(buf_size)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def conversation_id(self) -> bytes:
        return self._conversation_id

    def local(self) -> bytes:
        return self._multiplex.local()

    def send(self, peer: bytes, payload: bytes, timeout: Optional[float] = None) -> None:
        """Wrap ``payload`` with the conversation id and send it."""
        with self._lock:
            if self._closed:
                raise ClosedError()
        wrapped = encode_multiplex_frame(self._conversation_id, payload)
        self._multiplex._send(peer, wrapped, timeout)

    def recv(self) -> Channel[Inbound]:
        return self._inbox

    def close(self) -> None:
        """Detach from the multiplex; later sends raise ClosedError."""
        self._multiplex._detach(self._conversation_id, self)
        self._mark_closed()

    def _mark_closed(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._inbox.close()