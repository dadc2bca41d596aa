"""Deterministic in-process transport for tests.

A single :class:`Scheduler` routes messages between any number of
connected networks. Sends queue synchronously; callers drive delivery
with :meth:`Scheduler.step` or :meth:`Scheduler.run_all`. With a fixed
seed the same sequence of calls yields the same interleaving, including
injected loss, reordering and partitions.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from comlink.transport import (
    Channel,
    ClosedError,
    Inbound,
    Network,
    TransportError,
    UnknownPeerError,
)

PartitionRule = Callable[[bytes, bytes], bool]
"""Returns True when a message from the first replica to the second is blocked."""

_RECV_BUFFER = 1024


@dataclass(frozen=True)
class _PendingMessage:
    sender: bytes
    target: bytes
    payload: bytes


class Scheduler:
    """Central router for the in-process transport."""

    def __init__(self, seed: int = 0) -> None:
        self._lock = threading.Lock()
        self._rng = random.Random(seed)
        self._pending: List[_PendingMessage] = []
        self._networks: Dict[bytes, MemoryNetwork] = {}
        self._partitions: List[PartitionRule] = []
        self._drop_prob = 0.0
        self._reorder = False
        self._closed = False

    def connect(self, replica: bytes) -> "MemoryNetwork":
        """Register ``replica`` and return its network handle."""
        key = bytes(replica)
        with self._lock:
            if self._closed:
                raise ClosedError()
            if key in self._networks:
                raise TransportError("memory: replica already connected")
            network = MemoryNetwork(self, key)
            self._networks[key] = network
            return network

    def pending(self) -> int:
        """Number of queued, undelivered messages."""
        with self._lock:
            return len(self._pending)

    def set_drop_prob(self, p: float) -> None:
        """Set the per-message drop probability, applied at delivery."""
        with self._lock:
            self._drop_prob = p

    def set_reorder(self, enabled: bool) -> None:
        """Choose random (True) or FIFO (False) delivery order."""
        with self._lock:
            self._reorder = enabled

    def add_partition(self, rule: PartitionRule) -> None:
        """Install a rule that drops matching messages; rules are OR'd."""
        with self._lock:
            self._partitions.append(rule)

    def clear_partitions(self) -> None:
        """Remove every partition rule."""
        with self._lock:
            self._partitions = []

    def step(self) -> bool:
        """Deliver or drop one queued message; False when the queue is empty."""
        with self._lock:
            if not self._pending:
                return False
            index = 0
            if self._reorder and len(self._pending) > 1:
                index = self._rng.randrange(len(self._pending))
            msg = self._pending.pop(index)
            dropped = self._should_drop(msg)
            target = self._networks.get(msg.target)
        if dropped or target is None:
            return True
        # A receiver that is not keeping up loses the message rather
        # than stalling the scheduler.
        target._inbox.offer(Inbound(sender=msg.sender, payload=msg.payload))
        return True

    def run_all(self) -> None:
        """Deliver until the queue is empty, including messages queued meanwhile."""
        while self.step():
            pass

    def _should_drop(self, msg: _PendingMessage) -> bool:
        if self._drop_prob > 0 and self._rng.random() < self._drop_prob:
            return True
        return any(rule(msg.sender, msg.target) for rule in self._partitions)

    def _enqueue(self, sender: bytes, peer: bytes, payload: bytes) -> None:
        with self._lock:
            if self._closed:
                raise ClosedError()
            if peer not in self._networks:
                raise UnknownPeerError()
            self._pending.append(_PendingMessage(sender, peer, payload))

    def _detach(self, replica: bytes, network: "MemoryNetwork") -> None:
        with self._lock:
            if self._networks.get(replica) is network:
                del self._networks[replica]

    def close(self) -> None:
        """Shut down and close every connected network's receive channel."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._pending = []
            networks = list(self._networks.values())
            self._networks = {}
        for network in networks:
            network._mark_closed()

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class MemoryNetwork(Network):
    """Per-replica handle issued by :meth:`Scheduler.connect`."""

    def __init__(self, scheduler: Scheduler, replica: bytes) -> None:
        self._scheduler = scheduler
        self._replica = bytes(replica)
        self._inbox: Channel[Inbound] = Channel(_RECV_BUFFER)
        self._lock = threading.Lock()
        self._closed = False

    def local(self) -> bytes:
        return self._replica

    def send(self, peer: Optional[bytes], payload: bytes, timeout: Optional[float] = None) -> None:
        """Queue ``payload`` for ``peer``. Never blocks, so ``timeout`` is unused."""
        with self._lock:
            if self._closed:
                raise ClosedError()
        if peer is None:
            raise UnknownPeerError()
        self._scheduler._enqueue(self._replica, bytes(peer), bytes(payload))

    def recv(self) -> Channel[Inbound]:
        return self._inbox

    def close(self) -> None:
        """Detach from the scheduler and close the receive channel."""
        self._mark_closed()
        self._scheduler._detach(self._replica, self)

    def _mark_closed(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._inbox.close()