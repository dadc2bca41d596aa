"""High-water-mark trim coordination.

Each replica advertises a watermark: the lowest log offset it still
needs for its own recovery. The group-wide safe-trim frontier is the
minimum watermark over the active members; it is only defined once
every active member has advertised one. Voted-out replicas are
forgotten so their stale watermark no longer holds trimming back.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, Optional


class Tracker:
    """Latest watermark observed from each member; safe for concurrent use."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._marks: Dict[bytes, int] = {}

    def update(self, replica: bytes, offset: int) -> bool:
        """Record ``offset`` for ``replica`` if it advances; return whether it did.

        Watermarks only move forward; a retreat is silently ignored.
        """
        key = bytes(replica)
        with self._lock:
            existing = self._marks.get(key)
            if existing is not None and offset <= existing:
                return False
            self._marks[key] = offset
            return True

    def get(self, replica: bytes) -> Optional[int]:
        """The latest watermark of ``replica``, or None if never observed."""
        with self._lock:
            return self._marks.get(bytes(replica))

    def forget(self, replica: bytes) -> None:
        """Drop ``replica``, e.g. once it has been voted out."""
        with self._lock:
            self._marks.pop(bytes(replica), None)

    def safe_frontier(self, active: Optional[Iterable[bytes]]) -> Optional[int]:
        """Minimum watermark over ``active``.

        Returns None when ``active`` is empty or any active member has
        not yet advertised a watermark: nothing is safe to trim then.
        """
        members = [bytes(r) for r in (active or ())]
        if not members:
            return None
        with self._lock:
            if any(r not in self._marks for r in members):
                return None
            return min(self._marks[r] for r in members)

    def snapshot(self) -> Dict[bytes, int]:
        """A copy of every (replica, watermark) pair."""
        with self._lock:
            return dict(self._marks)