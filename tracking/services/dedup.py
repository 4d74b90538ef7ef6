# backend/tracking/services/dedup.py
import logging
import threading
import time
from typing import Callable, Dict, Set

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class EventDeduplicator:
    """
    In-memory set of event IDs that were already delivered, with a rolling TTL.

    Besides admitted IDs it tracks IDs whose delivery is in flight, so the
    check and the later admit behave as one atomic step: a second send of the
    same ID is rejected while the first one is still talking to Meta.
    Records are lost on restart; Meta deduplicates on its side as well.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._admitted: Dict[str, float] = {}  # event_id -> inserted_at
        self._pending: Set[str] = set()
        self._lock = threading.Lock()

    def _is_live(self, event_id: str, now: float) -> bool:
        inserted_at = self._admitted.get(event_id)
        return inserted_at is not None and now - inserted_at <= self.ttl_seconds

    def is_duplicate(self, event_id: str) -> bool:
        with self._lock:
            return self._is_live(event_id, self._clock())

    def reserve(self, event_id: str) -> bool:
        """Claims an ID for delivery. False if it is admitted or already in flight."""
        with self._lock:
            if event_id in self._pending or self._is_live(event_id, self._clock()):
                return False
            self._pending.add(event_id)
            return True

    def release(self, event_id: str) -> None:
        """Drops an in-flight claim without admitting the ID (failed delivery)."""
        with self._lock:
            self._pending.discard(event_id)

    def admit(self, event_id: str) -> None:
        with self._lock:
            self._pending.discard(event_id)
            self._admitted[event_id] = self._clock()

    def sweep(self) -> int:
        """Removes expired records in one pass. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [eid for eid, inserted_at in self._admitted.items() if now - inserted_at > self.ttl_seconds]
            for eid in expired:
                del self._admitted[eid]
        if expired:
            logger.debug(f"Dedup sweep removed {len(expired)} expired event IDs, {len(self._admitted)} remain.")
        return len(expired)

    def __len__(self) -> int:
        return len(self._admitted)

    def __contains__(self, event_id: str) -> bool:
        return self.is_duplicate(event_id)
