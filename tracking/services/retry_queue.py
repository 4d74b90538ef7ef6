# backend/tracking/services/retry_queue.py
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional

from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)


@dataclass
class QueuedEvent:
    event_name: str
    event_data: Dict[str, Any]
    event_id: str
    request_context: Optional[RequestContext] = None
    attempts: int = 1
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RetryQueue:
    """
    FIFO of events whose delivery failed after all retries.

    Bounded: when full, the oldest event is dropped and logged. Only the
    owning MetaCAPIService mutates it.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._events: Deque[QueuedEvent] = deque()

    def enqueue(self, event: QueuedEvent) -> None:
        if self.max_size and len(self._events) >= self.max_size:
            dropped = self._events.popleft()
            logger.error(
                f"Retry queue full ({self.max_size}). Dropping oldest event {dropped.event_id} ({dropped.event_name})."
            )
        self._events.append(event)

    def take_all(self) -> List[QueuedEvent]:
        """Removes and returns the current contents as a snapshot."""
        snapshot = list(self._events)
        self._events.clear()
        return snapshot

    def extend(self, events: Iterable[QueuedEvent]) -> None:
        for event in events:
            self.enqueue(event)

    def snapshot(self) -> List[QueuedEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)
