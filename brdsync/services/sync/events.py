"""In-process publish/subscribe channel for sync status events."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Set

from brdsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

JOB_CREATED = "sync:job_created"
JOB_STARTED = "sync:job_started"
JOB_PROGRESS = "sync:job_progress"
JOB_COMPLETED = "sync:job_completed"
JOB_FAILED = "sync:job_failed"
CONFLICT_DETECTED = "sync:conflict_detected"
CONFLICT_RESOLVED = "sync:conflict_resolved"


@dataclass
class SyncEvent:
    type: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class SyncEventChannel:
    """
    Fan sync events out to subscribers.

    Every subscriber owns a bounded queue; when a slow subscriber's queue is
    full its oldest event is dropped. A short history of recent events is
    kept for late joiners.
    """

    def __init__(self, buffer_size: int = 100, subscriber_queue_size: int = 100):
        self._subscribers: Set[asyncio.Queue] = set()
        self._recent: Deque[SyncEvent] = deque(maxlen=buffer_size)
        self._queue_size = subscriber_queue_size

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        logger.debug(f"Sync event subscriber added ({len(self._subscribers)} total)")
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, **payload: Any) -> SyncEvent:
        event = SyncEvent(type=event_type, payload=payload)
        self._recent.append(event)
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
        return event

    def recent(self, limit: int = 50) -> List[SyncEvent]:
        return list(self._recent)[-limit:]
