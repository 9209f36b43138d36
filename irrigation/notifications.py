"""
Domain event hub consumed by external notifiers (email, Telegram, dashboards).
"""

import asyncio
import inspect
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

SCHEDULE_FIRED = "scheduleFired"
SCHEDULE_SKIPPED = "scheduleSkipped"
ZONE_ERROR = "zoneError"
EMERGENCY_STOP = "emergencyStop"


class NotificationHub:
    """
    Sequences domain events, keeps a bounded backlog for polling clients and
    fans each event out to registered handlers. Formatting and delivery are
    left entirely to the handlers.
    """

    def __init__(self, max_queue_size: int = 1000):
        self.sequence_id = 0
        self.message_queue: Deque[Dict[str, Any]] = deque(maxlen=max_queue_size)
        self.handlers: List[Callable] = []
        # Async handler runs still in flight; held so they are not collected early.
        self._pending: Set["asyncio.Task"] = set()

    def next_sequence(self) -> int:
        """Get next sequence ID."""
        self.sequence_id += 1
        return self.sequence_id

    def create_message(self, event_type: str, payload: dict) -> Dict[str, Any]:
        return {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sequence_id": self.next_sequence(),
            "payload": payload,
        }

    def register_handler(self, handler: Callable) -> None:
        """Register a callable (sync or async) receiving every message."""
        self.handlers.append(handler)

    def emit(self, event_type: str, payload: dict) -> Dict[str, Any]:
        message = self.create_message(event_type, payload)
        self.message_queue.append(message)
        logger.info(
            "notify.emit type=%s sequence=%s", event_type, message["sequence_id"]
        )

        for handler in self.handlers:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.exception(f"Notification handler failed: {e}")
        return message

    def _handler_done(self, task: "asyncio.Task") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("notify.handler_failed error=%s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for async handler runs that are still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def recent(
        self, since_sequence: int = 0, event_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Messages newer than since_sequence, oldest first."""
        return [
            message
            for message in self.message_queue
            if message["sequence_id"] > since_sequence
            and (event_type is None or message["event_type"] == event_type)
        ]
