"""
Change-notification channel.

Every state-mutating operation publishes a ChangeEvent keyed by session id.
Presentation layers (or the alert webhook) subscribe; the engine never
knows who is listening.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from database import utcnow

logger = logging.getLogger("campaigns.events")


class EventKind:
    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    SESSION_FAILED = "session_failed"
    SESSION_COMPLETED = "session_completed"
    SESSION_DELETED = "session_deleted"
    EMAILS_GENERATED = "emails_generated"
    EMAILS_REVIEWED = "emails_reviewed"
    EMAIL_UPDATED = "email_updated"
    SCHEDULE_CHANGED = "schedule_changed"
    EMAIL_SENT = "email_sent"
    SEND_JOB_FAILED = "send_job_failed"
    FLOW_UPDATED = "flow_updated"
    CONFIG_UPDATED = "config_updated"


@dataclass
class ChangeEvent:
    session_id: Optional[str]
    organization_id: str
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    at: Any = field(default_factory=utcnow)


class ChangeNotifier:
    def __init__(self):
        self._subscribers: List[Callable] = []
        self._pending: set = set()

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Register a sync or async callable. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, session_id: Optional[str], organization_id: str, kind: str, **data) -> ChangeEvent:
        event = ChangeEvent(session_id=session_id, organization_id=organization_id, kind=kind, data=data)
        logger.debug(f"change_event: {kind} session={session_id}")

        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as e:
                logger.error(f"subscriber_error: {kind} {e}", exc_info=True)
        return event

    def _schedule(self, awaitable):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("async subscriber skipped: no running event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._guard(awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _guard(awaitable):
        try:
            await awaitable
        except Exception as e:
            logger.error(f"async_subscriber_error: {e}", exc_info=True)

    async def drain(self):
        """Wait for async subscribers scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class EventRecorder:
    """Subscriber that keeps every event in memory."""

    def __init__(self):
        self.events: List[ChangeEvent] = []

    def __call__(self, event: ChangeEvent):
        self.events.append(event)

    def kinds(self, session_id: str = None) -> List[str]:
        return [e.kind for e in self.events if session_id is None or e.session_id == session_id]
