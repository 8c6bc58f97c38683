"""Contact timeline: records activity events and dispatches them to triggers."""

import contextvars

from core.logging import get_logger
from models.automation import ActivityEvent, IngestResult
from .repository import AutomationRepository
from .triggers import TriggerMatcher

logger = get_logger(__name__)

# Events raised while handling another event (list nodes feeding back into
# triggers) nest inside it; past this depth they are recorded but not dispatched
MAX_CASCADE_DEPTH = 8

_cascade_depth: contextvars.ContextVar[int] = contextvars.ContextVar(
    'timeline_cascade_depth', default=0
)


class TimelineService:
    """Single entry point for activity events."""

    def __init__(self, repository: AutomationRepository, matcher: TriggerMatcher):
        self.repository = repository
        self.matcher = matcher

    async def record(self, event: ActivityEvent) -> IngestResult:
        """Persist an activity event, then enroll its contact where triggers match."""
        stored = await self.repository.insert_timeline_event(event)

        depth = _cascade_depth.get()
        if depth >= MAX_CASCADE_DEPTH:
            logger.warning("Event cascade too deep, not dispatching",
                          kind=event.kind, contact_email=event.contact_email, depth=depth)
            return IngestResult(event=stored)

        token = _cascade_depth.set(depth + 1)
        try:
            runs = await self.matcher.on_event(event)
        finally:
            _cascade_depth.reset(token)

        return IngestResult(event=stored, runs=runs)

    async def on_list_change(self, event: ActivityEvent) -> None:
        """Change callback for contact list membership."""
        await self.record(event)
