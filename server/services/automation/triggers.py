"""Trigger matching: which live automations enroll the contact of an event."""

from typing import List

from constants import (
    EVENT_CUSTOM,
    LIST_EVENT_KINDS,
    SEGMENT_EVENT_KINDS,
)
from core.logging import get_logger
from models.automation import ActivityEvent, ContactAutomation, Trigger
from .engine import AutomationEngine
from .repository import AutomationRepository

logger = get_logger(__name__)

# Progress events the engine emits itself
RESERVED_KIND_PREFIX = "automation."


def trigger_matches(trigger: Trigger, event: ActivityEvent) -> bool:
    """Whether a trigger listens to this event.

    Custom events match on name (carried in entity_id). List and segment
    triggers scoped to one list/segment only match events for it.
    """
    if trigger.event_kind != event.kind:
        return False
    if event.kind == EVENT_CUSTOM:
        return trigger.custom_event_name == event.entity_id
    if event.kind in LIST_EVENT_KINDS and trigger.list_id:
        return trigger.list_id == event.entity_id
    if event.kind in SEGMENT_EVENT_KINDS and trigger.segment_id:
        return trigger.segment_id == event.entity_id
    return True


class TriggerMatcher:
    """Enrolls contacts into every matching live automation."""

    def __init__(self, repository: AutomationRepository, engine: AutomationEngine):
        self.repository = repository
        self.engine = engine

    async def on_event(self, event: ActivityEvent) -> List[ContactAutomation]:
        """Enroll the event's contact where triggers match.

        Returns:
            Runs created (deduplicated enrollments are not included)
        """
        if event.kind.startswith(RESERVED_KIND_PREFIX):
            return []

        automations = await self.repository.list_live_automations(event.workspace_id, event.kind)
        candidates = [a for a in automations if trigger_matches(a.trigger, event)]
        if not candidates:
            return []

        context = event.snapshot()
        runs = []
        for automation in candidates:
            try:
                run = await self.engine.enroll(automation, event.contact_email, dict(context))
            except Exception as e:
                logger.error("Enrollment failed",
                            automation_id=automation.id,
                            contact_email=event.contact_email,
                            error=str(e))
                continue
            if run is not None:
                runs.append(run)

        logger.debug("Event matched", kind=event.kind, candidates=len(candidates), enrolled=len(runs))
        return runs
