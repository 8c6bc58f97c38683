"""Activity event ingestion and contact timeline routes."""

from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from core.container import container
from core.logging import get_logger
from models.automation import ActivityEvent, IngestResult, TimelineEvent
from services.automation import AutomationService

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["events"])


def get_service() -> AutomationService:
    return container.automation_service()


@router.post("/events", response_model=IngestResult, status_code=202)
async def ingest_event(event: ActivityEvent, service: AutomationService = Depends(get_service)):
    """Record an activity event and enroll its contact into matching automations."""
    result = await service.ingest_event(event)
    logger.debug("Event ingested", kind=event.kind, runs=len(result.runs))
    return result


@router.get("/workspaces/{workspace_id}/contacts/{contact_email}/timeline",
            response_model=List[TimelineEvent])
async def contact_timeline(
    workspace_id: str,
    contact_email: str,
    kind: Optional[str] = Query(default=None),
    service: AutomationService = Depends(get_service)
):
    return await service.list_timeline(workspace_id, contact_email, kind)
