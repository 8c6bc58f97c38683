"""Automation management routes."""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from core.container import container
from core.logging import get_logger
from models.automation import (
    Automation,
    AutomationSummary,
    ContactAutomation,
    RunHistory,
)
from services.automation import AutomationService

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["automations"])


class DeleteResponse(BaseModel):
    id: str
    deleted: bool = True
    runs_exited: int


class RecomputeResponse(BaseModel):
    automations: int


def get_service() -> AutomationService:
    return container.automation_service()


def _summary(automation: Automation) -> AutomationSummary:
    return AutomationSummary(
        id=automation.id,
        name=automation.name,
        status=automation.status,
        trigger=automation.trigger,
        stats=automation.stats,
        updated_at=automation.updated_at,
    )


# =============================================================================
# Automations
# =============================================================================

@router.post("/workspaces/{workspace_id}/automations", response_model=Automation, status_code=201)
async def create_automation(
    workspace_id: str,
    body: Dict[str, Any],
    service: AutomationService = Depends(get_service)
):
    """Create a draft automation. Nodes may be a list or a map keyed by id."""
    return await service.create_automation(workspace_id, body)


@router.get("/workspaces/{workspace_id}/automations", response_model=List[AutomationSummary])
async def list_automations(
    workspace_id: str,
    status: Optional[str] = Query(default=None),
    service: AutomationService = Depends(get_service)
):
    automations = await service.list_automations(workspace_id, status)
    return [_summary(a) for a in automations]


@router.get("/automations/{automation_id}", response_model=Automation)
async def get_automation(automation_id: str, service: AutomationService = Depends(get_service)):
    return await service.get_automation(automation_id)


@router.put("/automations/{automation_id}", response_model=Automation)
async def update_automation(
    automation_id: str,
    body: Dict[str, Any],
    service: AutomationService = Depends(get_service)
):
    return await service.update_automation(automation_id, body)


@router.post("/automations/{automation_id}/activate", response_model=Automation)
async def activate_automation(automation_id: str, service: AutomationService = Depends(get_service)):
    return await service.activate(automation_id)


@router.post("/automations/{automation_id}/pause", response_model=Automation)
async def pause_automation(automation_id: str, service: AutomationService = Depends(get_service)):
    return await service.pause(automation_id)


@router.delete("/automations/{automation_id}", response_model=DeleteResponse)
async def delete_automation(automation_id: str, service: AutomationService = Depends(get_service)):
    runs_exited = await service.delete(automation_id)
    return DeleteResponse(id=automation_id, runs_exited=runs_exited)


@router.post("/automations/stats/recompute", response_model=RecomputeResponse)
async def recompute_stats(
    automation_id: Optional[str] = Query(default=None),
    service: AutomationService = Depends(get_service)
):
    return RecomputeResponse(automations=await service.recompute_stats(automation_id))


# =============================================================================
# Runs
# =============================================================================

@router.get("/automations/{automation_id}/runs", response_model=List[ContactAutomation])
async def list_runs(
    automation_id: str,
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    service: AutomationService = Depends(get_service)
):
    return await service.list_runs(automation_id, status, limit, offset)


@router.get("/runs/{run_id}", response_model=RunHistory)
async def get_run(run_id: str, service: AutomationService = Depends(get_service)):
    """Run state with its node execution history."""
    history = await service.get_run_history(run_id)
    if history is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return history


@router.get("/workspaces/{workspace_id}/contacts/{contact_email}/runs",
            response_model=List[ContactAutomation])
async def list_contact_runs(
    workspace_id: str,
    contact_email: str,
    service: AutomationService = Depends(get_service)
):
    return await service.list_contact_runs(workspace_id, contact_email)
