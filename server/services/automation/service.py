"""Automation management operations and observability reads."""

from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from core.logging import get_logger
from models.automation import (
    ActivityEvent,
    Automation,
    AutomationDefinition,
    ContactAutomation,
    IngestResult,
    NodeExecution,
    RunHistory,
    TimelineEvent,
)
from .exceptions import AutomationNotFound, ValidationError
from .graph import NodeGraph
from .lifecycle import LifecycleController
from .repository import AutomationRepository
from .timeline import TimelineService

logger = get_logger(__name__)

DefinitionInput = Union[AutomationDefinition, Dict[str, Any]]


def parse_definition(data: DefinitionInput) -> AutomationDefinition:
    """Decode and structurally validate an automation definition.

    Raises:
        ValidationError: malformed trigger, node or config
        GraphError: bad root, dangling reference or cycle
    """
    if isinstance(data, AutomationDefinition):
        definition = data
    else:
        try:
            definition = AutomationDefinition.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

    NodeGraph(definition.root_node_id, definition.nodes).validate()
    return definition


class AutomationService:
    """Facade used by the HTTP layer."""

    def __init__(self, repository: AutomationRepository, lifecycle: LifecycleController,
                 timeline: TimelineService):
        self.repository = repository
        self.lifecycle = lifecycle
        self.timeline = timeline

    # Automations

    async def create_automation(self, workspace_id: str, data: DefinitionInput) -> Automation:
        definition = parse_definition(data)
        automation = await self.repository.create_automation(workspace_id, definition)
        logger.info("Automation created", automation_id=automation.id, workspace_id=workspace_id)
        return automation

    async def update_automation(self, automation_id: str, data: DefinitionInput) -> Automation:
        definition = parse_definition(data)
        return await self.repository.update_automation(automation_id, definition)

    async def get_automation(self, automation_id: str) -> Automation:
        automation = await self.repository.get_automation(automation_id)
        if automation is None:
            raise AutomationNotFound(automation_id)
        return automation

    async def list_automations(self, workspace_id: str, status: Optional[str] = None) -> List[Automation]:
        return await self.repository.list_automations(workspace_id, status)

    async def activate(self, automation_id: str) -> Automation:
        return await self.lifecycle.activate(automation_id)

    async def pause(self, automation_id: str) -> Automation:
        return await self.lifecycle.pause(automation_id)

    async def delete(self, automation_id: str) -> int:
        return await self.lifecycle.delete(automation_id)

    async def recompute_stats(self, automation_id: Optional[str] = None) -> int:
        count = await self.repository.recompute_stats(automation_id)
        logger.info("Automation stats recomputed", automations=count)
        return count

    # Runs

    async def get_run(self, run_id: str) -> Optional[ContactAutomation]:
        return await self.repository.get_run(run_id)

    async def list_runs(self, automation_id: str, status: Optional[str] = None,
                        limit: int = 100, offset: int = 0) -> List[ContactAutomation]:
        await self.get_automation(automation_id)
        return await self.repository.list_runs(automation_id, status, limit, offset)

    async def list_contact_runs(self, workspace_id: str, contact_email: str) -> List[ContactAutomation]:
        return await self.repository.list_contact_runs(workspace_id, contact_email)

    async def get_run_history(self, run_id: str) -> Optional[RunHistory]:
        run = await self.repository.get_run(run_id)
        if run is None:
            return None
        executions: List[NodeExecution] = await self.repository.list_node_executions(run_id)
        return RunHistory(run=run, executions=executions)

    # Timeline

    async def ingest_event(self, event: ActivityEvent) -> IngestResult:
        return await self.timeline.record(event)

    async def list_timeline(self, workspace_id: str, contact_email: str,
                            kind: Optional[str] = None) -> List[TimelineEvent]:
        return await self.repository.list_timeline(workspace_id, contact_email, kind)
