"""Automation lifecycle: activate, pause and delete."""

import asyncio

from constants import (
    AUTOMATION_DRAFT,
    AUTOMATION_LIVE,
    AUTOMATION_PAUSED,
    RUN_ACTIVE,
    RUN_EXITED,
    EXIT_AUTOMATION_DELETED,
)
from core.logging import get_logger
from models.automation import Automation, ContactAutomation
from .exceptions import AutomationNotFound, ConcurrencyConflict, InvalidTransition
from .graph import NodeGraph
from .models import NodeAction, audit_entry
from .repository import AutomationRepository

logger = get_logger(__name__)

# Conflicts between warnings while an in-flight walk keeps winning the swap
CONFLICT_WARN_EVERY = 5


class LifecycleController:
    """Status transitions and their effects on runs."""

    def __init__(self, repository: AutomationRepository):
        self.repository = repository

    async def _load(self, automation_id: str) -> Automation:
        automation = await self.repository.get_automation(automation_id)
        if automation is None:
            raise AutomationNotFound(automation_id)
        return automation

    async def activate(self, automation_id: str) -> Automation:
        """Validate the graph and make the automation live (draft or paused -> live)."""
        automation = await self._load(automation_id)
        if automation.status == AUTOMATION_LIVE:
            return automation
        if automation.status not in (AUTOMATION_DRAFT, AUTOMATION_PAUSED):
            raise InvalidTransition(automation_id, automation.status, AUTOMATION_LIVE)

        NodeGraph.from_automation(automation).validate()
        automation = await self.repository.set_automation_status(automation_id, AUTOMATION_LIVE)
        logger.info("Automation activated", automation_id=automation_id)
        return automation

    async def pause(self, automation_id: str) -> Automation:
        """Stop enrolling and scheduling; runs keep their position."""
        automation = await self._load(automation_id)
        if automation.status == AUTOMATION_PAUSED:
            return automation
        if automation.status != AUTOMATION_LIVE:
            raise InvalidTransition(automation_id, automation.status, AUTOMATION_PAUSED)

        automation = await self.repository.set_automation_status(automation_id, AUTOMATION_PAUSED)
        logger.info("Automation paused", automation_id=automation_id)
        return automation

    async def delete(self, automation_id: str) -> int:
        """Soft-delete the automation and exit its active runs.

        Returns:
            Number of runs exited
        """
        automation = await self.repository.mark_automation_deleted(automation_id)

        exited = 0
        for run in await self.repository.list_active_runs(automation_id):
            if await self._exit_run(automation, run):
                exited += 1

        logger.info("Automation deleted", automation_id=automation_id, runs_exited=exited)
        return exited

    async def _exit_run(self, automation: Automation, run: ContactAutomation) -> bool:
        """Exit one run, retrying until it is no longer active.

        Nothing claims or enrolls runs of a deleted automation, so a walk that
        is still in flight ends within its hop cap and the swap then succeeds.
        """
        conflicts = 0
        while True:
            node = automation.nodes.get(run.current_node_id) if run.current_node_id else None
            try:
                await self.repository.finish_run(
                    run, RUN_EXITED, EXIT_AUTOMATION_DELETED, run.current_node_id,
                    [audit_entry(node, NodeAction.EXITED, {"reason": EXIT_AUTOMATION_DELETED},
                                 node_id=run.current_node_id)],
                )
                return True
            except ConcurrencyConflict:
                conflicts += 1
                if conflicts % CONFLICT_WARN_EVERY == 0:
                    logger.warning("Run exit keeps conflicting", run_id=run.id, conflicts=conflicts)
                await asyncio.sleep(0)
                run = await self.repository.get_run(run.id)
                if run is None or run.status != RUN_ACTIVE:
                    return False
