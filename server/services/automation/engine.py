"""Enrollment and graph walking.

A run is walked synchronously from its current node until it suspends
(delay or retry backoff), reaches a terminal state, or hits the hop cap.
Each step is persisted with a compare-and-swap on the run's version; losing
the swap means another worker or a lifecycle change owns the run now, and the
walk stops quietly.
"""

import time
from datetime import timedelta
from typing import Any, Dict, Optional

from constants import (
    RUN_ACTIVE,
    RUN_COMPLETED,
    RUN_FAILED,
    EXIT_COMPLETED,
    EXIT_FAILED,
)
from core.config import Settings
from core.logging import get_logger, log_execution_time, run_context
from models.automation import Automation, ContactAutomation
from models.database import utcnow
from .exceptions import ConcurrencyConflict
from .executors import NodeExecutors
from .graph import NodeGraph
from .models import NodeAction, OutcomeKind, RetryPolicy, StepOutcome, audit_entry
from .repository import AutomationRepository

logger = get_logger(__name__)


class AutomationEngine:
    """Creates runs and advances them through their automation's graph."""

    def __init__(self, repository: AutomationRepository, executors: NodeExecutors, settings: Settings):
        self.repository = repository
        self.executors = executors
        self.settings = settings
        self.retry_policy = RetryPolicy.from_settings(settings)

    async def enroll(self, automation: Automation, contact_email: str,
                     context: Dict[str, Any]) -> Optional[ContactAutomation]:
        """Enroll a contact and walk the new run to its first suspension point.

        Returns:
            The persisted run, or None when a once-frequency trigger deduplicated it
        """
        run = await self.repository.enroll(
            automation,
            contact_email,
            context,
            max_retries=self.settings.default_max_retries,
            lease_seconds=self.settings.scheduler_lease_seconds,
        )
        if run is None:
            return None

        logger.info("Contact enrolled", automation_id=automation.id, run_id=run.id,
                   contact_email=contact_email)
        return await self.walk(run, automation)

    async def walk(self, run: ContactAutomation,
                   automation: Optional[Automation] = None) -> ContactAutomation:
        """Execute nodes until the run suspends, terminates or hits the hop cap.

        Args:
            run: Run at the version this caller owns
            automation: Owning automation, loaded when omitted

        Returns:
            Latest known state of the run
        """
        if automation is None:
            automation = await self.repository.get_automation(run.automation_id, include_deleted=True)
            if automation is None:
                logger.warning("Run references unknown automation",
                              run_id=run.id, automation_id=run.automation_id)
                return run

        with run_context(run.id, run.automation_id):
            return await self._walk_graph(run, NodeGraph.from_automation(automation))

    async def _walk_graph(self, run: ContactAutomation, graph: NodeGraph) -> ContactAutomation:
        start_time = time.time()
        hops = 0

        try:
            while run.status == RUN_ACTIVE:
                if hops >= self.settings.walk_max_hops:
                    # Hand the rest of the walk to the scheduler
                    run = await self.repository.advance_run(run, run.current_node_id, utcnow(), [])
                    logger.info("Walk hop cap reached", run_id=run.id, hops=hops)
                    break
                hops += 1

                if not run.current_node_id:
                    run = await self.repository.finish_run(
                        run, RUN_COMPLETED, EXIT_COMPLETED, None,
                        [audit_entry(None, NodeAction.COMPLETED)],
                        retry_count=0,
                    )
                    break

                node = graph.get(run.current_node_id)
                if node is None:
                    outcome = StepOutcome.failure(
                        f"Node {run.current_node_id} no longer exists", retryable=False
                    )
                else:
                    outcome = await self.executors.execute(run, node, run.context)

                run, keep_going = await self._apply_outcome(run, node, outcome)
                if not keep_going:
                    break

        except ConcurrencyConflict as e:
            logger.debug("Walk stopped by concurrent update", run_id=run.id, error=str(e))
            return await self.repository.get_run(run.id) or run

        log_execution_time(logger, "automation_walk", start_time, time.time(),
                           run_id=run.id, hops=hops, status=run.status)
        return run

    async def _apply_outcome(self, run: ContactAutomation, node,
                             outcome: StepOutcome) -> tuple:
        """Persist one step. Returns (run, keep_going)."""
        node_id = run.current_node_id
        output = outcome.to_dict()

        if outcome.kind == OutcomeKind.ADVANCE:
            if outcome.wait_until is not None:
                run = await self.repository.advance_run(
                    run, outcome.next_node_id, outcome.wait_until,
                    [audit_entry(node, NodeAction.DELAYED, output)],
                )
                return run, False

            if not outcome.next_node_id:
                run = await self.repository.finish_run(
                    run, RUN_COMPLETED, EXIT_COMPLETED, node_id,
                    [audit_entry(node, NodeAction.COMPLETED, output)],
                    retry_count=0,
                )
                return run, False

            # Keep the lease while the walk continues in this process
            run = await self.repository.advance_run(
                run, outcome.next_node_id, run.scheduled_at,
                [audit_entry(node, NodeAction.PROCESSED, output)],
            )
            return run, True

        if outcome.kind == OutcomeKind.TERMINAL:
            action = NodeAction.COMPLETED if outcome.status == RUN_COMPLETED else NodeAction.EXITED
            run = await self.repository.finish_run(
                run, outcome.status, outcome.reason, node_id,
                [audit_entry(node, action, output)],
                retry_count=0,
            )
            return run, False

        return await self._handle_error(run, node, outcome, output), False

    async def _handle_error(self, run: ContactAutomation, node, outcome: StepOutcome,
                            output: Dict[str, Any]) -> ContactAutomation:
        node_id = run.current_node_id
        attempt = run.retry_count + 1

        if self.retry_policy.should_retry(outcome.retryable, attempt, run.max_retries):
            delay = self.retry_policy.calculate_delay(attempt)
            output = {**output, "attempt": attempt, "retry_in_seconds": delay}
            logger.warning("Node failed, retry scheduled", run_id=run.id, node_id=node_id,
                          attempt=attempt, delay=delay, error=outcome.error)
            return await self.repository.schedule_retry(
                run, attempt, utcnow() + timedelta(seconds=delay), outcome.error,
                [audit_entry(node, NodeAction.RETRYING, output, node_id=node_id)],
            )

        logger.error("Run failed", run_id=run.id, automation_id=run.automation_id,
                    node_id=node_id, attempt=attempt, error=outcome.error)
        return await self.repository.finish_run(
            run, RUN_FAILED, EXIT_FAILED, node_id,
            [audit_entry(node, NodeAction.FAILED, {**output, "attempt": attempt}, node_id=node_id)],
            error=outcome.error,
            retry_count=attempt,
        )
