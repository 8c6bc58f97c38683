"""Polling scheduler that resumes due runs.

Runs as background task to:
- Claim active runs whose scheduled_at has passed (live automations only)
- Walk each claimed run from its current node
- Keep one failing run from affecting the rest of the batch
"""

import asyncio
from typing import Dict, List, Optional

from core.config import Settings
from core.database import Database
from core.logging import get_logger
from models.automation import Automation, ContactAutomation
from models.database import utcnow
from .engine import AutomationEngine
from .repository import AutomationRepository

logger = get_logger(__name__)


class AutomationScheduler:
    """Background loop over the due-run set.

    Pausing or deleting an automation removes its runs from the due set
    through the claim query alone; nothing is rewritten on the run rows.
    """

    def __init__(self, repository: AutomationRepository, engine: AutomationEngine,
                 database: Database, settings: Settings):
        self.repository = repository
        self.engine = engine
        self.database = database
        self.poll_interval = settings.scheduler_poll_interval
        self.batch_size = settings.scheduler_batch_size
        self.concurrency = settings.scheduler_concurrency
        self.lease_seconds = settings.scheduler_lease_seconds
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling loop."""
        if self.running:
            logger.warning("Automation scheduler already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Automation scheduler started",
                   poll_interval=self.poll_interval,
                   batch_size=self.batch_size,
                   concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop after the current pass finishes."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Automation scheduler stopped")

    async def _poll_loop(self) -> None:
        """Main poll loop - re-polls at once after a full batch."""
        while not self._stop_event.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.error("Scheduler pass failed", error=str(e))
                processed = 0

            if processed >= self.batch_size:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> int:
        """Claim and walk one batch of due runs.

        Returns:
            Number of runs claimed in this pass
        """
        runs = await self.repository.claim_due(
            utcnow(),
            self.batch_size,
            self.lease_seconds,
            skip_locked=self.database.supports_skip_locked,
        )
        if not runs:
            return 0

        automations = await self._load_automations(runs)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def process(run: ContactAutomation) -> None:
            async with semaphore:
                await self._process(run, automations.get(run.automation_id))

        await asyncio.gather(*(process(run) for run in runs))
        logger.debug("Scheduler pass complete", processed=len(runs))
        return len(runs)

    async def _load_automations(self, runs: List[ContactAutomation]) -> Dict[str, Automation]:
        automations = {}
        for automation_id in {run.automation_id for run in runs}:
            try:
                automation = await self.repository.get_automation(automation_id)
            except Exception as e:
                logger.error("Failed to load automation", automation_id=automation_id, error=str(e))
                continue
            if automation is not None:
                automations[automation_id] = automation
        return automations

    async def _process(self, run: ContactAutomation, automation: Optional[Automation]) -> None:
        if automation is None:
            # Deleted or undecodable since the claim; its runs are exited elsewhere
            logger.warning("Skipping run without automation",
                          run_id=run.id, automation_id=run.automation_id)
            return
        try:
            await self.engine.walk(run, automation)
        except Exception as e:
            logger.error("Run processing failed",
                        run_id=run.id, automation_id=run.automation_id, error=str(e))
