"""Pytest fixtures for automation engine tests.

Every test gets a fresh file-backed SQLite database and a fully wired engine
with a fake message sender.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from core.config import Settings
from core.database import Database
from models.database import ContactAutomationRecord, utcnow
from services.automation import (
    AutomationEngine,
    AutomationRepository,
    AutomationScheduler,
    AutomationService,
    DatabaseContactLists,
    LifecycleController,
    NodeExecutors,
    TimelineService,
    TriggerMatcher,
)

from builders import WORKSPACE, FakeSender


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'automations.db'}",
        log_format="console",
        scheduler_enabled=False,
        scheduler_poll_interval=0.05,
        email_send_timeout=1.0,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def repository(database):
    return AutomationRepository(database)


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def contact_lists(database):
    return DatabaseContactLists(database)


@pytest.fixture
def engine(repository, sender, contact_lists, settings):
    executors = NodeExecutors(sender=sender, contact_lists=contact_lists, settings=settings)
    return AutomationEngine(repository, executors, settings)


@pytest.fixture
def matcher(repository, engine):
    return TriggerMatcher(repository, engine)


@pytest.fixture
def timeline(repository, matcher, contact_lists):
    service = TimelineService(repository, matcher)
    contact_lists.set_change_callback(service.on_list_change)
    return service


@pytest.fixture
def lifecycle(repository):
    return LifecycleController(repository)


@pytest.fixture
def service(repository, lifecycle, timeline):
    return AutomationService(repository, lifecycle, timeline)


@pytest.fixture
def scheduler(repository, engine, database, settings):
    return AutomationScheduler(repository, engine, database, settings)


@pytest.fixture
def create_live(service):
    """Create and activate an automation from a definition dict."""
    async def _create(data, workspace_id=WORKSPACE):
        automation = await service.create_automation(workspace_id, data)
        return await service.activate(automation.id)
    return _create


@pytest.fixture
def make_due(database):
    """Move a run's scheduled_at into the past so the scheduler picks it up."""
    async def _make_due(run_id, seconds_ago=1):
        async with database.get_session() as session:
            await session.execute(
                update(ContactAutomationRecord)
                .where(ContactAutomationRecord.id == run_id)
                .values(scheduled_at=utcnow() - timedelta(seconds=seconds_ago))
            )
            await session.commit()
    return _make_due
