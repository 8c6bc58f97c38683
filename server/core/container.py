"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.scheduler import CronScheduler
from services.automation import (
    AutomationRepository,
    DatabaseContactLists,
    HttpMessageSender,
    NodeExecutors,
    AutomationEngine,
    TriggerMatcher,
    TimelineService,
    LifecycleController,
    AutomationService,
    AutomationScheduler,
)


def _wire_list_events(contact_lists: DatabaseContactLists, timeline: TimelineService) -> TimelineService:
    """Feed list membership changes back into the timeline."""
    contact_lists.set_change_callback(timeline.on_list_change)
    return timeline


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database
    database = providers.Singleton(
        Database,
        settings=settings
    )

    repository = providers.Singleton(
        AutomationRepository,
        database=database
    )

    # External collaborators (override in tests or deployments)
    contact_lists = providers.Singleton(
        DatabaseContactLists,
        database=database
    )

    message_sender = providers.Singleton(
        HttpMessageSender,
        settings=settings
    )

    # Engine
    executors = providers.Singleton(
        NodeExecutors,
        sender=message_sender,
        contact_lists=contact_lists,
        settings=settings
    )

    engine = providers.Singleton(
        AutomationEngine,
        repository=repository,
        executors=executors,
        settings=settings
    )

    matcher = providers.Singleton(
        TriggerMatcher,
        repository=repository,
        engine=engine
    )

    timeline = providers.Singleton(
        _wire_list_events,
        contact_lists=contact_lists,
        timeline=providers.Singleton(TimelineService, repository=repository, matcher=matcher)
    )

    lifecycle = providers.Singleton(
        LifecycleController,
        repository=repository
    )

    automation_service = providers.Singleton(
        AutomationService,
        repository=repository,
        lifecycle=lifecycle,
        timeline=timeline
    )

    # Background work
    scheduler = providers.Singleton(
        AutomationScheduler,
        repository=repository,
        engine=engine,
        database=database,
        settings=settings
    )

    cron = providers.Singleton(
        CronScheduler,
    )


# Global container instance
container = Container()
