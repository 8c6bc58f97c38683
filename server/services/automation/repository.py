"""Persistence for automations, runs, the audit trail and the contact timeline.

Every write to a run is a compare-and-swap on (id, version, status=active) and
runs in the same transaction as the audit rows, timeline rows and counter
increments it implies.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from constants import (
    AUTOMATION_LIVE,
    EVENT_AUTOMATION_START,
    EVENT_AUTOMATION_END,
    FREQUENCY_ONCE,
    RUN_ACTIVE,
    RUN_COMPLETED,
    RUN_EXITED,
    RUN_FAILED,
)
from core.database import Database
from core.logging import get_logger
from models.automation import (
    ActivityEvent,
    Automation,
    AutomationDefinition,
    ContactAutomation,
    NodeExecution,
    TimelineEvent,
)
from models.database import (
    AutomationRecord,
    ContactAutomationRecord,
    NodeExecutionRecord,
    TimelineEventRecord,
    TriggerLogRecord,
    utcnow,
)
from .exceptions import AutomationNotFound, ConcurrencyConflict, ConfigurationError
from .models import NodeAction

logger = get_logger(__name__)


STAT_COLUMNS = {
    "enrolled": AutomationRecord.enrolled_count,
    "completed": AutomationRecord.completed_count,
    "exited": AutomationRecord.exited_count,
    "failed": AutomationRecord.failed_count,
}

# Terminal run status -> stats counter it increments
STAT_FOR_STATUS = {
    RUN_COMPLETED: "completed",
    RUN_EXITED: "exited",
    RUN_FAILED: "failed",
}


def _to_automation(record: AutomationRecord) -> Automation:
    try:
        return Automation.model_validate({
            "id": record.id,
            "workspace_id": record.workspace_id,
            "name": record.name,
            "status": record.status,
            "trigger": record.trigger,
            "root_node_id": record.root_node_id,
            "nodes": record.nodes,
            "stats": {
                "enrolled": record.enrolled_count,
                "completed": record.completed_count,
                "exited": record.exited_count,
                "failed": record.failed_count,
            },
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "deleted_at": record.deleted_at,
        })
    except PydanticValidationError as e:
        raise ConfigurationError(f"Stored automation {record.id} is invalid: {e}") from e


def _serialize_nodes(definition: AutomationDefinition) -> List[Dict[str, Any]]:
    return [node.model_dump(mode="json") for node in definition.nodes.values()]


def _timeline_row(workspace_id: str, contact_email: str, kind: str, automation_id: str,
                  changes: Dict[str, Any], occurred_at: datetime) -> TimelineEventRecord:
    return TimelineEventRecord(
        workspace_id=workspace_id,
        contact_email=contact_email,
        operation="insert",
        kind=kind,
        entity_type="automation",
        entity_id=automation_id,
        changes={key: {"new": value} for key, value in changes.items()},
        occurred_at=occurred_at,
    )


class AutomationRepository:
    """Async data access for the automation engine."""

    def __init__(self, database: Database):
        self.database = database

    # =========================================================================
    # Automations
    # =========================================================================

    async def create_automation(self, workspace_id: str, definition: AutomationDefinition) -> Automation:
        async with self.database.get_session() as session:
            record = AutomationRecord(
                workspace_id=workspace_id,
                name=definition.name,
                trigger=definition.trigger.model_dump(mode="json"),
                root_node_id=definition.root_node_id,
                nodes=_serialize_nodes(definition),
            )
            session.add(record)
            await session.commit()
            return _to_automation(record)

    async def update_automation(self, automation_id: str, definition: AutomationDefinition) -> Automation:
        """Replace name, trigger and graph; status and counters are kept."""
        async with self.database.get_session() as session:
            record = await self._get_record(session, automation_id)
            record.name = definition.name
            record.trigger = definition.trigger.model_dump(mode="json")
            record.root_node_id = definition.root_node_id
            record.nodes = _serialize_nodes(definition)
            record.updated_at = utcnow()
            session.add(record)
            await session.commit()
            return _to_automation(record)

    async def set_automation_status(self, automation_id: str, status: str) -> Automation:
        async with self.database.get_session() as session:
            record = await self._get_record(session, automation_id)
            record.status = status
            record.updated_at = utcnow()
            session.add(record)
            await session.commit()
            return _to_automation(record)

    async def mark_automation_deleted(self, automation_id: str) -> Automation:
        async with self.database.get_session() as session:
            record = await self._get_record(session, automation_id)
            now = utcnow()
            record.deleted_at = now
            record.updated_at = now
            session.add(record)
            await session.commit()
            return _to_automation(record)

    async def get_automation(self, automation_id: str, include_deleted: bool = False) -> Optional[Automation]:
        async with self.database.get_session() as session:
            record = await session.get(AutomationRecord, automation_id)
            if record is None or (record.deleted_at is not None and not include_deleted):
                return None
            return _to_automation(record)

    async def list_automations(self, workspace_id: str, status: Optional[str] = None) -> List[Automation]:
        async with self.database.get_session() as session:
            stmt = select(AutomationRecord).where(
                AutomationRecord.workspace_id == workspace_id,
                AutomationRecord.deleted_at.is_(None),
            )
            if status:
                stmt = stmt.where(AutomationRecord.status == status)
            stmt = stmt.order_by(AutomationRecord.created_at)
            result = await session.execute(stmt)
            return [_to_automation(r) for r in result.scalars().all()]

    async def list_live_automations(self, workspace_id: str, event_kind: str) -> List[Automation]:
        """Live, non-deleted automations listening to an event kind.

        Records that no longer decode are logged and skipped so one broken
        automation does not block the rest of the workspace.
        """
        async with self.database.get_session() as session:
            stmt = select(AutomationRecord).where(
                AutomationRecord.workspace_id == workspace_id,
                AutomationRecord.status == AUTOMATION_LIVE,
                AutomationRecord.deleted_at.is_(None),
            )
            result = await session.execute(stmt)
            records = result.scalars().all()

        automations = []
        for record in records:
            if (record.trigger or {}).get("event_kind") != event_kind:
                continue
            try:
                automations.append(_to_automation(record))
            except ConfigurationError as e:
                logger.error("Skipping undecodable automation", automation_id=record.id, error=str(e))
        return automations

    async def _get_record(self, session, automation_id: str) -> AutomationRecord:
        record = await session.get(AutomationRecord, automation_id)
        if record is None or record.deleted_at is not None:
            raise AutomationNotFound(automation_id)
        return record

    # =========================================================================
    # Stats
    # =========================================================================

    async def _increment_stat(self, session, automation_id: str, stat: str) -> None:
        column = STAT_COLUMNS[stat]
        await session.execute(
            update(AutomationRecord)
            .where(AutomationRecord.id == automation_id)
            .values({column: column + 1})
            .execution_options(synchronize_session=False)
        )

    async def recompute_stats(self, automation_id: Optional[str] = None) -> int:
        """Rebuild counters from the runs table.

        Args:
            automation_id: Single automation to rebuild, or None for all

        Returns:
            Number of automations rewritten
        """
        async with self.database.get_session() as session:
            ids_stmt = select(AutomationRecord.id)
            if automation_id:
                ids_stmt = ids_stmt.where(AutomationRecord.id == automation_id)
            automation_ids = (await session.execute(ids_stmt)).scalars().all()

            counts_stmt = select(
                ContactAutomationRecord.automation_id,
                ContactAutomationRecord.status,
                func.count(),
            ).group_by(ContactAutomationRecord.automation_id, ContactAutomationRecord.status)
            if automation_id:
                counts_stmt = counts_stmt.where(ContactAutomationRecord.automation_id == automation_id)

            counts: Dict[str, Dict[str, int]] = {}
            for aid, status, count in (await session.execute(counts_stmt)).all():
                counts.setdefault(aid, {})[status] = count

            for aid in automation_ids:
                by_status = counts.get(aid, {})
                await session.execute(
                    update(AutomationRecord)
                    .where(AutomationRecord.id == aid)
                    .values(
                        enrolled_count=sum(by_status.values()),
                        completed_count=by_status.get(RUN_COMPLETED, 0),
                        exited_count=by_status.get(RUN_EXITED, 0),
                        failed_count=by_status.get(RUN_FAILED, 0),
                    )
                    .execution_options(synchronize_session=False)
                )
            await session.commit()
            return len(automation_ids)

    # =========================================================================
    # Enrollment
    # =========================================================================

    async def enroll(self, automation: Automation, contact_email: str, context: Dict[str, Any],
                     max_retries: int, lease_seconds: int) -> Optional[ContactAutomation]:
        """Create a run at the root node in one transaction.

        The run is leased (scheduled_at in the future) so pollers leave it
        alone while the enrolling caller walks it.

        Returns:
            The new run, or None when a once-frequency trigger already fired or
            the automation stopped being live since it was matched
        """
        now = utcnow()
        async with self.database.get_session() as session:
            # Counts the enrollment and re-checks the automation in one statement;
            # a pause or delete since matching leaves no row to update
            counted = await session.execute(
                update(AutomationRecord)
                .where(
                    AutomationRecord.id == automation.id,
                    AutomationRecord.status == AUTOMATION_LIVE,
                    AutomationRecord.deleted_at.is_(None),
                )
                .values(enrolled_count=AutomationRecord.enrolled_count + 1)
                .execution_options(synchronize_session=False)
            )
            if counted.rowcount != 1:
                await session.rollback()
                logger.info("Automation no longer live, enrollment skipped",
                           automation_id=automation.id, contact_email=contact_email)
                return None

            if automation.trigger.frequency == FREQUENCY_ONCE:
                session.add(TriggerLogRecord(
                    automation_id=automation.id,
                    contact_email=contact_email,
                    triggered_at=now,
                ))
                try:
                    await session.flush()
                except IntegrityError:
                    await session.rollback()
                    logger.debug("Enrollment deduplicated",
                                automation_id=automation.id, contact_email=contact_email)
                    return None

            run = ContactAutomationRecord(
                automation_id=automation.id,
                workspace_id=automation.workspace_id,
                contact_email=contact_email,
                status=RUN_ACTIVE,
                current_node_id=automation.root_node_id,
                scheduled_at=now + timedelta(seconds=lease_seconds),
                entered_at=now,
                updated_at=now,
                retry_count=0,
                max_retries=max_retries,
                version=0,
                context=context,
            )
            session.add(run)

            root = automation.nodes.get(automation.root_node_id)
            session.add(NodeExecutionRecord(
                contact_automation_id=run.id,
                automation_id=automation.id,
                node_id=automation.root_node_id,
                node_type=root.type if root else None,
                action=NodeAction.ENTERED.value,
                output={"event_kind": context.get("event_kind")},
                created_at=now,
            ))
            session.add(_timeline_row(
                automation.workspace_id, contact_email, EVENT_AUTOMATION_START, automation.id,
                {"automation_id": automation.id, "root_node_id": automation.root_node_id},
                now,
            ))
            await session.commit()
            return ContactAutomation.model_validate(run)

    async def count_trigger_log(self, automation_id: str, contact_email: Optional[str] = None) -> int:
        async with self.database.get_session() as session:
            stmt = select(func.count()).select_from(TriggerLogRecord).where(
                TriggerLogRecord.automation_id == automation_id
            )
            if contact_email:
                stmt = stmt.where(TriggerLogRecord.contact_email == contact_email)
            return (await session.execute(stmt)).scalar_one()

    # =========================================================================
    # Run steps (compare-and-swap)
    # =========================================================================

    async def _apply_step(self, run: ContactAutomation, values: Dict[str, Any],
                          executions: List[Dict[str, Any]],
                          end_event: Optional[TimelineEventRecord] = None,
                          stat: Optional[str] = None) -> ContactAutomation:
        now = utcnow()
        values = {**values, "updated_at": now}
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ContactAutomationRecord)
                .where(
                    ContactAutomationRecord.id == run.id,
                    ContactAutomationRecord.version == run.version,
                    ContactAutomationRecord.status == RUN_ACTIVE,
                )
                .values(version=run.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrencyConflict(run.id, run.version)

            for execution in executions:
                session.add(NodeExecutionRecord(
                    contact_automation_id=run.id,
                    automation_id=run.automation_id,
                    created_at=now,
                    **execution,
                ))
            if end_event is not None:
                session.add(end_event)
            if stat:
                await self._increment_stat(session, run.automation_id, stat)
            await session.commit()

        return run.model_copy(update={**values, "version": run.version + 1})

    async def advance_run(self, run: ContactAutomation, next_node_id: Optional[str],
                          scheduled_at: Optional[datetime],
                          executions: List[Dict[str, Any]]) -> ContactAutomation:
        """Move the run to its next node; successful progress clears retries."""
        return await self._apply_step(run, {
            "current_node_id": next_node_id,
            "scheduled_at": scheduled_at,
            "retry_count": 0,
            "last_error": None,
        }, executions)

    async def schedule_retry(self, run: ContactAutomation, retry_count: int, scheduled_at: datetime,
                             error: str, executions: List[Dict[str, Any]]) -> ContactAutomation:
        return await self._apply_step(run, {
            "retry_count": retry_count,
            "scheduled_at": scheduled_at,
            "last_error": error[:2000],
        }, executions)

    async def finish_run(self, run: ContactAutomation, status: str, reason: str,
                         node_id: Optional[str], executions: List[Dict[str, Any]],
                         error: Optional[str] = None,
                         retry_count: Optional[int] = None) -> ContactAutomation:
        """Move the run to a terminal status and emit automation.end."""
        now = utcnow()
        values = {
            "status": status,
            "exit_reason": reason,
            "exited_at": now,
            "scheduled_at": None,
        }
        if error is not None:
            values["last_error"] = error[:2000]
        elif retry_count == 0:
            values["last_error"] = None
        if retry_count is not None:
            values["retry_count"] = retry_count

        end_event = _timeline_row(
            run.workspace_id, run.contact_email, EVENT_AUTOMATION_END, run.automation_id,
            {"automation_id": run.automation_id, "exit_reason": reason, "node_id": node_id},
            now,
        )
        return await self._apply_step(run, values, executions,
                                      end_event=end_event, stat=STAT_FOR_STATUS[status])

    async def claim_due(self, now: datetime, limit: int, lease_seconds: int,
                        skip_locked: bool = False) -> List[ContactAutomation]:
        """Claim active runs that are due, for live non-deleted automations.

        Each row is claimed by bumping its version and pushing scheduled_at out
        by the lease; rows that another worker claimed first are skipped.
        """
        lease_until = now + timedelta(seconds=lease_seconds)
        async with self.database.get_session() as session:
            stmt = (
                select(ContactAutomationRecord)
                .join(AutomationRecord, AutomationRecord.id == ContactAutomationRecord.automation_id)
                .where(
                    ContactAutomationRecord.status == RUN_ACTIVE,
                    ContactAutomationRecord.scheduled_at.is_not(None),
                    ContactAutomationRecord.scheduled_at <= now,
                    AutomationRecord.status == AUTOMATION_LIVE,
                    AutomationRecord.deleted_at.is_(None),
                )
                .order_by(ContactAutomationRecord.scheduled_at)
                .limit(limit)
            )
            if skip_locked:
                stmt = stmt.with_for_update(skip_locked=True, of=ContactAutomationRecord)

            result = await session.execute(stmt)
            candidates = [ContactAutomation.model_validate(r) for r in result.scalars().all()]

            claimed = []
            for run in candidates:
                cas = await session.execute(
                    update(ContactAutomationRecord)
                    .where(
                        ContactAutomationRecord.id == run.id,
                        ContactAutomationRecord.version == run.version,
                        ContactAutomationRecord.status == RUN_ACTIVE,
                    )
                    .values(version=run.version + 1, scheduled_at=lease_until, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if cas.rowcount == 1:
                    claimed.append(run.model_copy(update={
                        "version": run.version + 1,
                        "scheduled_at": lease_until,
                        "updated_at": now,
                    }))
            await session.commit()
            return claimed

    # =========================================================================
    # Run reads
    # =========================================================================

    async def get_run(self, run_id: str) -> Optional[ContactAutomation]:
        async with self.database.get_session() as session:
            record = await session.get(ContactAutomationRecord, run_id)
            return ContactAutomation.model_validate(record) if record else None

    async def list_runs(self, automation_id: str, status: Optional[str] = None,
                        limit: int = 100, offset: int = 0) -> List[ContactAutomation]:
        async with self.database.get_session() as session:
            stmt = select(ContactAutomationRecord).where(
                ContactAutomationRecord.automation_id == automation_id
            )
            if status:
                stmt = stmt.where(ContactAutomationRecord.status == status)
            stmt = stmt.order_by(ContactAutomationRecord.entered_at).offset(offset).limit(limit)
            result = await session.execute(stmt)
            return [ContactAutomation.model_validate(r) for r in result.scalars().all()]

    async def list_active_runs(self, automation_id: str) -> List[ContactAutomation]:
        async with self.database.get_session() as session:
            stmt = select(ContactAutomationRecord).where(
                ContactAutomationRecord.automation_id == automation_id,
                ContactAutomationRecord.status == RUN_ACTIVE,
            )
            result = await session.execute(stmt)
            return [ContactAutomation.model_validate(r) for r in result.scalars().all()]

    async def list_contact_runs(self, workspace_id: str, contact_email: str,
                                automation_id: Optional[str] = None) -> List[ContactAutomation]:
        async with self.database.get_session() as session:
            stmt = select(ContactAutomationRecord).where(
                ContactAutomationRecord.workspace_id == workspace_id,
                ContactAutomationRecord.contact_email == contact_email,
            )
            if automation_id:
                stmt = stmt.where(ContactAutomationRecord.automation_id == automation_id)
            stmt = stmt.order_by(ContactAutomationRecord.entered_at)
            result = await session.execute(stmt)
            return [ContactAutomation.model_validate(r) for r in result.scalars().all()]

    async def list_node_executions(self, run_id: str) -> List[NodeExecution]:
        async with self.database.get_session() as session:
            stmt = (
                select(NodeExecutionRecord)
                .where(NodeExecutionRecord.contact_automation_id == run_id)
                .order_by(NodeExecutionRecord.id)
            )
            result = await session.execute(stmt)
            return [NodeExecution.model_validate(r) for r in result.scalars().all()]

    # =========================================================================
    # Timeline
    # =========================================================================

    async def insert_timeline_event(self, event: ActivityEvent) -> TimelineEvent:
        async with self.database.get_session() as session:
            record = TimelineEventRecord(
                workspace_id=event.workspace_id,
                contact_email=event.contact_email,
                operation="insert",
                kind=event.kind,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                changes=event.changes,
                occurred_at=event.occurred_at,
            )
            session.add(record)
            await session.commit()
            return TimelineEvent.model_validate(record)

    async def list_timeline(self, workspace_id: str, contact_email: str,
                            kind: Optional[str] = None) -> List[TimelineEvent]:
        async with self.database.get_session() as session:
            stmt = select(TimelineEventRecord).where(
                TimelineEventRecord.workspace_id == workspace_id,
                TimelineEventRecord.contact_email == contact_email,
            )
            if kind:
                stmt = stmt.where(TimelineEventRecord.kind == kind)
            stmt = stmt.order_by(TimelineEventRecord.id)
            result = await session.execute(stmt)
            return [TimelineEvent.model_validate(r) for r in result.scalars().all()]
