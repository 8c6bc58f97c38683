"""Contact list membership used by list nodes.

`ContactList` is the narrow interface the engine depends on.
`DatabaseContactLists` is the reference implementation over the `lists` and
`contact_lists` tables; it reports every membership change as a semantic
`list.*` activity event through a callback so other automations can react.
"""

from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from constants import list_event_kind
from core.database import Database
from core.logging import get_logger
from models.automation import ActivityEvent
from models.database import ContactListRecord, ListRecord, utcnow

logger = get_logger(__name__)


@runtime_checkable
class ContactList(Protocol):
    """List membership operations required by list nodes."""

    async def get_status(self, workspace_id: str, email: str, list_id: str) -> Optional[str]:
        ...

    async def set_status(self, workspace_id: str, email: str, list_id: str, status: str) -> None:
        ...

    async def remove(self, workspace_id: str, email: str, list_id: str) -> None:
        ...

    async def list_exists(self, workspace_id: str, list_id: str) -> bool:
        ...


ChangeCallback = Callable[[ActivityEvent], Awaitable[None]]


class DatabaseContactLists:
    """Database-backed list membership. Last writer wins."""

    def __init__(self, database: Database):
        self.database = database
        self._on_change: Optional[ChangeCallback] = None

    def set_change_callback(self, callback: ChangeCallback) -> None:
        """Set callback invoked with a list.* event after each membership change.

        Args:
            callback: Async function that takes an ActivityEvent
        """
        self._on_change = callback

    async def create_list(self, workspace_id: str, name: str, list_id: Optional[str] = None) -> str:
        async with self.database.get_session() as session:
            record = ListRecord(workspace_id=workspace_id, name=name)
            if list_id:
                record.id = list_id
            session.add(record)
            await session.commit()
            return record.id

    async def list_exists(self, workspace_id: str, list_id: str) -> bool:
        async with self.database.get_session() as session:
            stmt = select(ListRecord.id).where(
                ListRecord.id == list_id,
                ListRecord.workspace_id == workspace_id,
                ListRecord.deleted_at.is_(None),
            )
            return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def get_status(self, workspace_id: str, email: str, list_id: str) -> Optional[str]:
        async with self.database.get_session() as session:
            record = await self._get_membership(session, workspace_id, email, list_id)
            if record is None or record.deleted_at is not None:
                return None
            return record.status

    async def set_status(self, workspace_id: str, email: str, list_id: str, status: str) -> None:
        try:
            old_status = await self._upsert(workspace_id, email, list_id, status)
        except IntegrityError:
            # Lost an insert race; the row exists now, so this becomes an update
            old_status = await self._upsert(workspace_id, email, list_id, status)

        if old_status != status:
            await self._emit(workspace_id, email, list_id, old_status, status)

    async def remove(self, workspace_id: str, email: str, list_id: str) -> None:
        async with self.database.get_session() as session:
            record = await self._get_membership(session, workspace_id, email, list_id)
            if record is None or record.deleted_at is not None:
                return
            old_status = record.status
            now = utcnow()
            record.deleted_at = now
            record.updated_at = now
            session.add(record)
            await session.commit()

        await self._emit(workspace_id, email, list_id, old_status, None)

    async def _upsert(self, workspace_id: str, email: str, list_id: str, status: str) -> Optional[str]:
        """Write the membership and return the previous live status."""
        async with self.database.get_session() as session:
            record = await self._get_membership(session, workspace_id, email, list_id)
            now = utcnow()
            if record is None:
                old_status = None
                record = ContactListRecord(
                    workspace_id=workspace_id,
                    email=email,
                    list_id=list_id,
                    status=status,
                    created_at=now,
                    updated_at=now,
                )
            else:
                old_status = None if record.deleted_at is not None else record.status
                record.status = status
                record.deleted_at = None
                record.updated_at = now
            session.add(record)
            await session.commit()
            return old_status

    async def _get_membership(self, session, workspace_id: str, email: str,
                              list_id: str) -> Optional[ContactListRecord]:
        stmt = select(ContactListRecord).where(
            ContactListRecord.workspace_id == workspace_id,
            ContactListRecord.email == email,
            ContactListRecord.list_id == list_id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _emit(self, workspace_id: str, email: str, list_id: str,
                    old_status: Optional[str], new_status: Optional[str]) -> None:
        if not self._on_change:
            return
        event = ActivityEvent(
            workspace_id=workspace_id,
            contact_email=email,
            kind=list_event_kind(old_status, new_status),
            entity_type="contact_list",
            entity_id=list_id,
            changes={"status": {"old": old_status, "new": new_status}},
        )
        await self._on_change(event)
