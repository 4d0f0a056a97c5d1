"""Named session groups: saved sets of windows that can be reopened together."""

import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pageledger.db.session import SchemaStore
from pageledger.errors import PageLedgerError
from pageledger.sessions.models import SessionGroup, SessionGroupEntry, SessionGroupRecord, dump_entries
from pageledger.sessions.queue import OpenRequest
from pageledger.timeutil import Clock, utcnow
from pageledger.ui.notify import SESSION_GROUPS_CHANGED, Notifier

log = logging.getLogger(__name__)

_STORE_ERRORS = (PageLedgerError, SQLAlchemyError, OSError)


class SessionGroups:
    """Session groups are bounded by max_session_group_count, evicted by last access."""

    def __init__(
        self,
        store: SchemaStore,
        max_session_group_count: int = 50,
        notifier: Optional[Notifier] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self.max_session_group_count = max_session_group_count
        self._notifier = notifier
        self._clock = clock
        self._groups: Tuple[SessionGroup, ...] = ()

    @property
    def groups(self) -> Tuple[SessionGroup, ...]:
        """Snapshot, most recently accessed first."""
        return self._groups

    def _emit_changed(self) -> None:
        if self._notifier is not None:
            self._notifier.emit(SESSION_GROUPS_CHANGED)

    async def load(self) -> None:
        if not self._store.is_initialized:
            self._groups = ()
            return
        try:
            async with self._store.session() as session:
                result = await session.execute(
                    select(SessionGroupRecord).order_by(
                        SessionGroupRecord.last_accessed_at.desc(), SessionGroupRecord.id.desc()
                    )
                )
                self._groups = tuple(r.to_group() for r in result.scalars())
        except _STORE_ERRORS:
            log.exception("Failed to load session groups")

    async def _enforce_limit(self, session: AsyncSession) -> None:
        await session.flush()
        total = await session.scalar(select(func.count()).select_from(SessionGroupRecord))
        excess = (total or 0) - self.max_session_group_count
        if excess <= 0:
            return
        result = await session.execute(
            select(SessionGroupRecord.id)
            .order_by(SessionGroupRecord.last_accessed_at.asc(), SessionGroupRecord.id.asc())
            .limit(excess)
        )
        ids = list(result.scalars())
        await session.execute(delete(SessionGroupRecord).where(SessionGroupRecord.id.in_(ids)))
        log.info("Evicted %d session group(s) over limit %d", len(ids), self.max_session_group_count)

    async def create_group(self, name: str, entries: List[SessionGroupEntry]) -> Optional[SessionGroup]:
        """Save entries under name. Returns the new group, None on failure."""
        if not self._store.is_initialized:
            return None
        now = self._clock()
        record = SessionGroupRecord(
            id=str(uuid.uuid4()),
            name=name.strip() or "Session",
            created_at=now,
            last_accessed_at=now,
            entries_data=dump_entries(entries),
            workspace_id="",
        )
        try:
            async with self._store.transaction() as session:
                session.add(record)
                await self._enforce_limit(session)
            group = record.to_group()
        except _STORE_ERRORS:
            log.exception("Failed to create session group %s", name)
            return None
        log.info("Saved session group %r with %d window(s)", group.name, group.file_count)
        await self.load()
        self._emit_changed()
        return group

    async def _update(self, group_id: str, **values) -> bool:
        if not self._store.is_initialized:
            return False
        try:
            async with self._store.transaction() as session:
                record = await session.get(SessionGroupRecord, group_id)
                if record is None:
                    return False
                for name, value in values.items():
                    setattr(record, name, value)
        except _STORE_ERRORS:
            log.exception("Failed to update session group %s", group_id)
            return False
        await self.load()
        self._emit_changed()
        return True

    async def rename_group(self, group_id: str, name: str) -> bool:
        name = name.strip()
        if not name:
            return False
        return await self._update(group_id, name=name)

    async def touch(self, group_id: str) -> bool:
        """Mark the group as just opened."""
        return await self._update(group_id, last_accessed_at=self._clock())

    async def delete_group(self, group_id: str) -> bool:
        if not self._store.is_initialized:
            return False
        try:
            async with self._store.transaction() as session:
                result = await session.execute(delete(SessionGroupRecord).where(SessionGroupRecord.id == group_id))
                removed = result.rowcount
        except _STORE_ERRORS:
            log.exception("Failed to delete session group %s", group_id)
            return False
        if not removed:
            return False
        await self.load()
        self._emit_changed()
        return True

    async def clear_all(self) -> int:
        if not self._store.is_initialized:
            return 0
        try:
            async with self._store.transaction() as session:
                result = await session.execute(delete(SessionGroupRecord))
                removed = result.rowcount
        except _STORE_ERRORS:
            log.exception("Failed to clear session groups")
            return 0
        self._groups = ()
        self._emit_changed()
        return removed

    def get_group(self, group_id: str) -> Optional[SessionGroup]:
        for group in self._groups:
            if group.id == group_id:
                return group
        return None

    def filter_groups(self, query: str) -> List[SessionGroup]:
        """Groups whose name or any file name contains query (case-insensitive)."""
        q = query.strip().lower()
        if not q:
            return list(self._groups)
        return [
            g for g in self._groups
            if q in g.name.lower() or any(q in e.file_name.lower() for e in g.entries)
        ]

    @staticmethod
    def to_open_requests(group: SessionGroup) -> List[OpenRequest]:
        """Open requests for every window of group, in saved order."""
        return [
            OpenRequest(
                path=e.file_path,
                file_key=e.file_key,
                page=e.current_page,
                frame=e.window_frame,
            )
            for e in group.entries
        ]
