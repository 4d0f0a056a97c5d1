"""History ledger: bounded, LRU-evicted record of opened files."""

import logging
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pageledger.db.session import SchemaStore
from pageledger.errors import PageLedgerError
from pageledger.history import repair
from pageledger.history.models import (
    FileIdentityChoice,
    HistoryEntry,
    HistoryRecord,
    IdentityCheck,
    IdentityKind,
    ViewState,
)
from pageledger.history.settings_ref import SettingsResolver, load_settings, resolve_owner
from pageledger.identity import derive_entry_id, extract_content_key
from pageledger.timeutil import Clock, utcnow
from pageledger.ui.notify import HISTORY_CHANGED, Notifier

log = logging.getLogger(__name__)

_STORE_ERRORS = (PageLedgerError, SQLAlchemyError, OSError)

_NEWEST_FIRST = (HistoryRecord.last_access_date.desc(), HistoryRecord.id.desc())
_OLDEST_FIRST = (HistoryRecord.last_access_date.asc(), HistoryRecord.id.asc())


class CredentialStore(Protocol):
    def delete_password(self, path: str) -> None: ...


class HistoryLedger:
    """
    History entries keyed by derive_entry_id(display name, content key).

    `history` is an immutable snapshot, newest access first, replaced after each
    write. Operations never raise on store failures: they log and return
    None/False/0, and an uninitialized store behaves as an empty ledger.
    """

    def __init__(
        self,
        store: SchemaStore,
        max_history_count: int = 50,
        credentials: Optional[CredentialStore] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self.max_history_count = max_history_count
        self._credentials = credentials
        self._notifier = notifier
        self._clock = clock
        self._history: Tuple[HistoryEntry, ...] = ()
        self.settings = SettingsResolver(store)

    @property
    def store(self) -> SchemaStore:
        return self._store

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        return self._history

    @property
    def count(self) -> int:
        return len(self._history)

    @property
    def is_initialized(self) -> bool:
        return self._store.is_initialized

    def _ready(self, operation: str) -> bool:
        if not self._store.is_initialized:
            log.debug("%s skipped: store not initialized", operation)
            return False
        return True

    def notify_changed(self) -> None:
        if self._notifier is not None:
            self._notifier.emit(HISTORY_CHANGED)

    async def load(self) -> None:
        """Replace the snapshot with the stored entries."""
        if not self._store.is_initialized:
            self._history = ()
            return
        try:
            async with self._store.session() as session:
                result = await session.execute(select(HistoryRecord).order_by(*_NEWEST_FIRST))
                self._history = tuple(r.to_entry() for r in result.scalars())
        except _STORE_ERRORS:
            log.exception("Failed to load history")
            return
        log.debug("Loaded %d history entries", len(self._history))

    def _patch_snapshot(self, upserts: Iterable[HistoryEntry], removed_ids: Iterable[str] = ()) -> None:
        by_id: Dict[str, HistoryEntry] = {e.id: e for e in self._history}
        for entry in upserts:
            by_id[entry.id] = entry
        # Removals win: a new entry can be evicted by its own insert
        for entry_id in removed_ids:
            by_id.pop(entry_id, None)
        self._history = tuple(
            sorted(by_id.values(), key=lambda e: (e.last_access_date, e.id), reverse=True)
        )

    # Capacity

    async def enforce_limit(self, session: AsyncSession) -> Tuple[List[str], List[HistoryRecord]]:
        """
        Delete the least recently accessed entries above max_history_count.
        Returns (evicted ids, records changed by detaching their referrers). Caller commits.
        """
        await session.flush()
        total = await session.scalar(select(func.count()).select_from(HistoryRecord))
        excess = (total or 0) - self.max_history_count
        if excess <= 0:
            return [], []
        result = await session.execute(select(HistoryRecord).order_by(*_OLDEST_FIRST).limit(excess))
        victims = list(result.scalars())
        changed = await self._detach_referrers(session, victims)
        for victim in victims:
            await session.delete(victim)
        evicted = [v.id for v in victims]
        log.info("Evicted %d history entr%s over limit %d", len(evicted), "y" if len(evicted) == 1 else "ies", self.max_history_count)
        return evicted, changed

    async def _detach_referrers(self, session: AsyncSession, owners: Sequence[HistoryRecord]) -> List[HistoryRecord]:
        """
        Before owners are deleted: the most recent entry referencing each owner takes
        over its settings and becomes the owner for the remaining referrers.
        """
        removed_ids = {o.id for o in owners}
        changed: List[HistoryRecord] = []
        for owner in owners:
            result = await session.execute(
                select(HistoryRecord)
                .where(HistoryRecord.page_settings_ref == owner.id, HistoryRecord.id.notin_(removed_ids))
                .order_by(*_NEWEST_FIRST)
            )
            referrers = list(result.scalars())
            if not referrers:
                continue
            heir = referrers[0]
            heir.page_settings_ref = None
            if heir.page_settings is None:
                heir.page_settings = owner.page_settings
            for other in referrers[1:]:
                other.page_settings_ref = heir.id
            changed.extend(referrers)
            log.debug("Entry %s inherits settings of removed entry %s", heir.id, owner.id)
        return changed

    def _forget_credentials(self, paths: Iterable[str]) -> None:
        if self._credentials is None:
            return
        for path in set(paths):
            try:
                self._credentials.delete_password(path)
            except Exception as e:
                log.warning("Could not delete stored password for %s: %s", path, e)

    # Recording

    async def record_access(self, content_key: str, path: str, display_name: str) -> Optional[HistoryEntry]:
        """
        Count an open of path; inserts a new entry (and evicts) on first open.
        None if the store failed or the new entry was itself evicted.
        """
        if not self._ready("record_access"):
            return None
        key = extract_content_key(content_key)
        entry_id = derive_entry_id(display_name, key)
        now = self._clock()
        evicted: List[str] = []
        changed: List[HistoryRecord] = []
        try:
            async with self._store.transaction() as session:
                record = await session.get(HistoryRecord, entry_id)
                if record is not None:
                    record.access_count += 1
                    record.last_access_date = now
                    record.file_path = path
                else:
                    record = HistoryRecord(
                        id=entry_id,
                        file_key=key,
                        file_path=path,
                        file_name=display_name,
                        last_access_date=now,
                        access_count=1,
                    )
                    session.add(record)
                    evicted, changed = await self.enforce_limit(session)
                entry = record.to_entry()
                changed_entries = [r.to_entry() for r in changed]
        except _STORE_ERRORS:
            log.exception("Failed to record access to %s", path)
            return None
        self._patch_snapshot([entry] + changed_entries, evicted)
        self.notify_changed()
        if entry_id in evicted:
            log.info("New entry %s is older than every kept entry and was evicted", entry_id)
            return None
        return entry

    async def check_identity(self, content_key: str, display_name: str) -> IdentityCheck:
        """EXACT_MATCH by entry id, DIFFERENT_NAME if the content is known under another name, else NEW_FILE."""
        if not self._ready("check_identity"):
            return IdentityCheck(IdentityKind.NEW_FILE)
        key = extract_content_key(content_key)
        entry_id = derive_entry_id(display_name, key)
        try:
            async with self._store.session() as session:
                record = await session.get(HistoryRecord, entry_id)
                if record is not None:
                    return IdentityCheck(IdentityKind.EXACT_MATCH, record.to_entry())
                result = await session.execute(
                    select(HistoryRecord).where(HistoryRecord.file_key == key).order_by(*_NEWEST_FIRST).limit(1)
                )
                other = result.scalars().first()
                if other is not None and other.file_name != display_name:
                    return IdentityCheck(IdentityKind.DIFFERENT_NAME, other.to_entry())
        except _STORE_ERRORS:
            log.exception("Identity check failed for %s", display_name)
        return IdentityCheck(IdentityKind.NEW_FILE)

    async def record_access_with_choice(
        self,
        content_key: str,
        path: str,
        display_name: str,
        existing: HistoryEntry,
        choice: FileIdentityChoice,
    ) -> Optional[HistoryEntry]:
        """
        Record an open of content already known as existing, under a new name.

        TREAT_AS_SAME shares the settings of existing's owner, COPY_SETTINGS copies
        them, TREAT_AS_DIFFERENT starts without settings.
        """
        if not self._ready("record_access_with_choice"):
            return None
        key = extract_content_key(content_key)
        entry_id = derive_entry_id(display_name, key)
        now = self._clock()
        evicted: List[str] = []
        try:
            async with self._store.transaction() as session:
                record = await session.get(HistoryRecord, entry_id)
                is_new = record is None
                if record is None:
                    record = HistoryRecord(
                        id=entry_id,
                        file_key=key,
                        file_path=path,
                        file_name=display_name,
                        last_access_date=now,
                        access_count=1,
                    )
                    session.add(record)
                else:
                    record.access_count += 1
                    record.last_access_date = now
                    record.file_path = path
                source = await session.get(HistoryRecord, existing.id)

                if choice == FileIdentityChoice.TREAT_AS_SAME:
                    if source is not None:
                        owner = await resolve_owner(session, source)
                        if owner.id != record.id:
                            record.page_settings_ref = owner.id
                            record.page_settings = None
                            # Entries sharing record's settings now share owner's
                            await session.execute(
                                update(HistoryRecord)
                                .where(HistoryRecord.page_settings_ref == record.id)
                                .values(page_settings_ref=owner.id)
                            )
                elif choice == FileIdentityChoice.COPY_SETTINGS:
                    record.page_settings_ref = None
                    settings = await load_settings(session, source) if source is not None else None
                    record.page_settings = settings.to_json() if settings is not None else None
                else:
                    record.page_settings_ref = None
                    if is_new:
                        record.page_settings = None

                if is_new:
                    evicted, _ = await self.enforce_limit(session)
                entry = record.to_entry()
        except _STORE_ERRORS:
            log.exception("Failed to record access to %s (%s)", path, choice.value)
            return None
        await self.load()
        self.notify_changed()
        if entry_id in evicted:
            log.info("New entry %s is older than every kept entry and was evicted", entry_id)
            return None
        return entry

    # Removal

    async def remove_entry(self, entry_id: str) -> bool:
        """Delete one entry and its stored archive password."""
        if not self._ready("remove_entry"):
            return False
        try:
            async with self._store.transaction() as session:
                record = await session.get(HistoryRecord, entry_id)
                if record is None:
                    return False
                path = record.file_path
                await self._detach_referrers(session, [record])
                await session.delete(record)
        except _STORE_ERRORS:
            log.exception("Failed to remove history entry %s", entry_id)
            return False
        self._forget_credentials([path])
        await self.load()
        self.notify_changed()
        return True

    async def remove_entries_for_content_key(self, content_key: str) -> int:
        """Delete every entry for the content key. Returns how many were deleted."""
        if not self._ready("remove_entries_for_content_key"):
            return 0
        key = extract_content_key(content_key)
        try:
            async with self._store.transaction() as session:
                result = await session.execute(select(HistoryRecord).where(HistoryRecord.file_key == key))
                records = list(result.scalars())
                paths = [r.file_path for r in records]
                await self._detach_referrers(session, records)
                for record in records:
                    await session.delete(record)
        except _STORE_ERRORS:
            log.exception("Failed to remove history entries for %s", key)
            return 0
        if not records:
            return 0
        self._forget_credentials(paths)
        await self.load()
        self.notify_changed()
        return len(records)

    async def clear_all(self) -> int:
        """Delete every entry. Returns how many were deleted."""
        if not self._ready("clear_all"):
            return 0
        try:
            async with self._store.transaction() as session:
                result = await session.execute(select(HistoryRecord.file_path))
                paths = list(result.scalars())
                await session.execute(delete(HistoryRecord))
        except _STORE_ERRORS:
            log.exception("Failed to clear history")
            return 0
        self._forget_credentials(paths)
        self._history = ()
        self.notify_changed()
        log.info("Cleared %d history entries", len(paths))
        return len(paths)

    # Updates

    async def reset_access_counts(self) -> bool:
        """Set every access count to 1; recency is untouched."""
        if not self._ready("reset_access_counts"):
            return False
        try:
            async with self._store.transaction() as session:
                await session.execute(update(HistoryRecord).values(access_count=1))
        except _STORE_ERRORS:
            log.exception("Failed to reset access counts")
            return False
        self._history = tuple(e.model_copy(update={"access_count": 1}) for e in self._history)
        self.notify_changed()
        return True

    async def _update_record(self, entry_id: str, operation: str, **values) -> bool:
        if not self._ready(operation):
            return False
        try:
            async with self._store.transaction() as session:
                record = await session.get(HistoryRecord, entry_id)
                if record is None:
                    return False
                for name, value in values.items():
                    setattr(record, name, value)
                entry = record.to_entry()
        except _STORE_ERRORS:
            log.exception("%s failed for %s", operation, entry_id)
            return False
        self._patch_snapshot([entry])
        self.notify_changed()
        return True

    async def update_memo(self, entry_id: str, memo: Optional[str]) -> bool:
        """Set the memo; an empty memo is stored as None."""
        return await self._update_record(entry_id, "update_memo", memo=memo or None)

    async def update_view_state(self, entry_id: str, view_state: Optional[ViewState]) -> bool:
        value = view_state.to_json() if view_state is not None else None
        return await self._update_record(entry_id, "update_view_state", view_state=value)

    # Lookup

    async def get_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        if not self._store.is_initialized:
            return None
        try:
            async with self._store.session() as session:
                record = await session.get(HistoryRecord, entry_id)
                return record.to_entry() if record is not None else None
        except _STORE_ERRORS:
            log.exception("Failed to read history entry %s", entry_id)
            return None

    def get_recent(self, limit: int) -> List[HistoryEntry]:
        """Up to limit entries from the snapshot, newest first."""
        return list(self._history[: max(limit, 0)])

    # Maintenance

    async def repair_corrupted_keys(self) -> Optional[repair.RepairReport]:
        """Recompute corrupted content keys from the live files (see pageledger.history.repair)."""
        if not self._ready("repair_corrupted_keys"):
            return None
        try:
            async with self._store.transaction() as session:
                conn = await session.connection()
                report = await repair.repair_corrupted_keys(conn, self._store.content_key_resolver)
        except _STORE_ERRORS:
            log.exception("Corrupted key repair failed")
            return None
        log.info(
            "Corrupted key repair: %d repaired, %d merged, %d skipped",
            report.repaired, report.merged, report.skipped,
        )
        if report.changed:
            await self.load()
            self.notify_changed()
        return report
