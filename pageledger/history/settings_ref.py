"""One-hop page settings references between history entries.

An entry recognized as the same content as another one stores no settings of
its own; its page_settings_ref names the entry that owns them. References are
followed exactly once and a self reference counts as no reference, so
resolution always terminates.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pageledger.db.session import SchemaStore
from pageledger.errors import PageLedgerError
from pageledger.history.models import HistoryRecord, PageSettings

log = logging.getLogger(__name__)


def owner_id(entry_id: str, ref: Optional[str]) -> str:
    """Id whose settings entry_id uses, not checking that it exists."""
    if ref and ref != entry_id:
        return ref
    return entry_id


async def resolve_owner(session: AsyncSession, record: HistoryRecord) -> HistoryRecord:
    """The record owning record's settings; record itself for no, self or dangling refs."""
    target = owner_id(record.id, record.page_settings_ref)
    if target == record.id:
        return record
    owner = await session.get(HistoryRecord, target)
    return owner if owner is not None else record


async def load_settings(session: AsyncSession, record: HistoryRecord) -> Optional[PageSettings]:
    """Own settings when present, else the settings of the referenced entry."""
    own = PageSettings.from_json(record.page_settings)
    if own is not None:
        return own
    owner = await resolve_owner(session, record)
    if owner is record:
        return None
    return PageSettings.from_json(owner.page_settings)


async def save_settings(session: AsyncSession, record: HistoryRecord, settings: PageSettings) -> HistoryRecord:
    """Write settings to the referenced entry if any, else to record. Returns the written record."""
    owner = await resolve_owner(session, record)
    owner.page_settings = settings.to_json()
    return owner


class SettingsResolver:
    """Loads and saves page settings by entry id through the store."""

    def __init__(self, store: SchemaStore) -> None:
        self._store = store

    async def load(self, entry_id: str) -> Optional[PageSettings]:
        """Settings for entry_id, None if the entry or its settings are missing."""
        if not self._store.is_initialized:
            return None
        try:
            async with self._store.session() as session:
                record = await session.get(HistoryRecord, entry_id)
                if record is None:
                    return None
                return await load_settings(session, record)
        except (PageLedgerError, SQLAlchemyError):
            log.exception("Failed to load page settings for %s", entry_id)
            return None

    async def save(self, entry_id: str, settings: PageSettings) -> bool:
        """Persist settings for entry_id. Returns False when the entry does not exist."""
        if not self._store.is_initialized:
            return False
        try:
            async with self._store.transaction() as session:
                record = await session.get(HistoryRecord, entry_id)
                if record is None:
                    return False
                owner = await save_settings(session, record, settings)
        except (PageLedgerError, SQLAlchemyError):
            log.exception("Failed to save page settings for %s", entry_id)
            return False
        if owner.id != entry_id:
            log.debug("Saved settings of %s to referenced entry %s", entry_id, owner.id)
        return True
