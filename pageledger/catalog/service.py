"""Image catalog: individually viewed images, keyed by content key, LRU bounded."""

import json
import logging
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pageledger.catalog.models import CatalogEntry, CatalogRecord, CatalogType
from pageledger.db.session import SchemaStore
from pageledger.errors import PageLedgerError
from pageledger.identity import extract_content_key
from pageledger.timeutil import Clock, utcnow
from pageledger.ui.notify import CATALOG_CHANGED, Notifier

log = logging.getLogger(__name__)

_STORE_ERRORS = (PageLedgerError, SQLAlchemyError, OSError)


class ImageCatalog:
    """Same store and failure policy as HistoryLedger: errors are logged, never raised."""

    def __init__(
        self,
        store: SchemaStore,
        max_catalog_count: int = 500,
        notifier: Optional[Notifier] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self.max_catalog_count = max_catalog_count
        self._notifier = notifier
        self._clock = clock
        self._catalog: Tuple[CatalogEntry, ...] = ()

    @property
    def catalog(self) -> Tuple[CatalogEntry, ...]:
        """Snapshot, newest access first."""
        return self._catalog

    @property
    def is_initialized(self) -> bool:
        return self._store.is_initialized

    def _emit_changed(self) -> None:
        if self._notifier is not None:
            self._notifier.emit(CATALOG_CHANGED)

    async def load(self) -> None:
        if not self._store.is_initialized:
            self._catalog = ()
            return
        try:
            async with self._store.session() as session:
                result = await session.execute(
                    select(CatalogRecord).order_by(CatalogRecord.last_access_date.desc(), CatalogRecord.id.desc())
                )
                self._catalog = tuple(r.to_entry() for r in result.scalars())
        except _STORE_ERRORS:
            log.exception("Failed to load image catalog")

    async def _enforce_limit(self, session: AsyncSession) -> List[str]:
        await session.flush()
        total = await session.scalar(select(func.count()).select_from(CatalogRecord))
        excess = (total or 0) - self.max_catalog_count
        if excess <= 0:
            return []
        result = await session.execute(
            select(CatalogRecord.id)
            .order_by(CatalogRecord.last_access_date.asc(), CatalogRecord.id.asc())
            .limit(excess)
        )
        ids = list(result.scalars())
        await session.execute(delete(CatalogRecord).where(CatalogRecord.id.in_(ids)))
        log.info("Evicted %d catalog entries over limit %d", len(ids), self.max_catalog_count)
        return ids

    async def _record_access(
        self,
        content_key: str,
        file_path: str,
        file_name: str,
        catalog_type: CatalogType,
        relative_path: Optional[str],
        width: Optional[int],
        height: Optional[int],
        file_size: Optional[int],
        image_format: Optional[str],
    ) -> Optional[CatalogEntry]:
        if not self._store.is_initialized:
            log.debug("Catalog record skipped: store not initialized")
            return None
        key = extract_content_key(content_key)
        now = self._clock()
        evicted: List[str] = []
        try:
            async with self._store.transaction() as session:
                record = await session.get(CatalogRecord, key)
                if record is not None:
                    record.last_access_date = now
                    record.access_count += 1
                    record.file_path = file_path
                    record.file_name = file_name
                    record.catalog_type = catalog_type.value
                    record.relative_path = relative_path
                    # Keep known metadata when the caller has none
                    if width is not None:
                        record.image_width = width
                    if height is not None:
                        record.image_height = height
                    if file_size is not None:
                        record.file_size = file_size
                    if image_format is not None:
                        record.image_format = image_format
                else:
                    record = CatalogRecord(
                        id=key,
                        file_key=key,
                        file_path=file_path,
                        file_name=file_name,
                        catalog_type=catalog_type.value,
                        relative_path=relative_path,
                        last_access_date=now,
                        access_count=1,
                        image_width=width,
                        image_height=height,
                        file_size=file_size,
                        image_format=image_format,
                    )
                    session.add(record)
                    evicted = await self._enforce_limit(session)
                entry = record.to_entry()
        except _STORE_ERRORS:
            log.exception("Failed to record image access for %s", file_name)
            return None
        await self.load()
        self._emit_changed()
        if key in evicted:
            log.info("New catalog entry %s is older than every kept entry and was evicted", key)
            return None
        return entry

    async def record_standalone_access(
        self,
        content_key: str,
        file_path: str,
        file_name: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        file_size: Optional[int] = None,
        image_format: Optional[str] = None,
    ) -> Optional[CatalogEntry]:
        """Record a view of an image file opened on its own."""
        return await self._record_access(
            content_key, file_path, file_name, CatalogType.STANDALONE, None,
            width, height, file_size, image_format,
        )

    async def record_archive_content_access(
        self,
        content_key: str,
        parent_path: str,
        relative_path: str,
        file_name: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        file_size: Optional[int] = None,
        image_format: Optional[str] = None,
    ) -> Optional[CatalogEntry]:
        """Record a view of an image inside the archive or folder at parent_path."""
        return await self._record_access(
            content_key, parent_path, file_name, CatalogType.ARCHIVE_CONTENT, relative_path,
            width, height, file_size, image_format,
        )

    async def _update(self, entry_id: str, **values) -> bool:
        if not self._store.is_initialized:
            return False
        try:
            async with self._store.transaction() as session:
                record = await session.get(CatalogRecord, entry_id)
                if record is None:
                    return False
                for name, value in values.items():
                    setattr(record, name, value)
        except _STORE_ERRORS:
            log.exception("Failed to update catalog entry %s", entry_id)
            return False
        await self.load()
        self._emit_changed()
        return True

    async def update_memo(self, entry_id: str, memo: Optional[str]) -> bool:
        return await self._update(entry_id, memo=memo or None)

    async def set_tags(self, entry_id: str, tags: List[str]) -> bool:
        """Replace the tags; blanks and duplicates are dropped, order is kept."""
        cleaned: List[str] = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in cleaned:
                cleaned.append(tag)
        return await self._update(entry_id, tags=json.dumps(cleaned) if cleaned else None)

    async def remove_entry(self, entry_id: str) -> bool:
        if not self._store.is_initialized:
            return False
        try:
            async with self._store.transaction() as session:
                result = await session.execute(delete(CatalogRecord).where(CatalogRecord.id == entry_id))
                removed = result.rowcount
        except _STORE_ERRORS:
            log.exception("Failed to remove catalog entry %s", entry_id)
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
                result = await session.execute(delete(CatalogRecord))
                removed = result.rowcount
        except _STORE_ERRORS:
            log.exception("Failed to clear image catalog")
            return 0
        self._catalog = ()
        self._emit_changed()
        return removed

    async def get_entry(self, entry_id: str) -> Optional[CatalogEntry]:
        if not self._store.is_initialized:
            return None
        try:
            async with self._store.session() as session:
                record = await session.get(CatalogRecord, entry_id)
                return record.to_entry() if record is not None else None
        except _STORE_ERRORS:
            log.exception("Failed to read catalog entry %s", entry_id)
            return None
