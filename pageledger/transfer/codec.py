"""Export and import of the history ledger as a versioned JSON document."""

import logging
from typing import Dict, List, Optional, Set, Union

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from pageledger.errors import ImportDecodeError, PageLedgerError
from pageledger.history.models import HistoryRecord
from pageledger.history.service import HistoryLedger
from pageledger.history.settings_ref import load_settings, owner_id
from pageledger.identity import derive_entry_id, extract_content_key
from pageledger.timeutil import Clock, to_naive_utc, utcnow
from pageledger.transfer.models import (
    EXPORT_FORMAT_VERSION,
    ExportDocument,
    ExportItem,
    ImportMode,
    ImportResult,
)

log = logging.getLogger(__name__)

ImportSource = Union[str, bytes, dict, ExportDocument]


def decode_document(data: ImportSource) -> ExportDocument:
    """Parse and version-check an export document. Raises ImportDecodeError."""
    try:
        if isinstance(data, ExportDocument):
            document = data
        elif isinstance(data, (str, bytes)):
            document = ExportDocument.model_validate_json(data)
        elif isinstance(data, dict):
            document = ExportDocument.model_validate(data)
        else:
            raise ImportDecodeError(f"Unsupported import source: {type(data).__name__}")
    except ValidationError as e:
        raise ImportDecodeError(f"Invalid export document: {e.error_count()} error(s), first: {e.errors()[0]['msg']}") from e
    if document.format_version > EXPORT_FORMAT_VERSION:
        raise ImportDecodeError(
            f"Export format version {document.format_version} is newer than supported version {EXPORT_FORMAT_VERSION}"
        )
    return document


def _collapse_refs(refs: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """Point every reference at the end of its chain; cycles and self references become None."""
    out: Dict[str, Optional[str]] = {}
    for entry_id in refs:
        seen = {entry_id}
        target = refs[entry_id]
        while target is not None and refs.get(target) is not None and target not in seen:
            seen.add(target)
            target = refs[target]
        if target in seen:
            target = None
        out[entry_id] = target
    return out


def normalize_items(document: ExportDocument, known_refs: Optional[Dict[str, Optional[str]]] = None) -> List[ExportItem]:
    """
    Items to apply, in document order.

    Format 1 ids are re-derived from name and content key and their refs dropped.
    Duplicate ids keep the first item. Refs to ids neither in the document nor in
    known_refs (id -> ref of stored entries) are dropped, chains collapse to their owner.
    """
    legacy = document.format_version < 2
    items: Dict[str, ExportItem] = {}
    for item in document.entries:
        entry = item.entry
        key = extract_content_key(entry.file_key)
        updates = {"file_key": key, "last_access_date": to_naive_utc(entry.last_access_date)}
        if legacy:
            updates["id"] = derive_entry_id(entry.file_name, key)
            updates["page_settings_ref"] = None
        entry = entry.model_copy(update=updates)
        if entry.id in items:
            log.debug("Skipping duplicate import entry %s", entry.id)
            continue
        items[entry.id] = item.model_copy(update={"entry": entry})

    refs: Dict[str, Optional[str]] = dict(known_refs or {})
    for entry_id, item in items.items():
        ref = item.entry.page_settings_ref
        ref = owner_id(entry_id, ref)
        refs[entry_id] = ref if ref != entry_id else None
    for entry_id, ref in list(refs.items()):
        if ref is not None and ref not in refs:
            refs[entry_id] = None
    refs = _collapse_refs(refs)

    out = []
    for entry_id, item in items.items():
        ref = refs[entry_id]
        if ref != item.entry.page_settings_ref:
            item = item.model_copy(update={"entry": item.entry.model_copy(update={"page_settings_ref": ref})})
        out.append(item)
    return out


def _new_record(item: ExportItem) -> HistoryRecord:
    entry = item.entry
    # A referencing entry reads its owner's settings
    own_settings = item.settings if entry.page_settings_ref is None else None
    return HistoryRecord(
        id=entry.id,
        file_key=entry.file_key,
        file_path=entry.file_path,
        file_name=entry.file_name,
        last_access_date=entry.last_access_date,
        access_count=max(entry.access_count, 1),
        page_settings=own_settings.to_json() if own_settings is not None else None,
        memo=entry.memo or None,
        page_settings_ref=entry.page_settings_ref,
        view_state=entry.view_state.to_json() if entry.view_state is not None else None,
    )


class HistoryCodec:
    """Serializes the ledger to ExportDocument and applies documents back to it."""

    def __init__(self, ledger: HistoryLedger, clock: Clock = utcnow) -> None:
        self._ledger = ledger
        self._clock = clock

    async def export_history(self) -> ExportDocument:
        """Every entry, newest first, with its resolved settings. Empty when the store is unavailable."""
        items: List[ExportItem] = []
        store = self._ledger.store
        if store.is_initialized:
            try:
                async with store.session() as session:
                    result = await session.execute(
                        select(HistoryRecord).order_by(
                            HistoryRecord.last_access_date.desc(), HistoryRecord.id.desc()
                        )
                    )
                    for record in result.scalars():
                        settings = await load_settings(session, record)
                        items.append(ExportItem(entry=record.to_entry(), settings=settings))
            except (PageLedgerError, SQLAlchemyError):
                log.exception("Failed to export history")
                items = []
        return ExportDocument(
            version=EXPORT_FORMAT_VERSION,
            export_date=self._clock(),
            entry_count=len(items),
            entries=items,
        )

    async def export_json(self) -> str:
        document = await self.export_history()
        return document.model_dump_json(by_alias=True, indent=2)

    async def import_history(self, data: ImportSource, mode: ImportMode = ImportMode.MERGE) -> ImportResult:
        """
        Apply an export document in a single transaction.

        Never raises; on failure the store is unchanged and the result says why.
        """
        store = self._ledger.store
        if not store.is_initialized:
            return ImportResult(False, "History store is not available")
        try:
            document = decode_document(data)
        except ImportDecodeError as e:
            log.warning("Import rejected: %s", e)
            return ImportResult(False, str(e))

        imported = 0
        updated = 0
        try:
            async with store.transaction() as session:
                if mode == ImportMode.REPLACE:
                    items = normalize_items(document)
                    await session.execute(delete(HistoryRecord))
                    for item in items:
                        session.add(_new_record(item))
                    imported = len(items)
                else:
                    result = await session.execute(select(HistoryRecord.id, HistoryRecord.page_settings_ref))
                    stored_refs = {row[0]: row[1] for row in result.all()}
                    items = normalize_items(document, stored_refs)
                    stored_ids: Set[str] = set(stored_refs)
                    for item in items:
                        if item.entry.id in stored_ids:
                            if item.entry.memo:
                                record = await session.get(HistoryRecord, item.entry.id)
                                if record.memo != item.entry.memo:
                                    record.memo = item.entry.memo
                                    updated += 1
                            continue
                        session.add(_new_record(item))
                        imported += 1
                    await self._ledger.enforce_limit(session)
        except (PageLedgerError, SQLAlchemyError) as e:
            log.exception("Import failed")
            return ImportResult(False, f"Import failed: {e}")

        await self._ledger.load()
        self._ledger.notify_changed()
        message = f"Imported {imported} entr{'y' if imported == 1 else 'ies'}"
        if updated:
            message += f", updated {updated} memo(s)"
        log.info("%s (%s)", message, mode.value)
        return ImportResult(True, message, imported, updated)
