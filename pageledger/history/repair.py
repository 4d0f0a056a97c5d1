"""Re-keying and merging of history rows (shared by migrations and the ledger).

Works on a Core connection so it can run inside a migration step before the
ORM layer is in use.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from pageledger.history.models import HistoryRecord
from pageledger.identity import derive_entry_id, extract_content_key, is_corrupted_content_key

log = logging.getLogger(__name__)

history = HistoryRecord.__table__

# Columns read by the merge; present from schema version 2 on
_MERGE_COLUMNS = (
    "id", "file_key", "file_path", "file_name", "last_access_date", "access_count",
    "page_settings", "memo", "page_settings_ref", "view_state",
)


@dataclass
class RepairReport:
    """Outcome of repair_corrupted_keys."""

    repaired: int = 0
    merged: int = 0
    skipped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.repaired or self.merged)


def merged_values(keep: dict, absorbed: dict) -> dict:
    """
    Column values for keep after absorbing absorbed.

    Access counts add up, the later access wins, and settings, memo and view state
    come from keep when it has them, else from absorbed.
    """
    keep_date = keep["last_access_date"]
    absorbed_date = absorbed["last_access_date"]
    return {
        "access_count": (keep["access_count"] or 1) + (absorbed["access_count"] or 1),
        "last_access_date": max(keep_date, absorbed_date) if keep_date and absorbed_date else keep_date or absorbed_date,
        "page_settings": keep["page_settings"] or absorbed["page_settings"],
        "memo": keep["memo"] or absorbed["memo"],
        "view_state": keep["view_state"] or absorbed["view_state"],
        "page_settings_ref": keep["page_settings_ref"] or absorbed["page_settings_ref"],
    }


async def _load_rows(conn: AsyncConnection) -> Dict[str, dict]:
    cols = [history.c[name] for name in _MERGE_COLUMNS]
    result = await conn.execute(select(*cols))
    return {row["id"]: dict(row) for row in result.mappings().all()}


async def _repoint_refs(conn: AsyncConnection, rows: Dict[str, dict], old_id: str, new_id: str) -> None:
    await conn.execute(
        update(history).where(history.c.page_settings_ref == old_id).values(page_settings_ref=new_id)
    )
    for row in rows.values():
        if row["page_settings_ref"] == old_id:
            row["page_settings_ref"] = new_id


async def _merge_into(conn: AsyncConnection, rows: Dict[str, dict], keep_id: str, absorbed_id: str) -> None:
    """Fold absorbed_id into keep_id and delete absorbed_id."""
    values = merged_values(rows[keep_id], rows[absorbed_id])
    if values["page_settings_ref"] in (keep_id, absorbed_id):
        values["page_settings_ref"] = None
    await conn.execute(update(history).where(history.c.id == keep_id).values(**values))
    await conn.execute(delete(history).where(history.c.id == absorbed_id))
    rows[keep_id].update(values)
    del rows[absorbed_id]
    await _repoint_refs(conn, rows, absorbed_id, keep_id)


async def _move(conn: AsyncConnection, rows: Dict[str, dict], old_id: str, new_id: str, file_key: str) -> None:
    await conn.execute(update(history).where(history.c.id == old_id).values(id=new_id, file_key=file_key))
    row = rows.pop(old_id)
    row["id"] = new_id
    row["file_key"] = file_key
    rows[new_id] = row
    if new_id != old_id:
        await _repoint_refs(conn, rows, old_id, new_id)


async def _clear_self_refs(conn: AsyncConnection) -> None:
    await conn.execute(
        update(history).where(history.c.page_settings_ref == history.c.id).values(page_settings_ref=None)
    )


async def rekey_legacy_rows(conn: AsyncConnection) -> int:
    """
    Normalize legacy content keys and give rows keyed by their raw content key
    a derived entry id. A row whose new id already exists is merged into it.
    Returns the number of rows changed.
    """
    rows = await _load_rows(conn)
    changed = 0
    for old_id in list(rows):
        row = rows.get(old_id)
        if row is None:
            continue
        raw_key = row["file_key"]
        key = extract_content_key(raw_key)
        new_id = derive_entry_id(row["file_name"], key) if old_id == raw_key else old_id
        if new_id == old_id and key == raw_key:
            continue
        if new_id != old_id and new_id in rows:
            row["file_key"] = key
            await _merge_into(conn, rows, new_id, old_id)
            log.info("Merged legacy history row %s into %s", old_id, new_id)
        else:
            await _move(conn, rows, old_id, new_id, key)
            log.debug("Re-keyed history row %s -> %s", old_id, new_id)
        changed += 1
    await _clear_self_refs(conn)
    return changed


async def repair_corrupted_keys(
    conn: AsyncConnection,
    resolve_key: Callable[[str], Optional[str]],
) -> RepairReport:
    """
    Recompute content keys that contain debug-representation artifacts from the live file.

    A repaired row that collides with an existing correct row is merged into it
    (the correct row wins settings and memo). Rows whose file cannot be read are
    left as they are and counted as skipped.
    """
    report = RepairReport()
    rows = await _load_rows(conn)
    corrupted = [rid for rid, row in rows.items() if is_corrupted_content_key(row["file_key"])]
    for old_id in corrupted:
        row = rows.get(old_id)
        if row is None:
            continue
        key = await asyncio.to_thread(resolve_key, row["file_path"])
        if not key:
            log.warning("Cannot repair key of %s: file not accessible (%s)", row["file_name"], row["file_path"])
            report.skipped += 1
            continue
        new_id = derive_entry_id(row["file_name"], key)
        if new_id != old_id and new_id in rows:
            await _merge_into(conn, rows, new_id, old_id)
            report.merged += 1
            log.info("Merged corrupted history row %s into %s", old_id, new_id)
        else:
            await _move(conn, rows, old_id, new_id, key)
            report.repaired += 1
            log.info("Repaired content key of %s", row["file_name"])
    if report.changed:
        await _clear_self_refs(conn)
    return report
