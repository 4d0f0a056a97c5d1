"""Ordered schema migration ladder.

Each entry is (from_version, step). A step moves the store from from_version to
from_version + 1, runs in its own transaction and must be safe to run again.
"""

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, List, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from pageledger.catalog.models import CatalogRecord
from pageledger.history import repair
from pageledger.history.models import HistoryRecord  # noqa: F401 - register with Base
from pageledger.sessions.models import SessionGroupRecord

if TYPE_CHECKING:
    from pageledger.db.session import SchemaStore

log = logging.getLogger(__name__)

MigrationStep = Callable[[AsyncConnection, "SchemaStore"], Awaitable[None]]


def _column_names(conn, table: str) -> set:
    cursor = conn.execute(text(f"PRAGMA table_info({table})"))
    # SQLite returns (cid, name, type, notnull, dflt_value, pk)
    return {row[1] for row in cursor.fetchall()}


def _add_column_if_missing(conn, table: str, column: str, ddl_type: str) -> None:
    if column in _column_names(conn, table):
        return
    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
    log.info("Added column %s.%s", table, column)


async def _add_memo(conn: AsyncConnection, store: "SchemaStore") -> None:
    await conn.run_sync(_add_column_if_missing, "history_entries", "memo", "TEXT")


async def _add_settings_ref_and_view_state(conn: AsyncConnection, store: "SchemaStore") -> None:
    await conn.run_sync(_add_column_if_missing, "history_entries", "page_settings_ref", "VARCHAR(64)")
    await conn.run_sync(_add_column_if_missing, "history_entries", "view_state", "TEXT")


async def _rekey_legacy_entries(conn: AsyncConnection, store: "SchemaStore") -> None:
    changed = await repair.rekey_legacy_rows(conn)
    if changed:
        log.info("Re-keyed %d legacy history row(s)", changed)


async def _add_catalog_and_session_tables(conn: AsyncConnection, store: "SchemaStore") -> None:
    tables = [CatalogRecord.__table__, SessionGroupRecord.__table__]
    await conn.run_sync(lambda c: CatalogRecord.metadata.create_all(c, tables=tables))
    await conn.run_sync(_add_column_if_missing, "catalog_entries", "tags", "TEXT")


async def _repair_corrupted_keys(conn: AsyncConnection, store: "SchemaStore") -> None:
    report = await repair.repair_corrupted_keys(conn, store.content_key_resolver)
    if report.changed or report.skipped:
        log.info(
            "Corrupted key repair: %d repaired, %d merged, %d skipped",
            report.repaired, report.merged, report.skipped,
        )


MIGRATIONS: List[Tuple[int, MigrationStep]] = [
    (0, _add_memo),
    (1, _add_settings_ref_and_view_state),
    (2, _rekey_legacy_entries),
    (3, _add_catalog_and_session_tables),
    (4, _repair_corrupted_keys),
]


async def apply_migrations(
    engine: AsyncEngine,
    start_version: int,
    current_version: int,
    store: "SchemaStore",
) -> Tuple[int, List[int]]:
    """
    Run every step with start_version <= from_version < current_version.

    A failed step is logged and the later steps still run. Returns the version to
    record (just before the first failed step, so it is retried next open) and the
    from_version of each failed step.
    """
    failed: List[int] = []
    for from_version, step in MIGRATIONS:
        if from_version < start_version or from_version >= current_version:
            continue
        try:
            async with engine.begin() as conn:
                await step(conn, store)
        except (SQLAlchemyError, OSError, ValueError):
            log.exception("Migration %d -> %d failed", from_version, from_version + 1)
            failed.append(from_version)
            continue
        log.info("Applied migration %d -> %d", from_version, from_version + 1)
    if failed:
        return failed[0], failed
    return max(start_version, current_version), failed
