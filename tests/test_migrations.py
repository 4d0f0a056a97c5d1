"""Tests for the migration ladder against stores written by older builds."""

from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import make_v0_store, table_columns
from pageledger.db import migrations
from pageledger.db.session import CURRENT_SCHEMA_VERSION, SchemaStore
from pageledger.history.models import HistoryRecord, PageSettings
from pageledger.history.service import HistoryLedger
from pageledger.identity import derive_entry_id

KEY_A = "100-aaaaaaaaaaaaaaaa"
KEY_B = "200-bbbbbbbbbbbbbbbb"
KEY_C = "300-cccccccccccccccc"
T1 = "2024-01-01 10:00:00.000000"
T2 = "2024-01-02 10:00:00.000000"
T3 = "2024-01-03 10:00:00.000000"


async def _records(store: SchemaStore):
    async with store.session() as session:
        result = await session.execute(select(HistoryRecord))
        return {r.id: r for r in result.scalars()}


def test_ladder_is_ordered_and_matches_current_version() -> None:
    """One step per version, in order, ending at CURRENT_SCHEMA_VERSION."""
    versions = [v for v, _ in migrations.MIGRATIONS]
    assert versions == list(range(CURRENT_SCHEMA_VERSION))


@pytest.mark.asyncio
async def test_v0_store_is_migrated_to_current(data_dir: Path) -> None:
    """Columns are added, catalog tables exist and the version is recorded."""
    db = make_v0_store(data_dir, [(KEY_A, KEY_A, "/f/a.cbz", "a.cbz", T1, 2, None)])
    store = SchemaStore(data_dir)
    await store.open()
    try:
        assert store.is_initialized
        assert store.failed_migrations == []
        assert store.read_stored_version() == CURRENT_SCHEMA_VERSION
        cols = table_columns(db, "history_entries")
        assert {"memo", "page_settings_ref", "view_state"} <= cols
        assert "tags" in table_columns(db, "catalog_entries")
        assert "entries_data" in table_columns(db, "session_groups")
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_legacy_rows_are_rekeyed(data_dir: Path) -> None:
    """Rows keyed by their raw content key get derived ids; legacy key forms are normalized."""
    make_v0_store(data_dir, [
        (KEY_A, KEY_A, "/f/a.cbz", "a.cbz", T1, 2, None),
        ("c.cbz-" + KEY_C, "c.cbz-" + KEY_C, "/f/c.cbz", "c.cbz", T2, 1, None),
    ])
    store = SchemaStore(data_dir)
    await store.open()
    try:
        records = await _records(store)
        assert set(records) == {derive_entry_id("a.cbz", KEY_A), derive_entry_id("c.cbz", KEY_C)}
        assert records[derive_entry_id("a.cbz", KEY_A)].access_count == 2
        assert records[derive_entry_id("c.cbz", KEY_C)].file_key == KEY_C
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_rekey_collision_merges(data_dir: Path) -> None:
    """A legacy row whose derived id exists is merged: counts add, latest access, existing settings kept."""
    settings = PageSettings(hidden_page_indices=[3]).to_json()
    new_id = derive_entry_id("b.cbz", KEY_B)
    make_v0_store(data_dir, [
        (KEY_B, KEY_B, "/old/b.cbz", "b.cbz", T3, 2, None),
        (new_id, KEY_B, "/f/b.cbz", "b.cbz", T1, 3, settings),
    ])
    store = SchemaStore(data_dir)
    await store.open()
    try:
        records = await _records(store)
        assert list(records) == [new_id]
        merged = records[new_id]
        assert merged.access_count == 5
        assert merged.last_access_date.day == 3
        assert PageSettings.from_json(merged.page_settings).hidden_page_indices == [3]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_corrupted_keys_are_repaired_from_live_file(data_dir: Path) -> None:
    """Corrupted keys are recomputed; a collision merges into the correct entry; unreadable files are skipped."""
    correct_id = derive_entry_id("a.cbz", KEY_A)
    make_v0_store(data_dir, [
        (correct_id, KEY_A, "/f/a.cbz", "a.cbz", T1, 1, None),
        ("bad-a", 'Optional("' + KEY_A + '")', "/f/a.cbz", "a.cbz", T2, 4, PageSettings(hidden_page_indices=[1]).to_json()),
        ("bad-c", 'Optional("' + KEY_C + '")', "/f/c.cbz", "c.cbz", T1, 1, None),
        ("bad-gone", "b'missing'", "/gone/x.cbz", "x.cbz", T1, 1, None),
    ])
    live = {"/f/a.cbz": KEY_A, "/f/c.cbz": KEY_C}
    store = SchemaStore(data_dir, content_key_resolver=live.get)
    await store.open()
    try:
        records = await _records(store)
        assert set(records) == {correct_id, derive_entry_id("c.cbz", KEY_C), "bad-gone"}
        merged = records[correct_id]
        assert merged.access_count == 5
        assert merged.last_access_date.day == 2
        # The correct entry had no settings, so the corrupted one's are kept
        assert PageSettings.from_json(merged.page_settings).hidden_page_indices == [1]
        assert records[derive_entry_id("c.cbz", KEY_C)].file_key == KEY_C
        assert records["bad-gone"].file_key == "b'missing'"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_skipped_corrupted_key_can_be_repaired_later(data_dir: Path) -> None:
    """The ledger's repair retries entries whose file was unavailable during migration."""
    make_v0_store(data_dir, [("bad", 'Optional("x")', "/f/late.cbz", "late.cbz", T1, 1, None)])
    live = {}
    store = SchemaStore(data_dir, content_key_resolver=live.get)
    await store.open()
    try:
        ledger = HistoryLedger(store)
        await ledger.load()
        assert [e.id for e in ledger.history] == ["bad"]
        live["/f/late.cbz"] = KEY_C
        report = await ledger.repair_corrupted_keys()
        assert (report.repaired, report.merged, report.skipped) == (1, 0, 0)
        assert [e.id for e in ledger.history] == [derive_entry_id("late.cbz", KEY_C)]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_ladder_resumes_from_stored_version(data_dir: Path) -> None:
    """A store recorded at version 2 only runs the later steps."""
    store = SchemaStore(data_dir, current_version=2)
    await store.open()
    await store.close()
    assert store.read_stored_version() == 2

    store = SchemaStore(data_dir)
    await store.open()
    try:
        assert store.read_stored_version() == CURRENT_SCHEMA_VERSION
        assert store.failed_migrations == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_failed_step_is_logged_and_retried(monkeypatch, data_dir: Path) -> None:
    """A failing step does not stop the open or later steps; the version stops before it."""
    calls = []

    async def failing(conn, store):
        calls.append("fail")
        raise OperationalError("ALTER TABLE", {}, Exception("disk I/O error"))

    async def counting(conn, store):
        calls.append("last")

    original = list(migrations.MIGRATIONS)
    ladder = original[:3] + [(3, failing), (4, counting)]
    monkeypatch.setattr(migrations, "MIGRATIONS", ladder)
    make_v0_store(data_dir, [(KEY_A, KEY_A, "/f/a.cbz", "a.cbz", T1, 1, None)])

    store = SchemaStore(data_dir)
    await store.open()
    assert store.is_initialized
    assert store.failed_migrations == [3]
    assert store.read_stored_version() == 3
    assert calls == ["fail", "last"]
    await store.close()

    monkeypatch.setattr(migrations, "MIGRATIONS", original[:3] + [(3, original[3][1]), (4, counting)])
    store = SchemaStore(data_dir)
    await store.open()
    try:
        assert store.failed_migrations == []
        assert store.read_stored_version() == CURRENT_SCHEMA_VERSION
        assert calls == ["fail", "last", "last"]
    finally:
        await store.close()
