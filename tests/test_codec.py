"""Tests for history export and import."""

import json
from pathlib import Path

import pytest
import pytest_asyncio

from pageledger.db.session import SchemaStore
from pageledger.errors import ImportDecodeError
from pageledger.history.models import FileIdentityChoice, PageSettings
from pageledger.history.service import HistoryLedger
from pageledger.identity import derive_entry_id
from pageledger.transfer.codec import HistoryCodec, decode_document, normalize_items
from pageledger.transfer.models import EXPORT_FORMAT_VERSION, ImportMode

KEY_A = "100-aaaaaaaaaaaaaaaa"
KEY_B = "200-bbbbbbbbbbbbbbbb"
KEY_C = "300-cccccccccccccccc"


def _item(entry_id, key, name, date, count=1, memo=None, ref=None, settings=None) -> dict:
    entry = {
        "id": entry_id,
        "fileKey": key,
        "filePath": f"/f/{name}",
        "fileName": name,
        "lastAccessDate": date,
        "accessCount": count,
    }
    if memo is not None:
        entry["memo"] = memo
    if ref is not None:
        entry["pageSettingsRef"] = ref
    item = {"entry": entry}
    if settings is not None:
        item["settings"] = settings
    return item


def _document(*items: dict) -> dict:
    return {"version": 2, "exportDate": "2024-02-01T00:00:00Z", "entryCount": len(items), "entries": list(items)}


@pytest_asyncio.fixture
async def other_ledger(tmp_path: Path, clock):
    store = SchemaStore(tmp_path / "other")
    await store.open()
    led = HistoryLedger(store, clock=clock)
    await led.load()
    yield led
    await store.close()


@pytest.mark.asyncio
async def test_export_document_shape(ledger, clock) -> None:
    """camelCase keys, newest first, resolved settings included."""
    a = await ledger.record_access(KEY_A, "/f/a.cbz", "a.cbz")
    await ledger.settings.save(a.id, PageSettings(hidden_page_indices=[2]))
    await ledger.record_access_with_choice(KEY_A, "/f/b.cbz", "b.cbz", a, FileIdentityChoice.TREAT_AS_SAME)
    data = json.loads(await HistoryCodec(ledger, clock).export_json())
    assert data["version"] == EXPORT_FORMAT_VERSION
    assert data["entryCount"] == 2
    assert "exportDate" in data
    first, second = data["entries"]
    assert first["entry"]["fileName"] == "b.cbz"
    assert first["entry"]["pageSettingsRef"] == a.id
    assert first["settings"]["hiddenPageIndices"] == [2]
    assert second["entry"]["id"] == a.id
    assert second["entry"]["accessCount"] == 1


@pytest.mark.asyncio
async def test_export_then_replace_import_restores_entries(ledger, other_ledger, clock) -> None:
    a = await ledger.record_access(KEY_A, "/f/a.cbz", "a.cbz")
    await ledger.settings.save(a.id, PageSettings(hidden_page_indices=[2]))
    await ledger.update_memo(a.id, "favourite")
    b = await ledger.record_access_with_choice(KEY_A, "/f/b.cbz", "b.cbz", a, FileIdentityChoice.TREAT_AS_SAME)
    exported = await HistoryCodec(ledger, clock).export_json()

    result = await HistoryCodec(other_ledger, clock).import_history(exported, ImportMode.REPLACE)
    assert result.success
    assert result.imported_count == 2
    assert [e.id for e in other_ledger.history] == [e.id for e in ledger.history]
    assert (await other_ledger.get_entry(a.id)).memo == "favourite"
    assert (await other_ledger.get_entry(b.id)).page_settings_ref == a.id
    assert (await other_ledger.settings.load(b.id)).hidden_page_indices == [2]


@pytest.mark.asyncio
async def test_replace_drops_existing_and_duplicates(ledger, clock) -> None:
    """REPLACE leaves exactly the distinct document entries."""
    await ledger.record_access(KEY_C, "/f/c.cbz", "c.cbz")
    doc = _document(
        _item("e1", KEY_A, "a.cbz", "2024-01-02T00:00:00"),
        _item("e2", KEY_B, "b.cbz", "2024-01-03T00:00:00"),
        _item("e1", KEY_A, "a-dup.cbz", "2024-01-04T00:00:00"),
    )
    result = await HistoryCodec(ledger, clock).import_history(doc, ImportMode.REPLACE)
    assert result.success
    assert result.imported_count == 2
    assert {e.id for e in ledger.history} == {"e1", "e2"}
    assert (await ledger.get_entry("e1")).file_name == "a.cbz"


@pytest.mark.asyncio
async def test_merge_adds_new_and_updates_memos_only(ledger, clock) -> None:
    """Known ids only take a differing non-empty memo; unknown ids are added."""
    a = await ledger.record_access(KEY_A, "/f/a.cbz", "a.cbz")
    doc = _document(
        _item(a.id, KEY_A, "a.cbz", "2020-01-01T00:00:00", count=9, memo="note"),
        _item("new", KEY_B, "b.cbz", "2020-01-01T00:00:00"),
    )
    codec = HistoryCodec(ledger, clock)
    result = await codec.import_history(json.dumps(doc), ImportMode.MERGE)
    assert result.success
    assert (result.imported_count, result.updated_count) == (1, 1)
    assert result.message == "Imported 1 entry, updated 1 memo(s)"
    stored = await ledger.get_entry(a.id)
    assert stored.memo == "note"
    assert stored.access_count == 1
    assert ledger.count == 2

    again = await codec.import_history(json.dumps(doc), ImportMode.MERGE)
    assert (again.imported_count, again.updated_count) == (0, 0)
    assert ledger.count == 2


@pytest.mark.asyncio
async def test_merge_respects_capacity(store, clock) -> None:
    ledger = HistoryLedger(store, max_history_count=2, clock=clock)
    await ledger.record_access(KEY_A, "/f/a.cbz", "a.cbz")
    doc = _document(
        _item("old1", KEY_B, "b.cbz", "2020-01-01T00:00:00"),
        _item("old2", KEY_C, "c.cbz", "2020-01-02T00:00:00"),
    )
    result = await HistoryCodec(ledger, clock).import_history(doc, ImportMode.MERGE)
    assert result.success
    assert {e.id for e in ledger.history} == {derive_entry_id("a.cbz", KEY_A), "old2"}


@pytest.mark.asyncio
async def test_legacy_document_ids_are_rederived(ledger, clock) -> None:
    """A document without version is format 1: ids come from name and key, pageSettings is accepted."""
    doc = {
        "entries": [
            {
                "entry": {
                    "id": "a.cbz-" + KEY_A,
                    "fileKey": "a.cbz-" + KEY_A,
                    "filePath": "/f/a.cbz",
                    "fileName": "a.cbz",
                    "lastAccessDate": "2024-01-01T09:00:00+09:00",
                    "accessCount": 3,
                    "pageSettingsRef": "whatever",
                },
                "pageSettings": {"hiddenPageIndices": [1]},
            }
        ]
    }
    result = await HistoryCodec(ledger, clock).import_history(doc, ImportMode.REPLACE)
    assert result.success
    entry_id = derive_entry_id("a.cbz", KEY_A)
    stored = await ledger.get_entry(entry_id)
    assert stored.file_key == KEY_A
    assert stored.page_settings_ref is None
    assert stored.access_count == 3
    assert stored.last_access_date.hour == 0
    assert (await ledger.settings.load(entry_id)).hidden_page_indices == [1]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", ["{not json", json.dumps({"version": 99, "entries": []}), json.dumps({"entries": 5})])
async def test_rejected_import_leaves_store_unchanged(ledger, clock, payload) -> None:
    await ledger.record_access(KEY_A, "/f/a.cbz", "a.cbz")
    result = await HistoryCodec(ledger, clock).import_history(payload, ImportMode.REPLACE)
    assert not result.success
    assert result.imported_count == 0
    await ledger.load()
    assert ledger.count == 1


@pytest.mark.asyncio
async def test_import_without_store(tmp_path: Path, clock) -> None:
    ledger = HistoryLedger(SchemaStore(tmp_path / "closed"), clock=clock)
    result = await HistoryCodec(ledger, clock).import_history(_document(), ImportMode.MERGE)
    assert not result.success


def test_decode_document_rejects_newer_version() -> None:
    with pytest.raises(ImportDecodeError):
        decode_document({"version": EXPORT_FORMAT_VERSION + 1})
    with pytest.raises(ImportDecodeError):
        decode_document(42)


def test_normalize_refs() -> None:
    """Self and dangling refs are dropped, chains collapse to their owner, cycles break."""
    doc = decode_document(_document(
        _item("a", KEY_A, "a.cbz", "2024-01-01T00:00:00", ref="b"),
        _item("b", KEY_A, "b.cbz", "2024-01-01T00:00:00", ref="c"),
        _item("c", KEY_A, "c.cbz", "2024-01-01T00:00:00"),
        _item("d", KEY_A, "d.cbz", "2024-01-01T00:00:00", ref="d"),
        _item("e", KEY_A, "e.cbz", "2024-01-01T00:00:00", ref="missing"),
        _item("x", KEY_A, "x.cbz", "2024-01-01T00:00:00", ref="y"),
        _item("y", KEY_A, "y.cbz", "2024-01-01T00:00:00", ref="x"),
    ))
    refs = {item.entry.id: item.entry.page_settings_ref for item in normalize_items(doc)}
    assert refs == {"a": "c", "b": "c", "c": None, "d": None, "e": None, "x": None, "y": None}


def test_normalize_keeps_refs_to_stored_entries() -> None:
    doc = decode_document(_document(_item("n", KEY_A, "n.cbz", "2024-01-01T00:00:00", ref="stored")))
    items = normalize_items(doc, {"stored": None})
    assert items[0].entry.page_settings_ref == "stored"
