"""Pytest configuration: isolated data dir per test, an opened store and a deterministic clock."""

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List

import pytest
import pytest_asyncio


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path):
    """Keep settings, logs and the legacy location inside tmp_path."""
    monkeypatch.setenv("PAGELEDGER_DATA_DIR", str(tmp_path / "appdata"))
    monkeypatch.setenv("PAGELEDGER_LEGACY_DATA_DIR", str(tmp_path / "legacy"))
    monkeypatch.delenv("PAGELEDGER_LOG_FILE", raising=False)


class FakeClock:
    """Each call returns a time one step later than the previous one."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0), step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        self.now = self.now + self.step
        return self.now


class FakeCredentials:
    """Records delete_password calls instead of touching the OS keyring."""

    def __init__(self, fail: bool = False) -> None:
        self.deleted: List[str] = []
        self.fail = fail

    def delete_password(self, path: str) -> None:
        if self.fail:
            raise RuntimeError("keyring locked")
        self.deleted.append(path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest_asyncio.fixture
async def store(data_dir: Path):
    """Freshly opened store in tmp_path."""
    from pageledger.db.session import SchemaStore

    s = SchemaStore(data_dir)
    await s.open()
    assert s.is_initialized
    yield s
    await s.close()


@pytest_asyncio.fixture
async def ledger(store, clock, credentials):
    from pageledger.history.service import HistoryLedger
    from pageledger.ui.notify import Notifier

    led = HistoryLedger(store, max_history_count=50, credentials=credentials, notifier=Notifier(), clock=clock)
    await led.load()
    return led


V0_HISTORY_DDL = (
    "CREATE TABLE history_entries ("
    "id VARCHAR(64) PRIMARY KEY, "
    "file_key VARCHAR(255) NOT NULL, "
    "file_path TEXT NOT NULL, "
    "file_name TEXT NOT NULL, "
    "last_access_date DATETIME NOT NULL, "
    "access_count INTEGER NOT NULL, "
    "page_settings TEXT)"
)


def make_v0_store(directory: Path, rows: Iterable[tuple]) -> Path:
    """
    Write a store as built before schema versioning (no meta file, no memo/ref columns).
    rows: (id, file_key, file_path, file_name, last_access_date 'YYYY-MM-DD HH:MM:SS.ffffff', access_count, page_settings)
    """
    directory.mkdir(parents=True, exist_ok=True)
    db = directory / "pageledger.db"
    con = sqlite3.connect(db)
    try:
        con.execute(V0_HISTORY_DDL)
        con.executemany("INSERT INTO history_entries VALUES (?, ?, ?, ?, ?, ?, ?)", list(rows))
        con.commit()
    finally:
        con.close()
    return db


def table_columns(db: Path, table: str) -> set:
    con = sqlite3.connect(db)
    try:
        return {row[1] for row in con.execute(f"PRAGMA table_info({table})")}
    finally:
        con.close()
