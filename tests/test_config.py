"""Tests for settings, data paths and JSON side files."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError


def test_settings_defaults() -> None:
    """Capacity, scheduling and keyring defaults."""
    from pageledger.config import Settings

    settings = Settings()
    assert settings.max_history_count == 50
    assert settings.max_catalog_count == 500
    assert settings.max_session_group_count == 50
    assert settings.session_concurrent_loading_limit == 1
    assert settings.session_debounce_seconds == pytest.approx(0.3)
    assert settings.accessibility_sweep_delay == pytest.approx(0.02)
    assert settings.content_hash_chunk_bytes == 1024 * 1024
    assert settings.credential_service == "PageLedger-ArchivePasswords"


def test_settings_from_env(monkeypatch, tmp_path: Path) -> None:
    """PAGELEDGER_* variables override defaults."""
    from pageledger.config import get_settings

    monkeypatch.setenv("PAGELEDGER_MAX_HISTORY_COUNT", "7")
    monkeypatch.setenv("PAGELEDGER_SESSION_CONCURRENT_LOADING_LIMIT", "3")
    monkeypatch.setenv("PAGELEDGER_DATA_DIR", str(tmp_path / "custom"))
    settings = get_settings()
    assert settings.max_history_count == 7
    assert settings.session_concurrent_loading_limit == 3
    assert settings.data_dir == tmp_path / "custom"


def test_settings_reject_zero_capacity(monkeypatch) -> None:
    """Capacities and the concurrency limit must be at least 1."""
    from pageledger.config import Settings

    monkeypatch.setenv("PAGELEDGER_MAX_HISTORY_COUNT", "0")
    with pytest.raises(ValidationError):
        Settings()


def test_settings_reject_negative_delay(monkeypatch) -> None:
    from pageledger.config import Settings

    monkeypatch.setenv("PAGELEDGER_ACCESSIBILITY_SWEEP_DELAY", "-1")
    with pytest.raises(ValidationError):
        Settings()


def test_path_helpers_use_data_dir(tmp_path: Path) -> None:
    """Window session and log files live in the data dir, which is created."""
    from pageledger import config

    data_dir = tmp_path / "appdata"
    assert config.get_data_dir() == data_dir
    assert data_dir.is_dir()
    assert config.get_window_session_path() == data_dir / "window_session.json"
    assert config.get_log_path() == data_dir / "pageledger.log"


def test_log_path_override(monkeypatch, tmp_path: Path) -> None:
    from pageledger import config

    monkeypatch.setenv("PAGELEDGER_LOG_FILE", str(tmp_path / "x.log"))
    assert config.get_log_path() == tmp_path / "x.log"


def test_default_data_dir_uses_xdg(monkeypatch, tmp_path: Path) -> None:
    """On POSIX the default follows XDG_CONFIG_HOME."""
    from pageledger import config

    monkeypatch.setattr(config.os, "name", "posix")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    assert config._default_data_dir() == tmp_path / "xdg" / "pageledger"


def test_write_and_read_json_file(tmp_path: Path) -> None:
    """write_json_file replaces the file; read_json_file parses it back."""
    from pageledger.config import read_json_file, write_json_file

    path = tmp_path / "sub" / "meta.json"
    write_json_file(path, {"schema_version": 3})
    assert read_json_file(path) == {"schema_version": 3}
    assert not (tmp_path / "sub" / "meta.json.tmp").exists()


def test_read_json_file_missing_or_invalid(tmp_path: Path) -> None:
    """Missing, unparseable and non-object files read as None."""
    from pageledger.config import read_json_file

    assert read_json_file(tmp_path / "missing.json") is None
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert read_json_file(bad) is None
    arr = tmp_path / "arr.json"
    arr.write_text(json.dumps([1, 2]), encoding="utf-8")
    assert read_json_file(arr) is None
