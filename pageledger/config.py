"""Configuration from environment, platform data directory and JSON side files."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger(__name__)

STORE_FILENAME = "pageledger.db"
META_FILENAME = "store_meta.json"
WINDOW_SESSION_FILENAME = "window_session.json"
LOG_FILENAME = "pageledger.log"


def _default_data_dir() -> Path:
    """Platform-specific application directory (no admin)."""
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
        return Path(base) / "PageLedger"
    if os.environ.get("XDG_CONFIG_HOME"):
        return Path(os.environ["XDG_CONFIG_HOME"]) / "pageledger"
    return Path.home() / ".config" / "pageledger"


def _default_legacy_data_dir() -> Path:
    """Where builds before the platform directory kept the store."""
    return Path.home() / ".pageledger"


class Settings(BaseSettings):
    """Store and scheduler settings from env (PAGELEDGER_*)."""

    model_config = SettingsConfigDict(env_prefix="PAGELEDGER_", extra="ignore")

    # Storage
    data_dir: Path = Field(default_factory=_default_data_dir)
    legacy_data_dir: Optional[Path] = Field(default_factory=_default_legacy_data_dir)

    # Capacity (oldest-by-last-access eviction above these)
    max_history_count: int = 50
    max_catalog_count: int = 500
    max_session_group_count: int = 50

    # Session restore
    session_concurrent_loading_limit: int = 1
    session_debounce_seconds: float = 0.3

    # Background existence sweep: pause between two checks
    accessibility_sweep_delay: float = 0.02

    # Content key of a file on disk hashes this many leading bytes
    content_hash_chunk_bytes: int = 1024 * 1024

    # Keyring service for archive passwords
    credential_service: str = "PageLedger-ArchivePasswords"

    # Logging (empty log_file = pageledger.log in data_dir; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""

    @field_validator(
        "max_history_count",
        "max_catalog_count",
        "max_session_group_count",
        "session_concurrent_loading_limit",
    )
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("session_debounce_seconds", "accessibility_sweep_delay")
    @classmethod
    def _not_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()


def get_data_dir() -> Path:
    """Application data directory (created if missing)."""
    d = get_settings().data_dir
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_window_session_path() -> Path:
    """Path to the file storing the windows open at last exit."""
    return get_data_dir() / WINDOW_SESSION_FILENAME


def get_log_path() -> Path:
    """Log file path: PAGELEDGER_LOG_FILE or pageledger.log in the data dir."""
    settings = get_settings()
    if settings.log_file and settings.log_file.strip():
        return Path(settings.log_file)
    return get_data_dir() / LOG_FILENAME


def read_json_file(path: Path) -> Optional[dict]:
    """Parse a JSON object file; None when missing or unreadable."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        log.warning("Could not read %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def write_json_file(path: Path, data: dict) -> None:
    """Write data as JSON via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)
