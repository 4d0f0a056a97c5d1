"""One-time move of the store from the legacy directory to the current data dir."""

import logging
import shutil
from pathlib import Path
from typing import Optional

from pageledger.config import META_FILENAME, STORE_FILENAME

log = logging.getLogger(__name__)

# SQLite keeps uncommitted pages in these companions; they move with the database.
_SQLITE_COMPANION_SUFFIXES = ("-wal", "-shm")


def store_files(directory: Path) -> list:
    """Database file, its SQLite companions and the version side file in directory."""
    db = directory / STORE_FILENAME
    return [db] + [db.with_name(db.name + s) for s in _SQLITE_COMPANION_SUFFIXES] + [directory / META_FILENAME]


def migrate_storage_location(legacy_dir: Optional[Path], data_dir: Path) -> bool:
    """
    Move store files from legacy_dir into data_dir.

    Returns True if files were moved. A missing legacy directory or store is a no-op;
    when data_dir already holds a store the legacy copy is left alone.
    """
    if legacy_dir is None:
        return False
    legacy_dir = Path(legacy_dir)
    data_dir = Path(data_dir)
    if legacy_dir.resolve() == data_dir.resolve():
        return False
    legacy_db = legacy_dir / STORE_FILENAME
    if not legacy_db.exists():
        return False
    if (data_dir / STORE_FILENAME).exists():
        log.warning(
            "Store exists in both %s and %s; keeping %s and leaving the legacy copy",
            legacy_dir, data_dir, data_dir,
        )
        return False
    data_dir.mkdir(parents=True, exist_ok=True)
    moved = 0
    for src in store_files(legacy_dir):
        if not src.exists():
            continue
        shutil.move(str(src), str(data_dir / src.name))
        moved += 1
    log.info("Moved %d store file(s) from %s to %s", moved, legacy_dir, data_dir)
    return True
