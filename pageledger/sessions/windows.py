"""Open-window bookkeeping and the last-session file (window_session.json)."""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from pageledger.config import get_window_session_path, read_json_file, write_json_file
from pageledger.sessions.models import SessionGroupEntry, WindowFrame
from pageledger.timeutil import Clock, utcnow

log = logging.getLogger(__name__)


class WindowSessionEntry(BaseModel):
    """State of one open window."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    file_path: str
    file_key: Optional[str] = None
    current_page: int = 0
    window_frame: WindowFrame
    created_at: datetime

    def to_group_entry(self) -> SessionGroupEntry:
        return SessionGroupEntry(
            file_path=self.file_path,
            file_key=self.file_key,
            current_page=self.current_page,
            window_frame=self.window_frame,
        )


class WindowTracker:
    """Windows currently open, so the session can be saved at exit or as a group."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._windows: Dict[str, WindowSessionEntry] = {}

    @property
    def active_count(self) -> int:
        return len(self._windows)

    def register_window(
        self,
        window_id: str,
        file_path: str,
        file_key: Optional[str],
        current_page: int,
        frame: WindowFrame,
    ) -> WindowSessionEntry:
        entry = WindowSessionEntry(
            id=window_id,
            file_path=file_path,
            file_key=file_key,
            current_page=current_page,
            window_frame=frame,
            created_at=self._clock(),
        )
        self._windows[window_id] = entry
        log.debug("Registered window %s for %s", window_id, file_path)
        return entry

    def update_window_frame(self, window_id: str, frame: WindowFrame) -> bool:
        entry = self._windows.get(window_id)
        if entry is None:
            return False
        self._windows[window_id] = entry.model_copy(update={"window_frame": frame})
        return True

    def update_window_page(self, window_id: str, current_page: int) -> bool:
        entry = self._windows.get(window_id)
        if entry is None:
            return False
        self._windows[window_id] = entry.model_copy(update={"current_page": current_page})
        return True

    def remove_window(self, window_id: str) -> bool:
        return self._windows.pop(window_id, None) is not None

    def collect(self) -> List[WindowSessionEntry]:
        """Open windows in the order they were opened."""
        return sorted(self._windows.values(), key=lambda e: e.created_at)


def save_session(entries: List[WindowSessionEntry], path: Optional[Path] = None) -> None:
    """Persist the windows to reopen at next start."""
    path = path or get_window_session_path()
    data = {"windows": [e.model_dump(mode="json", by_alias=True) for e in entries]}
    write_json_file(path, data)
    log.info("Saved session with %d window(s)", len(entries))


def load_session(path: Optional[Path] = None) -> List[WindowSessionEntry]:
    """Windows saved by save_session; unreadable entries are skipped."""
    path = path or get_window_session_path()
    data = read_json_file(path)
    if not data:
        return []
    entries: List[WindowSessionEntry] = []
    for raw in data.get("windows") or []:
        try:
            entries.append(WindowSessionEntry.model_validate(raw))
        except ValidationError as e:
            log.warning("Skipping unreadable saved window: %s", e)
    return entries


def clear_session(path: Optional[Path] = None) -> None:
    path = path or get_window_session_path()
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning("Could not remove %s: %s", path, e)
