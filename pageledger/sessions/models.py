"""Session group SQLAlchemy model and Pydantic schemas."""

import logging
import uuid
from datetime import datetime
from pathlib import PurePath
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pageledger.db.session import Base

log = logging.getLogger(__name__)


class SessionGroupRecord(Base):
    """A named, saved set of windows."""

    __tablename__ = "session_groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    # JSON list of SessionGroupEntry
    entries_data: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    # "" = default workspace
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    def to_group(self) -> "SessionGroup":
        try:
            entries = _ENTRY_LIST.validate_json(self.entries_data or "[]")
        except ValidationError as e:
            log.warning("Session group %s has unreadable entries: %s", self.id, e)
            entries = []
        return SessionGroup(
            id=self.id,
            name=self.name,
            created_at=self.created_at,
            last_accessed_at=self.last_accessed_at,
            entries=entries,
            workspace_id=self.workspace_id or "",
        )


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WindowFrame(_CamelModel):
    x: float
    y: float
    width: float
    height: float


class SessionGroupEntry(_CamelModel):
    """One window of a saved session."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    file_path: str
    file_key: Optional[str] = None
    current_page: int = 0
    window_frame: Optional[WindowFrame] = None

    @property
    def file_name(self) -> str:
        return PurePath(self.file_path).name


_ENTRY_LIST = TypeAdapter(List[SessionGroupEntry])


def dump_entries(entries: List[SessionGroupEntry]) -> str:
    """Serialize entries for SessionGroupRecord.entries_data."""
    return _ENTRY_LIST.dump_json(entries, by_alias=True).decode("utf-8")


class SessionGroup(_CamelModel):
    id: str
    name: str
    created_at: datetime
    last_accessed_at: datetime
    entries: List[SessionGroupEntry] = Field(default_factory=list)
    workspace_id: str = ""

    @property
    def file_count(self) -> int:
        return len(self.entries)
