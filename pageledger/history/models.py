"""History SQLAlchemy model and Pydantic schemas."""

import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pageledger.db.session import Base

log = logging.getLogger(__name__)


class HistoryRecord(Base):
    """One opened file. id is derive_entry_id(file_name, file_key)."""

    __tablename__ = "history_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    file_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_access_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # PageSettings JSON; None when the entry has no settings of its own
    page_settings: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # id of the entry whose page_settings this one shares (one hop only)
    page_settings_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    view_state: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_entry(self) -> "HistoryEntry":
        return HistoryEntry(
            id=self.id,
            file_key=self.file_key,
            file_path=self.file_path,
            file_name=self.file_name,
            last_access_date=self.last_access_date,
            access_count=max(self.access_count or 1, 1),
            memo=self.memo,
            page_settings_ref=self.page_settings_ref,
            view_state=ViewState.from_json(self.view_state),
        )


class _CamelModel(BaseModel):
    """JSON uses camelCase keys; Python attributes stay snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PageFlip(_CamelModel):
    horizontal: bool = False
    vertical: bool = False


class PageSettings(_CamelModel):
    """Per-file display settings. Page indices are source image positions."""

    user_forced_single_page_indices: List[int] = Field(default_factory=list)
    auto_detected_landscape_indices: List[int] = Field(default_factory=list)
    checked_page_indices: List[int] = Field(default_factory=list)
    hidden_page_indices: List[int] = Field(default_factory=list)
    # "left" | "right" | "center"
    page_alignments: Dict[int, str] = Field(default_factory=dict)
    # 0 | 90 | 180 | 270
    page_rotations: Dict[int, int] = Field(default_factory=dict)
    page_flips: Dict[int, PageFlip] = Field(default_factory=dict)
    # Empty = natural order
    custom_display_order: List[int] = Field(default_factory=list)
    landscape_placeholder_indices: List[int] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return self == PageSettings()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["PageSettings"]:
        """Parse stored JSON; None for missing or unreadable payloads."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
            if isinstance(data, dict) and "forceSinglePageIndices" in data and "userForcedSinglePageIndices" not in data:
                # Older builds had a single set for every single-page override
                data["userForcedSinglePageIndices"] = data.pop("forceSinglePageIndices")
            return cls.model_validate(data)
        except (ValueError, ValidationError) as e:
            log.warning("Ignoring unreadable page settings: %s", e)
            return None


class ViewState(_CamelModel):
    """Where the reader left a file: view mode, page, reading direction and sort order."""

    mode: str = "spread"
    page: int = 0
    direction: str = "rightToLeft"
    sort_method: str = "name"
    sort_reversed: bool = False

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["ViewState"]:
        if not raw:
            return None
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            log.warning("Ignoring unreadable view state: %s", e)
            return None


class HistoryEntry(_CamelModel):
    """History entry as listed to callers (page settings are loaded separately)."""

    id: str
    file_key: str
    file_path: str
    file_name: str
    last_access_date: datetime
    access_count: int = Field(default=1, ge=1)
    memo: Optional[str] = None
    page_settings_ref: Optional[str] = None
    view_state: Optional[ViewState] = None


class IdentityKind(str, enum.Enum):
    EXACT_MATCH = "exact_match"
    DIFFERENT_NAME = "different_name"
    NEW_FILE = "new_file"


@dataclass(frozen=True)
class IdentityCheck:
    """Result of check_identity; existing is set for EXACT_MATCH and DIFFERENT_NAME."""

    kind: IdentityKind
    existing: Optional[HistoryEntry] = None


class FileIdentityChoice(str, enum.Enum):
    """What the user chose when the same content was opened under another name."""

    TREAT_AS_SAME = "treat_as_same"
    COPY_SETTINGS = "copy_settings"
    TREAT_AS_DIFFERENT = "treat_as_different"
