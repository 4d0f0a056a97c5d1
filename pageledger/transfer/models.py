"""Export document schema."""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pageledger.history.models import HistoryEntry, PageSettings

# 1: id was the raw content key and there were no settings references (no version field)
# 2: derived entry ids, page_settings_ref, view state
EXPORT_FORMAT_VERSION = 2


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportItem(_CamelModel):
    entry: HistoryEntry
    # Resolved settings (the owner's when the entry references another one)
    settings: Optional[PageSettings] = Field(
        default=None, validation_alias=AliasChoices("settings", "pageSettings")
    )


class ExportDocument(_CamelModel):
    version: Optional[int] = None
    export_date: Optional[datetime] = None
    entry_count: Optional[int] = None
    entries: List[ExportItem] = Field(default_factory=list)

    @property
    def format_version(self) -> int:
        """Missing version means the oldest format."""
        return self.version if self.version is not None else 1


class ImportMode(str, enum.Enum):
    # Keep stored entries; add unknown ids, update memos of known ids
    MERGE = "merge"
    # Delete every stored entry, then insert the document's
    REPLACE = "replace"


@dataclass(frozen=True)
class ImportResult:
    success: bool
    message: str
    imported_count: int = 0
    updated_count: int = 0
