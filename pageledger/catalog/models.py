"""Image catalog SQLAlchemy model and Pydantic schema."""

import enum
import json
from datetime import datetime
from pathlib import PurePath
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import BigInteger, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pageledger.db.session import Base


class CatalogType(int, enum.Enum):
    STANDALONE = 0
    # Image inside an archive or folder; file_path is the parent, relative_path locates the image
    ARCHIVE_CONTENT = 1


class CatalogRecord(Base):
    """One viewed image, keyed by content key alone."""

    __tablename__ = "catalog_entries"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    file_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    catalog_type: Mapped[int] = mapped_column(Integer, nullable=False, default=CatalogType.STANDALONE.value)
    relative_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_access_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    image_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    image_format: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # JSON list of strings
    tags: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def tag_list(self) -> List[str]:
        if not self.tags:
            return []
        try:
            data = json.loads(self.tags)
        except ValueError:
            return []
        return [t for t in data if isinstance(t, str)] if isinstance(data, list) else []

    def to_entry(self) -> "CatalogEntry":
        try:
            catalog_type = CatalogType(self.catalog_type)
        except ValueError:
            catalog_type = CatalogType.STANDALONE
        return CatalogEntry(
            id=self.id,
            file_key=self.file_key,
            file_path=self.file_path,
            file_name=self.file_name,
            catalog_type=catalog_type,
            relative_path=self.relative_path,
            last_access_date=self.last_access_date,
            access_count=self.access_count,
            memo=self.memo,
            image_width=self.image_width,
            image_height=self.image_height,
            file_size=self.file_size,
            image_format=self.image_format,
            tags=self.tag_list(),
        )


class CatalogEntry(BaseModel):
    """Catalog entry as listed to callers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    file_key: str
    file_path: str
    file_name: str
    catalog_type: CatalogType = CatalogType.STANDALONE
    relative_path: Optional[str] = None
    last_access_date: datetime
    access_count: int = 1
    memo: Optional[str] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    file_size: Optional[int] = None
    image_format: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @property
    def is_archive_content(self) -> bool:
        return self.catalog_type == CatalogType.ARCHIVE_CONTENT

    @property
    def resolution(self) -> Optional[str]:
        if self.image_width is None or self.image_height is None:
            return None
        return f"{self.image_width} x {self.image_height}"

    @property
    def parent_name(self) -> Optional[str]:
        """Name of the containing archive or folder for archive content."""
        if not self.is_archive_content:
            return None
        return PurePath(self.file_path).name
