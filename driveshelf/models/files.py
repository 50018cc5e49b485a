"""
SQLAlchemy models for the local file store.

- FileRecord: one virtual file or folder, keyed by its path
- SyncSetting: persisted sync scalars (change token, cached root folder id)
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, LargeBinary, JSON,
    Enum as SAEnum,
)
import enum
import time
from typing import Optional, Union

from driveshelf.storage.database import Base


Content = Union[str, bytes]


def now_ms() -> int:
    return int(time.time() * 1000)


class FileType(str, enum.Enum):
    file = "file"
    folder = "folder"
    source = "source"   # derived text shadow of a binary file


class FileRecord(Base):
    __tablename__ = "files"

    path = Column(Text, primary_key=True)
    content_text = Column(Text, nullable=True)
    content_bytes = Column(LargeBinary, nullable=True)
    type = Column(SAEnum(FileType), default=FileType.file, nullable=False)
    updated_at = Column(Integer, nullable=False, default=now_ms)   # epoch ms
    remote_id = Column(String, nullable=True, index=True)
    dirty = Column(Boolean, default=False, nullable=False, index=True)
    deleted = Column(Boolean, default=False, nullable=False, index=True)
    tags = Column(JSON, nullable=False, default=list)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    @property
    def content(self) -> Optional[Content]:
        if self.content_bytes is not None:
            return self.content_bytes
        return self.content_text

    @content.setter
    def content(self, value: Optional[Content]) -> None:
        if isinstance(value, (bytes, bytearray)):
            self.content_bytes = bytes(value)
            self.content_text = None
        else:
            self.content_bytes = None
            self.content_text = value

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def is_folder(self) -> bool:
        return self.type == FileType.folder

    def copy(self, **changes) -> "FileRecord":
        """Detached copy with field overrides, used for path-key swaps."""
        fields = {
            "path": self.path,
            "content_text": self.content_text,
            "content_bytes": self.content_bytes,
            "type": self.type,
            "updated_at": self.updated_at,
            "remote_id": self.remote_id,
            "dirty": self.dirty,
            "deleted": self.deleted,
            "tags": list(self.tags or []),
            "meta": dict(self.meta or {}),
        }
        fields.update(changes)
        return FileRecord(**fields)

    def to_dict(self, include_content: bool = False) -> dict:
        data = {
            "path": self.path,
            "name": self.name,
            "type": self.type.value,
            "updated_at": self.updated_at,
            "remote_id": self.remote_id,
            "dirty": self.dirty,
            "deleted": self.deleted,
            "tags": list(self.tags or []),
            "metadata": dict(self.meta or {}),
        }
        if include_content:
            data["content"] = self.content_text
            data["binary"] = self.content_bytes is not None
        return data

    def __repr__(self) -> str:
        return (
            f"FileRecord(path={self.path!r}, type={self.type.value if self.type else None}, "
            f"remote_id={self.remote_id!r}, dirty={self.dirty}, deleted={self.deleted})"
        )


class SyncSetting(Base):
    __tablename__ = "sync_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
