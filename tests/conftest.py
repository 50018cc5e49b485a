"""Shared test fixtures for DriveShelf."""

from __future__ import annotations

import dataclasses
import itertools
from typing import Any, Optional, Union

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from driveshelf.models.files import now_ms
from driveshelf.storage.database import init_db
from driveshelf.storage.records import RecordStore
from driveshelf.sync.drive import (
    FOLDER_MIME,
    Change,
    ChangePage,
    DriveEntry,
    DriveNotFoundError,
    guess_mime_type,
)
from driveshelf.sync.engine import SyncEngine


class FakeIndexer:
    """Records what the store asked the semantic index to do."""

    def __init__(self) -> None:
        self.indexed: dict[str, str] = {}
        self.removed: list[str] = []
        self.renamed: list[tuple[str, str]] = []
        self.cleared = 0

    def index_file(self, path: str, text: str) -> None:
        self.indexed[path] = text

    def remove_file(self, path: str) -> None:
        self.removed.append(path)
        self.indexed.pop(path, None)

    def rename_file(self, old_path: str, new_path: str) -> None:
        self.renamed.append((old_path, new_path))
        if old_path in self.indexed:
            self.indexed[new_path] = self.indexed.pop(old_path)

    def clear(self) -> None:
        self.cleared += 1
        self.indexed.clear()


class FakeExtractor:
    """Treats the binary payload as UTF-8 text; ``b"corrupt"`` fails like a broken PDF."""

    def extract_text(self, data: bytes) -> str:
        if data == b"corrupt":
            raise ValueError("not a PDF")
        return data.decode("utf-8")


class FakeDrive:
    """In-memory Drive implementing the client surface the engine uses.

    Every mutation is appended to a change feed whose page token is the
    feed offset. Set ``fail[<method>]`` to an exception to make that method
    raise, or ``fail_files[<file id>]`` to make downloads of one file raise;
    ``calls`` records every API call in order.
    """

    def __init__(self, change_page_size: Optional[int] = None) -> None:
        self.files: dict[str, DriveEntry] = {}
        self.contents: dict[str, Union[str, bytes, None]] = {}
        self.changes: list[Change] = []
        self.calls: list[tuple[Any, ...]] = []
        self.fail: dict[str, Exception] = {}
        self.fail_files: dict[str, Exception] = {}
        self.change_page_size = change_page_size
        self._ids = itertools.count(1)

    # ── Seeding helpers (not recorded as calls) ─────────────────────

    def add_folder(self, name: str, parent_id: Optional[str] = None, **kwargs: Any) -> DriveEntry:
        entry = DriveEntry(
            id=f"fold{next(self._ids)}",
            name=name,
            mime_type=FOLDER_MIME,
            parent_ids=[parent_id] if parent_id else [],
            modified_time=kwargs.pop("modified_time", now_ms()),
            can_add_children=kwargs.pop("can_add_children", True),
            **kwargs,
        )
        self.files[entry.id] = entry
        self._record(entry.id)
        return entry

    def add_file(
        self,
        name: str,
        parent_id: str,
        content: Union[str, bytes, None] = "",
        mime_type: Optional[str] = None,
        modified_time: Optional[int] = None,
        properties: Optional[dict] = None,
    ) -> DriveEntry:
        entry = DriveEntry(
            id=f"file{next(self._ids)}",
            name=name,
            mime_type=mime_type or guess_mime_type(name),
            parent_ids=[parent_id],
            modified_time=modified_time or now_ms(),
            properties=dict(properties or {}),
        )
        self.files[entry.id] = entry
        self.contents[entry.id] = content
        self._record(entry.id)
        return entry

    def touch(self, file_id: str, **changes: Any) -> DriveEntry:
        """Modify an entry as another device would."""
        content = changes.pop("content", None)
        if content is not None:
            self.contents[file_id] = content
        changes.setdefault("modified_time", now_ms())
        entry = dataclasses.replace(self.files[file_id], **changes)
        self.files[file_id] = entry
        self._record(file_id)
        return entry

    def remove(self, file_id: str) -> None:
        for gone in self._subtree(file_id):
            del self.files[gone]
            self.contents.pop(gone, None)
            self.changes.append(Change(file_id=gone, removed=True))

    def children_of(self, parent_id: str) -> list[DriveEntry]:
        return [f for f in self.files.values() if f.parent_id == parent_id and not f.trashed]

    def child_named(self, parent_id: str, name: str) -> Optional[DriveEntry]:
        return next((f for f in self.children_of(parent_id) if f.name == name), None)

    def _subtree(self, file_id: str) -> list[str]:
        ids = [file_id]
        for child in [f for f in self.files.values() if f.parent_id == file_id]:
            ids.extend(self._subtree(child.id))
        return ids

    def _record(self, file_id: str) -> None:
        self.changes.append(Change(file_id=file_id, entry=dataclasses.replace(self.files[file_id])))

    def _call(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        if method in self.fail:
            raise self.fail[method]

    def _get(self, file_id: str) -> DriveEntry:
        if file_id not in self.files:
            raise DriveNotFoundError(f"Not found: {file_id}", status_code=404)
        return self.files[file_id]

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == method]

    # ── Client surface ──────────────────────────────────────────────

    def set_token(self, access_token: str) -> None:
        pass

    async def aclose(self) -> None:
        pass

    async def find_folders(self, name: str, parent_id: Optional[str] = None) -> list[DriveEntry]:
        self._call("find_folders", name, parent_id)
        return [
            dataclasses.replace(f)
            for f in self.files.values()
            if f.is_container and f.name == name and not f.trashed
            and (parent_id is None or f.parent_id == parent_id)
        ]

    async def list_children(self, folder_id: str) -> list[DriveEntry]:
        self._call("list_children", folder_id)
        return [dataclasses.replace(f) for f in self.children_of(folder_id)]

    async def get_start_page_token(self) -> str:
        self._call("get_start_page_token")
        return str(len(self.changes))

    async def list_changes(self, page_token: str) -> ChangePage:
        self._call("list_changes", page_token)
        start = int(page_token)
        end = len(self.changes)
        if self.change_page_size is not None:
            end = min(end, start + self.change_page_size)
        page = ChangePage(changes=list(self.changes[start:end]))
        if end < len(self.changes):
            page.next_page_token = str(end)
        else:
            page.new_start_page_token = str(end)
        return page

    async def get_metadata(self, file_id: str) -> DriveEntry:
        self._call("get_metadata", file_id)
        return dataclasses.replace(self._get(file_id))

    async def download_text(self, file_id: str) -> str:
        self._call("download_text", file_id)
        self._get(file_id)
        if file_id in self.fail_files:
            raise self.fail_files[file_id]
        content = self.contents.get(file_id)
        return content.decode("utf-8") if isinstance(content, bytes) else (content or "")

    async def download_binary(self, file_id: str) -> bytes:
        self._call("download_binary", file_id)
        self._get(file_id)
        if file_id in self.fail_files:
            raise self.fail_files[file_id]
        content = self.contents.get(file_id)
        return content.encode("utf-8") if isinstance(content, str) else (content or b"")

    async def update_content(self, file_id: str, content: Union[str, bytes, None]) -> None:
        self._call("update_content", file_id, content)
        self._get(file_id)
        self.contents[file_id] = content
        self.files[file_id] = dataclasses.replace(self.files[file_id], modified_time=now_ms())
        self._record(file_id)

    async def update_metadata(
        self,
        file_id: str,
        name: Optional[str] = None,
        add_parents: Optional[list[str]] = None,
        remove_parents: Optional[list[str]] = None,
        properties: Optional[dict] = None,
    ) -> DriveEntry:
        self._call("update_metadata", file_id, {
            "name": name,
            "add_parents": add_parents,
            "remove_parents": remove_parents,
            "properties": properties,
        })
        entry = self._get(file_id)
        parents = [p for p in entry.parent_ids if p not in (remove_parents or [])] + list(add_parents or [])
        entry = dataclasses.replace(
            entry,
            name=name or entry.name,
            parent_ids=parents,
            properties={**entry.properties, **(properties or {})},
            modified_time=now_ms(),
        )
        self.files[file_id] = entry
        self._record(file_id)
        return dataclasses.replace(entry)

    async def create_file(
        self,
        name: str,
        parent_id: Optional[str],
        content: Union[str, bytes, None] = None,
        properties: Optional[dict] = None,
    ) -> DriveEntry:
        self._call("create_file", name, parent_id)
        return dataclasses.replace(self.add_file(name, parent_id, content, properties=properties))

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> DriveEntry:
        self._call("create_folder", name, parent_id)
        return dataclasses.replace(self.add_folder(name, parent_id))

    async def delete(self, file_id: str) -> None:
        self._call("delete", file_id)
        self._get(file_id)
        self.remove(file_id)


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def indexer() -> FakeIndexer:
    return FakeIndexer()


@pytest.fixture
def store(db_engine, indexer: FakeIndexer) -> RecordStore:
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)
    return RecordStore(session_factory=factory, indexer=indexer)


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def root(drive: FakeDrive) -> DriveEntry:
    """The writable sync root folder, already present remotely."""
    return drive.add_folder("DriveShelf")


@pytest.fixture
def engine(store: RecordStore, drive: FakeDrive) -> SyncEngine:
    return SyncEngine(
        drive=drive,
        store=store,
        extractor=FakeExtractor(),
        root_folder_name="DriveShelf",
        max_change_pages=100,
    )
