"""
Local record store — the durable source of truth for virtual files.

Every public mutation runs in one session and commits once, so a record and
its cascading descendants (folder delete / move) change together.

Dirty/tombstone contract:
  - every local mutation sets dirty=True
  - delete only tombstones (deleted=True); the sync engine removes the row
    once the remote side has acknowledged it
  - rename swaps the path key and keeps remote_id, which is how the engine
    tells a move from a delete + create
"""

import logging
from contextlib import contextmanager
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from driveshelf.models.files import Content, FileRecord, FileType, SyncSetting, now_ms
from driveshelf.storage import paths
from driveshelf.storage.database import SessionLocal, get_db

logger = logging.getLogger(__name__)

SYNC_TOKEN_KEY = "drive_sync_token"
ROOT_ID_KEY = "drive_root_id"


class RecordNotFound(LookupError):
    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class RecordStore:
    """Keyed table of virtual path → FileRecord.

    ``indexer`` is the semantic index collaborator (``index_file``,
    ``remove_file``, ``rename_file``, ``clear``). Index calls happen after
    the commit and never fail a store operation.
    """

    def __init__(self, session_factory=None, indexer=None):
        self._session_factory = session_factory or SessionLocal
        self._indexer = indexer

    def set_indexer(self, indexer) -> None:
        self._indexer = indexer

    @contextmanager
    def session(self):
        with get_db(self._session_factory) as db:
            yield db

    # ── Reads ───────────────────────────────────────────────────────

    def get(self, path: str, include_deleted: bool = False) -> Optional[FileRecord]:
        with self.session() as db:
            record = db.get(FileRecord, path)
        if record is None or (record.deleted and not include_deleted):
            return None
        return record

    def read_file(self, path: str) -> Optional[Content]:
        record = self.get(path)
        return record.content if record else None

    def list_by_prefix(self, prefix: Optional[str] = "", include_deleted: bool = False) -> list[FileRecord]:
        """Records under ``prefix`` (all records for "" or "root"), ordered by path."""
        with self.session() as db:
            query = db.query(FileRecord)
            if prefix and prefix != "root":
                query = query.filter(
                    FileRecord.path.startswith(paths.subtree_prefix(prefix.strip("/")), autoescape=True)
                )
            if not include_deleted:
                query = query.filter(FileRecord.deleted.is_(False))
            return query.order_by(FileRecord.path).all()

    def get_files_by_tag(self, tag: str) -> list[FileRecord]:
        return [r for r in self.list_by_prefix("") if tag in (r.tags or [])]

    def find_by_remote_id(self, remote_id: str) -> Optional[FileRecord]:
        with self.session() as db:
            return (
                db.query(FileRecord)
                .filter(FileRecord.remote_id == remote_id)
                .order_by(FileRecord.path)
                .first()
            )

    def list_dirty(self) -> list[FileRecord]:
        """Dirty records (tombstones included), shallowest first."""
        with self.session() as db:
            records = (
                db.query(FileRecord)
                .filter(FileRecord.dirty.is_(True))
                .order_by(FileRecord.path)
                .all()
            )
        records.sort(key=lambda r: paths.depth(r.path))
        return records

    def stats(self) -> dict:
        with self.session() as db:
            records = db.query(FileRecord).all()
        return {
            "total": sum(1 for r in records if not r.deleted),
            "folders": sum(1 for r in records if r.is_folder and not r.deleted),
            "dirty": sum(1 for r in records if r.dirty),
            "tombstones": sum(1 for r in records if r.deleted),
            "synced": sum(1 for r in records if r.remote_id and not r.dirty),
        }

    # ── Generic upsert / materializer ───────────────────────────────

    def put(self, record: FileRecord) -> FileRecord:
        """Upsert by path, overwriting every field in one commit."""
        with self.session() as db:
            return db.merge(record)

    def ensure_parent(self, path: str) -> None:
        with self.session() as db:
            self._ensure_parent(db, path)

    def _ensure_parent(self, db: Session, path: str) -> None:
        parent = paths.parent_path(path)
        if not parent:
            return
        existing = db.get(FileRecord, parent)
        if existing is not None and not existing.deleted:
            return

        self._ensure_parent(db, parent)

        if existing is not None:
            # A tombstoned ancestor comes back clean; its remote folder still exists.
            existing.type = FileType.folder
            existing.content = None
            existing.deleted = False
            existing.dirty = False
            existing.updated_at = now_ms()
        else:
            db.add(FileRecord(
                path=parent,
                type=FileType.folder,
                updated_at=now_ms(),
                dirty=False,
                deleted=False,
                tags=[],
                meta={},
            ))
        db.flush()
        logger.debug("Materialized folder %s", parent)

    @staticmethod
    def _upsert(db: Session, path: str, **fields) -> FileRecord:
        record = db.get(FileRecord, path)
        if record is None:
            record = FileRecord(path=path, tags=[], meta={})
            db.add(record)
        for key, value in fields.items():
            setattr(record, key, value)
        db.flush()
        return record

    # ── Local mutations ─────────────────────────────────────────────

    def save_file(
        self,
        path: str,
        content: Content,
        remote_id: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict] = None,
    ) -> FileRecord:
        """Write content, creating the record (and its folders) if needed."""
        path = paths.normalize(path)
        with self.session() as db:
            self._ensure_parent(db, path)
            existing = db.get(FileRecord, path)
            record = self._upsert(
                db,
                path,
                content=content,
                type=paths.record_type_for(path),
                updated_at=now_ms(),
                remote_id=remote_id or (existing.remote_id if existing else None),
                dirty=True,
                deleted=False,
                tags=list(tags) if tags is not None else list(existing.tags or []) if existing else [],
                meta=dict(metadata) if metadata is not None else dict(existing.meta or {}) if existing else {},
            )
        self.index_file(path, content)
        return record

    def append_file(self, path: str, text: str, skip_index: bool = False) -> FileRecord:
        path = paths.normalize(path)
        with self.session() as db:
            self._ensure_parent(db, path)
            existing = db.get(FileRecord, path)
            if existing is not None and not existing.deleted and isinstance(existing.content, str):
                final = existing.content + "\n\n" + text
            else:
                final = text
            record = self._upsert(
                db,
                path,
                content=final,
                type=paths.record_type_for(path),
                updated_at=now_ms(),
                dirty=True,
                deleted=False,
            )
        if not skip_index:
            self.index_file(path, final)
        return record

    def update_file(self, path: str, content: Content) -> FileRecord:
        """Overwrite the content of an existing file."""
        with self.session() as db:
            record = db.get(FileRecord, path)
            if record is None or record.deleted:
                raise RecordNotFound(path)
            record.content = content
            record.updated_at = now_ms()
            record.dirty = True
        self.index_file(path, content)
        return record

    def update_metadata(
        self,
        path: str,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict] = None,
    ) -> FileRecord:
        with self.session() as db:
            record = db.get(FileRecord, path)
            if record is None or record.deleted:
                raise RecordNotFound(path)
            if tags is not None:
                record.tags = list(tags)
            if metadata is not None:
                record.meta = dict(metadata)
            record.updated_at = now_ms()
            record.dirty = True
        return record

    def create_folder(self, path: str) -> FileRecord:
        path = paths.normalize(path)
        with self.session() as db:
            self._ensure_parent(db, path)
            existing = db.get(FileRecord, path)
            return self._upsert(
                db,
                path,
                content=None,
                type=FileType.folder,
                updated_at=now_ms(),
                remote_id=existing.remote_id if existing else None,
                dirty=True,
                deleted=False,
            )

    def rename(self, old_path: str, new_path: str) -> FileRecord:
        """Move a record (and, for folders, its whole subtree) to a new path."""
        old_path = paths.normalize(old_path)
        new_path = paths.normalize(new_path)
        if old_path == new_path:
            record = self.get(old_path)
            if record is None:
                raise RecordNotFound(old_path)
            return record
        if paths.is_descendant(new_path, old_path):
            raise ValueError(f"Cannot move {old_path!r} into itself")

        with self.session() as db:
            existing = db.get(FileRecord, old_path)
            if existing is None or existing.deleted:
                raise RecordNotFound(old_path)
            # A tombstone with a remote id still owes a remote delete.
            occupant = db.get(FileRecord, new_path)
            if occupant is not None and (not occupant.deleted or occupant.remote_id):
                raise ValueError(f"Cannot move {old_path!r} onto existing {new_path!r}")
            self._ensure_parent(db, new_path)

            stamp = now_ms()
            children = self._descendants(db, old_path) if existing.is_folder else []
            moved = [(old_path, new_path)]
            renamed = self._swap_key(db, existing, new_path, updated_at=stamp, dirty=True, deleted=False)
            for child in children:
                child_old = child.path
                child_path = paths.rewrite_prefix(child_old, old_path, new_path)
                self._swap_key(db, child, child_path, updated_at=stamp, dirty=True)
                moved.append((child_old, child_path))

        logger.info("Renamed %s -> %s (%d records)", old_path, new_path, len(moved))
        for old, new in moved:
            self._notify_index("rename_file", old, new)
        return renamed

    def delete(self, path: str) -> list[str]:
        """Tombstone a record and, for folders, every descendant. Returns tombstoned paths."""
        path = paths.normalize(path)
        with self.session() as db:
            existing = db.get(FileRecord, path)
            if existing is None:
                return []
            targets = [existing]
            if existing.is_folder:
                targets.extend(self._descendants(db, path))
            for record in targets:
                record.deleted = True
                record.dirty = True
            removed = [r.path for r in targets]

        for removed_path in removed:
            self._notify_index("remove_file", removed_path)
        return removed

    @staticmethod
    def _descendants(db: Session, folder: str) -> list[FileRecord]:
        return (
            db.query(FileRecord)
            .filter(FileRecord.path.startswith(paths.subtree_prefix(folder), autoescape=True))
            .order_by(FileRecord.path)
            .all()
        )

    @staticmethod
    def _swap_key(db: Session, record: FileRecord, new_path: str, **changes) -> FileRecord:
        replacement = record.copy(path=new_path, **changes)
        db.delete(record)
        db.flush()
        merged = db.merge(replacement)
        db.flush()
        return merged

    # ── Sync-internal operations ────────────────────────────────────

    def remove(self, path: str, only_tombstone: bool = False) -> bool:
        """Physically delete a row. Used once the remote side is consistent.

        With ``only_tombstone`` a record revived while the delete was in flight
        is left alone.
        """
        with self.session() as db:
            record = db.get(FileRecord, path)
            if record is None or (only_tombstone and not record.deleted):
                return False
            db.delete(record)
        return True

    def remove_by_remote_id(self, remote_id: str) -> list[str]:
        """Drop the record carrying ``remote_id`` (and its subtree). Returns dropped paths."""
        with self.session() as db:
            record = (
                db.query(FileRecord)
                .filter(FileRecord.remote_id == remote_id)
                .order_by(FileRecord.path)
                .first()
            )
            if record is None:
                return []
            targets = [record]
            if record.is_folder:
                targets.extend(self._descendants(db, record.path))
            for target in targets:
                db.delete(target)
            removed = [t.path for t in targets]

        for removed_path in removed:
            self._notify_index("remove_file", removed_path)
        return removed

    def remove_orphans(self, seen_remote_ids: Iterable[str]) -> list[str]:
        """Drop clean, previously synced records whose remote id was not seen."""
        seen = set(seen_remote_ids)
        with self.session() as db:
            orphans = (
                db.query(FileRecord)
                .filter(FileRecord.remote_id.isnot(None), FileRecord.dirty.is_(False))
                .all()
            )
            removed = []
            for record in orphans:
                if record.remote_id in seen:
                    continue
                db.delete(record)
                removed.append(record.path)

        for removed_path in removed:
            self._notify_index("remove_file", removed_path)
        return removed

    def mark_synced(
        self,
        path: str,
        remote_id: Optional[str] = None,
        if_unchanged_since: Optional[int] = None,
    ) -> bool:
        """Record a successful push: store the remote id and clear dirty.

        When ``if_unchanged_since`` is given and the record was edited after
        that stamp, only the remote id is stored and the record stays dirty.
        """
        with self.session() as db:
            record = db.get(FileRecord, path)
            if record is None:
                return False
            if remote_id is not None:
                record.remote_id = remote_id
            if if_unchanged_since is not None and record.updated_at != if_unchanged_since:
                logger.info("%s changed during push, keeping it dirty", path)
                return False
            record.dirty = False
            record.updated_at = now_ms()
        return True

    def unlink(self, path: str) -> None:
        """Forget the remote id of a record so the next push re-creates it."""
        with self.session() as db:
            record = db.get(FileRecord, path)
            if record is not None:
                record.remote_id = None
                record.dirty = True

    def link_folder(self, path: str, remote_id: str) -> None:
        """Attach a resolved remote folder id, creating the local folder if missing."""
        with self.session() as db:
            self._ensure_parent(db, path)
            existing = db.get(FileRecord, path)
            if existing is None:
                db.add(FileRecord(
                    path=path,
                    type=FileType.folder,
                    updated_at=now_ms(),
                    remote_id=remote_id,
                    dirty=False,
                    deleted=False,
                    tags=[],
                    meta={},
                ))
            else:
                existing.remote_id = remote_id
                existing.dirty = False
                existing.deleted = False

    def apply_remote(self, record: FileRecord, previous_path: Optional[str] = None) -> FileRecord:
        """Upsert a reconciled remote entry.

        When ``previous_path`` differs from ``record.path`` the entry moved
        remotely: the old key (and, for a folder, every descendant path) is
        rewritten in the same commit as the final upsert.
        """
        moved = []
        with self.session() as db:
            if previous_path and previous_path != record.path:
                old = db.get(FileRecord, previous_path)
                if old is not None:
                    if old.is_folder:
                        for child in self._descendants(db, previous_path):
                            child_old = child.path
                            child_path = paths.rewrite_prefix(child_old, previous_path, record.path)
                            self._swap_key(db, child, child_path)
                            moved.append((child_old, child_path))
                    db.delete(old)
                    db.flush()
                    moved.insert(0, (previous_path, record.path))
            self._ensure_parent(db, record.path)
            merged = db.merge(record)

        for old, new in moved:
            self._notify_index("rename_file", old, new)
        return merged

    # ── Settings scalars ────────────────────────────────────────────

    def get_setting(self, key: str) -> Optional[str]:
        with self.session() as db:
            row = db.get(SyncSetting, key)
            return row.value if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self.session() as db:
            db.merge(SyncSetting(key=key, value=value))

    def delete_setting(self, key: str) -> None:
        with self.session() as db:
            row = db.get(SyncSetting, key)
            if row is not None:
                db.delete(row)

    # ── Resets ──────────────────────────────────────────────────────

    def reset_sync_state(self) -> int:
        """Forget every remote link; the next sync does a full pull and re-pushes all."""
        with self.session() as db:
            for key in (SYNC_TOKEN_KEY, ROOT_ID_KEY):
                row = db.get(SyncSetting, key)
                if row is not None:
                    db.delete(row)
            count = (
                db.query(FileRecord)
                .update({FileRecord.remote_id: None, FileRecord.dirty: True}, synchronize_session=False)
            )
        logger.info("Sync state reset, %d records marked dirty", count)
        return count

    def factory_reset(self, default_folders: Iterable[str] = ("misc", "history")) -> None:
        logger.warning("Performing factory reset")
        with self.session() as db:
            db.query(FileRecord).delete(synchronize_session=False)
            db.query(SyncSetting).delete(synchronize_session=False)
        self._notify_index("clear")
        for folder in default_folders:
            self.create_folder(folder)
        logger.info("Factory reset complete")

    # ── Semantic index glue ─────────────────────────────────────────

    def index_file(self, path: str, content: Optional[Content]) -> None:
        """Re-index textual knowledge files. Failures are logged, never raised."""
        if self._indexer is None or not isinstance(content, str) or not paths.is_indexable(path):
            return
        record = self.get(path)
        comments = (record.meta or {}).get("comments", []) if record else []
        notes = "\n".join(c["text"] for c in comments if isinstance(c, dict) and (c.get("text") or "").strip())
        full_text = content + ("\n\n### User Notes & Comments\n" + notes if notes else "")
        self._notify_index("index_file", path, full_text)

    def _notify_index(self, method: str, *args) -> None:
        if self._indexer is None:
            return
        try:
            getattr(self._indexer, method)(*args)
        except Exception:
            logger.exception("Semantic index %s failed for %s", method, args[:1])


# Module-level singleton
record_store = RecordStore()
