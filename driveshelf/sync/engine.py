"""
Sync engine — one pass is pull (sync_down) then push (sync_up).

Lifecycle: initialize → sync / start_auto_sync

Pull applies remote changes to the record store, either from the Drive
change feed (when a change token is stored) or by walking the whole remote
tree. Push replays every dirty record against Drive, shallowest first, and
clears the dirty flag only after the remote call succeeded.

A failed pull degrades to push-only. Push failures are isolated per record
and stay dirty for the next pass. Only credential rejection and failure to
resolve the sync root escape sync().
"""

import asyncio
import enum
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from driveshelf.config.settings import settings
from driveshelf.models.files import FileRecord, FileType, now_ms
from driveshelf.storage import paths
from driveshelf.storage.records import ROOT_ID_KEY, SYNC_TOKEN_KEY, RecordStore, record_store
from driveshelf.sync.drive import (
    META_PROPERTY,
    DriveAuthError,
    DriveEntry,
    DriveError,
    DriveNotFoundError,
    DrivePermissionError,
    GoogleDriveClient,
    decode_meta,
    encode_meta,
)
from driveshelf.sync.entries import EntryKind, classify_entry
from driveshelf.sync.extract import PdfTextExtractor, shadow_body

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class SyncState(str, enum.Enum):
    idle = "idle"
    pulling = "pulling"
    failed_pull = "failed_pull"
    pushing = "pushing"


class Resolution(str, enum.Enum):
    REMOTE_WINS = "remote_wins"
    LOCAL_DIRTY = "local_dirty"       # unpushed local edits always win
    LOCAL_CURRENT = "local_current"   # remote is not newer; keep local payload


def resolve_conflict(entry: DriveEntry, local: Optional[FileRecord]) -> Resolution:
    if local is None:
        return Resolution.REMOTE_WINS
    if local.dirty:
        return Resolution.LOCAL_DIRTY
    if entry.modified_time is not None and entry.modified_time <= local.updated_at:
        return Resolution.LOCAL_CURRENT
    return Resolution.REMOTE_WINS


class SyncEngine:
    """Orchestrates pull/push passes against one Drive account."""

    def __init__(
        self,
        drive=None,
        store: Optional[RecordStore] = None,
        extractor=None,
        root_folder_name: Optional[str] = None,
        max_change_pages: Optional[int] = None,
    ):
        self._drive = drive
        self._store = store or record_store
        self._extractor = extractor or PdfTextExtractor()
        self._root_folder_name = root_folder_name or settings.drive_root_folder_name
        self._max_change_pages = max_change_pages or settings.sync_max_change_pages
        self._sync_lock = asyncio.Lock()
        self._state = SyncState.idle
        self._on_progress: Optional[ProgressCallback] = None
        self._log: deque[str] = deque(maxlen=settings.sync_log_size)
        self._auto_sync_task: Optional[asyncio.Task] = None
        self._online = True
        self._last_sync_at: Optional[datetime] = None
        self._last_result: Optional[str] = None
        self._last_error: Optional[str] = None

    @property
    def is_initialized(self) -> bool:
        return self._drive is not None

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def store(self) -> RecordStore:
        return self._store

    # ── Initialize ──────────────────────────────────────────────────

    def initialize(self, access_token: Optional[str] = None) -> dict:
        """Create the Drive client from an explicit token or settings."""
        if self._drive is None:
            token = access_token or settings.drive_access_token
            if not token:
                raise RuntimeError("No Google Drive access token configured")
            self._drive = GoogleDriveClient(
                token,
                timeout=settings.drive_timeout_seconds,
                page_size=settings.drive_page_size,
            )
        elif access_token:
            self._drive.set_token(access_token)
        logger.info("Sync engine initialized (root folder: %s)", self._root_folder_name)
        return {"root_folder": self._root_folder_name}

    async def shutdown(self) -> None:
        await self.stop_auto_sync()
        if self._drive is not None and hasattr(self._drive, "aclose"):
            await self._drive.aclose()

    # ── Sync ────────────────────────────────────────────────────────

    async def sync(self, on_progress: Optional[ProgressCallback] = None) -> bool:
        """Run one pull+push pass. Returns False when a pass is already running."""
        if not self.is_initialized:
            raise RuntimeError("Sync engine not initialized")
        if self._sync_lock.locked():
            logger.info("Sync already in progress")
            return False

        async with self._sync_lock:
            self._on_progress = on_progress
            self._progress("Starting Sync...")
            try:
                self._state = SyncState.pulling
                try:
                    await self.sync_down()
                except DriveAuthError:
                    raise
                except Exception:
                    logger.exception("SyncDown failed (continuing to SyncUp)")
                    self._state = SyncState.failed_pull
                    self._progress("Pull failed. Taking only local changes...")

                self._state = SyncState.pushing
                await self.sync_up()

                self._progress("Done")
                self._last_result = "success"
                self._last_error = None
                return True
            except Exception as e:
                logger.error("Sync failed: %s", e)
                self._last_result = "failed"
                self._last_error = str(e)
                self._progress(f"Error: {e}")
                raise
            finally:
                self._last_sync_at = datetime.now(timezone.utc)
                self._state = SyncState.idle
                self._on_progress = None

    def _progress(self, message: str) -> None:
        self._log.append(message)
        logger.info("[Sync] %s", message)
        if self._on_progress is not None:
            try:
                self._on_progress(message)
            except Exception:
                logger.exception("Progress callback failed")

    # ── Pull ────────────────────────────────────────────────────────

    async def sync_down(self) -> None:
        self._progress("Checking Remote Changes...")
        token = self._store.get_setting(SYNC_TOKEN_KEY)

        if not token:
            self._progress("Performing Initial Pull...")
            # Taken before the walk so changes made during it are replayed next pass.
            token = await self._drive.get_start_page_token()
            await self._initial_pull()
            self._store.set_setting(SYNC_TOKEN_KEY, token)
            return

        current = token
        pages = 0
        while True:
            pages += 1
            page = await self._drive.list_changes(current)
            logger.info("[SyncDown] Page %d: received %d changes", pages, len(page.changes))

            for change in page.changes:
                if change.removed or (change.entry is not None and change.entry.trashed):
                    self._handle_remote_delete(change.file_id)
                elif change.entry is not None:
                    await self._handle_remote_change(change.entry)
                else:
                    logger.warning("[SyncDown] Change %s has no file resource, skipping", change.file_id)

            if page.next_page_token:
                current = page.next_page_token
            elif page.new_start_page_token:
                logger.info("[SyncDown] Finished. New start token: %s", page.new_start_page_token)
                self._store.set_setting(SYNC_TOKEN_KEY, page.new_start_page_token)
                return
            else:
                logger.warning("[SyncDown] No nextPageToken or newStartPageToken returned, stopping")
                return

            if pages >= self._max_change_pages:
                # Resume from here next pass instead of replaying the same pages.
                logger.warning("[SyncDown] Page limit (%d) reached, resuming next pass", self._max_change_pages)
                self._store.set_setting(SYNC_TOKEN_KEY, current)
                return

    async def _initial_pull(self) -> None:
        self._progress("Locating Root Folder...")
        root_id = await self._get_root_folder_id()

        self._progress("Rebuilding local database from Cloud...")
        seen: set[str] = set()
        await self._recursive_pull(root_id, seen)

        # Anything previously synced that the walk did not reach is gone remotely.
        self._progress("Cleaning ghost files...")
        removed = self._store.remove_orphans(seen)
        logger.info("[SyncDown] Initial pull complete, %d entries seen, %d ghosts removed", len(seen), len(removed))

    async def _recursive_pull(self, folder_id: str, seen: set[str]) -> None:
        children = await self._drive.list_children(folder_id)
        logger.debug("[SyncDown] Folder %s: %d children", folder_id, len(children))
        for entry in children:
            seen.add(entry.id)
            await self._handle_remote_change(entry)
            if entry.is_container:
                await self._recursive_pull(entry.id, seen)

    def _handle_remote_delete(self, file_id: str) -> None:
        removed = self._store.remove_by_remote_id(file_id)
        if removed:
            logger.info("Deleted local %s (remote delete)", ", ".join(removed))

    async def _local_parent_path(self, entry: DriveEntry) -> Optional[str]:
        """Virtual path of the entry's parent, "" for the sync root, None if out of scope."""
        parent_id = entry.parent_id
        if not parent_id:
            return None
        if parent_id == await self._get_root_folder_id():
            return ""
        parent = self._store.find_by_remote_id(parent_id)
        if parent is None or parent.deleted:
            return None
        return parent.path

    async def _handle_remote_change(self, entry: DriveEntry) -> None:
        parent_path = await self._local_parent_path(entry)
        if parent_path is None:
            # Out of scope for now; picked up once the parent is reconciled.
            logger.debug("[SyncDown] Skipping %s (%s): parent unknown", entry.name, entry.id)
            return

        name = entry.name.replace(paths.SEPARATOR, "_")
        path = paths.join(parent_path, name)
        kind = classify_entry(entry)

        local = self._store.find_by_remote_id(entry.id)
        if local is None:
            # A never-pushed record at the same path is the same file.
            occupant = self._store.get(path)
            if occupant is not None and occupant.remote_id is None:
                local = occupant

        if kind is EntryKind.SHADOWED_BINARY:
            await self._apply_shadowed_binary(entry, path, local)
            return

        if kind is EntryKind.FOLDER:
            self._progress(f"Syncing folder {path}...")

        resolution = resolve_conflict(entry, local)
        remote_tags, remote_meta = decode_meta(entry.meta_blob)

        if resolution is Resolution.REMOTE_WINS:
            if kind is EntryKind.TEXT:
                self._progress(f"Downloading text {path}...")
                try:
                    content = await self._drive.download_text(entry.id)
                except DriveNotFoundError:
                    logger.warning("[SyncDown] %s vanished before download, skipping", path)
                    return
                except DriveAuthError:
                    raise
                except DriveError as e:
                    logger.error("[SyncDown] Failed to download %s: %s", path, e)
                    self._progress(f"Error downloading {entry.name}")
                    return
            elif kind is EntryKind.OPAQUE and local is not None:
                content = local.content
            else:
                content = None
            record = FileRecord(
                path=path,
                remote_id=entry.id,
                type=FileType.folder if kind is EntryKind.FOLDER else paths.record_type_for(path),
                updated_at=entry.modified_time or now_ms(),
                dirty=False,
                deleted=False,
                tags=remote_tags,
                meta=remote_meta,
            )
            record.content = content
        else:
            record = local.copy(
                path=path,
                remote_id=entry.id,
                dirty=resolution is Resolution.LOCAL_DIRTY,
            )
            if resolution is Resolution.LOCAL_DIRTY:
                logger.info("[SyncDown] Keeping dirty local %s over remote change", local.path)

        previous_path = local.path if local is not None else None
        if previous_path and previous_path != path:
            logger.info("[SyncDown] Remote move detected: %s -> %s", previous_path, path)
        self._store.apply_remote(record, previous_path=previous_path)

        if isinstance(record.content, str) and not record.deleted:
            self._store.index_file(path, record.content)

    async def _apply_shadowed_binary(self, entry: DriveEntry, path: str, local: Optional[FileRecord]) -> None:
        """Binary entries produce two records: the clean binary and a dirty .source.md shadow."""
        shadow_path = paths.shadow_path_for(path)
        existing_shadow = self._store.get(shadow_path, include_deleted=True)
        resolution = resolve_conflict(entry, local)
        previous_path = local.path if local is not None else None

        if resolution is Resolution.LOCAL_DIRTY or (
            resolution is Resolution.LOCAL_CURRENT and existing_shadow is not None
        ):
            if previous_path != path:
                self._store.apply_remote(local.copy(path=path, remote_id=entry.id), previous_path=previous_path)
            return

        self._progress(f"Extracting PDF Source {path}...")
        try:
            binary = await self._drive.download_binary(entry.id)
        except DriveNotFoundError:
            logger.warning("[SyncDown] %s vanished before download, skipping", path)
            return
        except DriveAuthError:
            raise
        except DriveError as e:
            logger.error("[SyncDown] Failed to download %s: %s", path, e)
            self._progress(f"Error downloading {entry.name}")
            return

        try:
            text = self._extractor.extract_text(binary)
        except Exception:
            logger.exception("Failed to extract text from %s", path)
            self._progress(f"Error indexing PDF {entry.name}")
            text = None

        if text is not None:
            previous_meta = dict(existing_shadow.meta or {}) if existing_shadow else {}
            shadow = FileRecord(
                path=shadow_path,
                type=FileType.source,
                updated_at=now_ms(),
                remote_id=existing_shadow.remote_id if existing_shadow else None,
                dirty=True,  # pushed back upstream as its own artifact
                deleted=False,
                tags=list(existing_shadow.tags or []) if existing_shadow else [],
                meta={**previous_meta, "isSource": True},
            )
            shadow.content = shadow_body(entry.name, text)
            self._store.apply_remote(shadow)
            self._store.index_file(shadow_path, shadow.content)

        remote_tags, remote_meta = decode_meta(entry.meta_blob)
        if entry.meta_blob is None and local is not None:
            remote_tags, remote_meta = list(local.tags or []), dict(local.meta or {})
        record = FileRecord(
            path=path,
            type=FileType.file,
            updated_at=entry.modified_time or now_ms(),
            remote_id=entry.id,
            dirty=False,
            deleted=False,
            tags=remote_tags,
            meta=remote_meta,
        )
        record.content = binary
        self._store.apply_remote(record, previous_path=previous_path)

    # ── Push ────────────────────────────────────────────────────────

    async def sync_up(self) -> None:
        self._progress("Checking Local Changes...")
        await self._get_root_folder_id()

        dirty = self._store.list_dirty()
        logger.info("[SyncUp] Found %d dirty records", len(dirty))
        if dirty:
            self._progress(f"Uploading {len(dirty)} files...")

        for snapshot in dirty:
            # Earlier pushes in this pass may have already settled this record.
            record = self._store.get(snapshot.path, include_deleted=True)
            if record is None or not record.dirty:
                continue
            try:
                await self._push_record(record)
            except DriveAuthError:
                raise
            except Exception:
                logger.exception("Failed to sync up %s", record.path)
                self._progress(f"Error syncing {record.name}")

    async def _push_record(self, record: FileRecord) -> None:
        if record.deleted:
            await self._push_delete(record)
        elif record.remote_id:
            await self._push_update(record)
        else:
            await self._push_create(record)

    async def _push_delete(self, record: FileRecord) -> None:
        if record.remote_id:
            self._progress(f"Deleting {record.name}...")
            try:
                await self._drive.delete(record.remote_id)
                logger.info("Deleted remote file %s", record.path)
            except DrivePermissionError:
                logger.warning(
                    "Ignored permission denied on delete for %s (likely user-owned). Removing local record anyway.",
                    record.path,
                )
            except DriveNotFoundError:
                logger.info("Remote copy of %s already gone", record.path)
        self._store.remove(record.path, only_tombstone=True)

    async def _push_update(self, record: FileRecord) -> None:
        self._progress(f"Updating {record.name}...")
        try:
            # Opaque files are tracked without content; never blank the remote copy.
            if record.type in (FileType.file, FileType.source) and record.content is not None:
                await self._drive.update_content(record.remote_id, record.content)
            parent_id = await self._resolve_parent_id(record.path)
            remote = await self._drive.get_metadata(record.remote_id)
        except DriveNotFoundError:
            # Remote copy was deleted elsewhere; local edits win, so re-create it next pass.
            logger.warning("Remote copy of %s is gone, will re-create", record.path)
            self._store.unlink(record.path)
            return

        updates: dict = {}
        if remote.name != record.name:
            updates["name"] = record.name
        meta_json = encode_meta(record.tags, record.meta)
        if remote.meta_blob != meta_json:
            updates["properties"] = {META_PROPERTY: meta_json}
        if parent_id and remote.parent_id != parent_id:
            updates["add_parents"] = [parent_id]
            if remote.parent_ids:
                updates["remove_parents"] = list(remote.parent_ids)
        if updates:
            await self._drive.update_metadata(record.remote_id, **updates)
            logger.info("Updated metadata for %s: %s", record.path, sorted(updates))

        self._store.mark_synced(record.path, if_unchanged_since=record.updated_at)

    async def _push_create(self, record: FileRecord) -> None:
        self._progress(f"Creating {record.name}...")
        parent_id = await self._resolve_parent_id(record.path)
        if record.is_folder:
            remote_id = await self._find_or_create_folder(record.name, parent_id)
        else:
            created = await self._drive.create_file(
                record.name,
                parent_id,
                record.content,
                {META_PROPERTY: encode_meta(record.tags, record.meta)},
            )
            remote_id = created.id
        self._store.mark_synced(record.path, remote_id, if_unchanged_since=record.updated_at)
        logger.info("Created remote file %s", record.path)

    # ── Remote folder resolution ────────────────────────────────────

    async def _get_root_folder_id(self) -> str:
        cached = self._store.get_setting(ROOT_ID_KEY)
        if cached:
            return cached

        # Read-only scopes can see folders we cannot write into; only adopt a writable one.
        candidates = await self._drive.find_folders(self._root_folder_name)
        writable = next((f for f in candidates if f.can_add_children), None)
        if writable is not None:
            root_id = writable.id
            logger.info("Found existing writable root: %s", root_id)
        else:
            root_id = (await self._drive.create_folder(self._root_folder_name)).id
            logger.info("Created new root: %s", root_id)

        self._store.set_setting(ROOT_ID_KEY, root_id)
        return root_id

    async def _resolve_parent_id(self, path: str) -> str:
        """Remote id of ``path``'s parent folder, creating missing remote folders top-down."""
        if paths.depth(path) <= 1:
            return await self._get_root_folder_id()

        parent_path = paths.parent_path(path)
        parent = self._store.get(parent_path, include_deleted=True)
        if parent is not None and parent.remote_id:
            return parent.remote_id

        logger.info("Parent %s has no remote id, resolving...", parent_path)
        grandparent_id = await self._resolve_parent_id(parent_path)
        folder_id = await self._find_or_create_folder(paths.base_name(parent_path), grandparent_id)
        self._store.link_folder(parent_path, folder_id)
        return folder_id

    async def _find_or_create_folder(self, name: str, parent_id: str) -> str:
        # Reuse a same-named folder so a lost link does not duplicate it remotely.
        existing = await self._drive.find_folders(name, parent_id)
        if existing:
            logger.info("Found existing remote folder %s: %s", name, existing[0].id)
            return existing[0].id
        created = await self._drive.create_folder(name, parent_id)
        logger.info("Created remote folder %s: %s", name, created.id)
        return created.id

    # ── Auto-Sync Loop ──────────────────────────────────────────────

    async def start_auto_sync(self) -> None:
        """Start the background auto-sync loop."""
        if self._auto_sync_task and not self._auto_sync_task.done():
            return
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())
        logger.info("Auto-sync started (interval: %ds)", settings.sync_interval_seconds)

    async def stop_auto_sync(self) -> None:
        """Stop the background auto-sync loop."""
        if self._auto_sync_task:
            self._auto_sync_task.cancel()
            try:
                await self._auto_sync_task
            except asyncio.CancelledError:
                pass
            self._auto_sync_task = None
            logger.info("Auto-sync stopped")

    async def _auto_sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(settings.sync_interval_seconds)
                if self._online:
                    await self.sync()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Auto-sync error")

    # ── Connectivity ────────────────────────────────────────────────

    async def set_online(self, online: bool) -> None:
        """Update connectivity state. Triggers sync on reconnect."""
        was_offline = not self._online
        self._online = online

        if online and was_offline and self.is_initialized:
            logger.info("Back online — triggering sync")
            try:
                await self.sync()
            except Exception:
                logger.exception("Sync on reconnect failed")

    # ── Status ──────────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "initialized": self.is_initialized,
            "state": self._state.value,
            "syncing": self.is_syncing,
            "online": self._online,
            "auto_sync_running": (
                self._auto_sync_task is not None
                and not self._auto_sync_task.done()
            ),
            "sync_interval_seconds": settings.sync_interval_seconds,
            "has_change_token": self._store.get_setting(SYNC_TOKEN_KEY) is not None,
            "last_sync_at": self._last_sync_at.isoformat() if self._last_sync_at else None,
            "last_result": self._last_result,
            "last_error": self._last_error,
            "recent_log": list(self._log),
        }


# Module-level singleton
sync_engine = SyncEngine()
