"""
Google Drive v3 client for the sync engine.

Only the surface the engine needs: search, change feed, content transfer,
metadata patching, create and delete. Every request carries a bounded
timeout; failures are mapped onto the DriveError hierarchy so the engine can
tell transient, authorization and permission failures apart.

Tags and metadata round-trip through the ``shelf_meta`` app property as
JSON: {"tags": [...], "metadata": {...}}.
"""

import json
import logging
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

import httpx

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/drive/v3"
UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME = "application/vnd.google-apps.folder"
META_PROPERTY = "shelf_meta"

FILE_FIELDS = "id, name, mimeType, parents, modifiedTime, trashed, capabilities, appProperties"


class DriveError(Exception):
    """Any failed Drive call. Transient ones are retried on the next sync pass."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DriveAuthError(DriveError):
    """Credential expired or invalid — the caller must re-authenticate."""


class DrivePermissionError(DriveError):
    """The object exists but is outside the app's write scope."""


class DriveNotFoundError(DriveError):
    pass


class DriveTimeoutError(DriveError):
    pass


class MalformedResponseError(DriveError):
    """A response is missing a field the engine depends on."""


def _parse_time(value: Optional[str]) -> Optional[int]:
    """RFC 3339 → epoch milliseconds."""
    if not value:
        return None
    try:
        return round(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        logger.warning("Unparseable modifiedTime from Drive: %r", value)
        return None


def encode_meta(tags: Optional[list], metadata: Optional[dict]) -> str:
    return json.dumps({"tags": list(tags or []), "metadata": dict(metadata or {})}, sort_keys=True)


def decode_meta(raw: Optional[str]) -> tuple[list, dict]:
    """Inverse of encode_meta; a missing or broken blob yields empty values."""
    if not raw:
        return [], {}
    try:
        parsed = json.loads(raw)
        return list(parsed.get("tags") or []), dict(parsed.get("metadata") or {})
    except (ValueError, TypeError, AttributeError):
        logger.warning("Failed to parse %s property: %r", META_PROPERTY, raw[:80])
        return [], {}


@dataclass
class DriveEntry:
    id: str
    name: str
    mime_type: str = ""
    parent_ids: list[str] = field(default_factory=list)
    modified_time: Optional[int] = None    # epoch ms
    properties: dict = field(default_factory=dict)
    trashed: bool = False
    can_add_children: bool = False

    @property
    def is_container(self) -> bool:
        return self.mime_type == FOLDER_MIME

    @property
    def parent_id(self) -> Optional[str]:
        return self.parent_ids[0] if self.parent_ids else None

    @property
    def meta_blob(self) -> Optional[str]:
        return self.properties.get(META_PROPERTY)

    @classmethod
    def from_api(cls, data: dict) -> "DriveEntry":
        if not data.get("id") or "name" not in data:
            raise MalformedResponseError(f"Drive file resource without id/name: {sorted(data)}")
        return cls(
            id=data["id"],
            name=data["name"],
            mime_type=data.get("mimeType", ""),
            parent_ids=list(data.get("parents") or []),
            modified_time=_parse_time(data.get("modifiedTime")),
            properties=dict(data.get("appProperties") or {}),
            trashed=bool(data.get("trashed", False)),
            can_add_children=bool((data.get("capabilities") or {}).get("canAddChildren", False)),
        )


@dataclass
class Change:
    file_id: str
    removed: bool = False
    entry: Optional[DriveEntry] = None


@dataclass
class ChangePage:
    changes: list[Change] = field(default_factory=list)
    next_page_token: Optional[str] = None
    new_start_page_token: Optional[str] = None


def escape_query(value: str) -> str:
    """Quote a literal for the Drive ``q`` search syntax."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def guess_mime_type(name: str) -> str:
    lowered = name.lower()
    if lowered.endswith(".md"):
        return "text/markdown"
    if lowered.endswith(".txt"):
        return "text/plain"
    if lowered.endswith(".json"):
        return "application/json"
    if lowered.endswith(".pdf"):
        return "application/pdf"
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


class GoogleDriveClient:
    """Async Drive v3 client authenticated with a bearer access token."""

    def __init__(
        self,
        access_token: str,
        timeout: float = 30.0,
        page_size: int = 1000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._access_token = access_token
        self._page_size = page_size
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_token(self, access_token: str) -> None:
        self._access_token = access_token
        self._client.headers["Authorization"] = f"Bearer {access_token}"

    # ── Transport ───────────────────────────────────────────────────

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        logger.debug("[DriveAPI] %s %s", method, url)
        try:
            res = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise DriveTimeoutError(f"Drive API timeout: {method} {url}") from e
        except httpx.HTTPError as e:
            raise DriveError(f"Drive API transport error: {e}") from e

        if res.status_code == 401:
            raise DriveAuthError("Unauthorized: token expired or invalid", status_code=401)
        if res.is_success:
            return res

        message = res.reason_phrase
        try:
            message = res.json().get("error", {}).get("message") or message
        except ValueError:
            pass
        if res.status_code == 403:
            raise DrivePermissionError(f"Permission denied: {message}", status_code=403)
        if res.status_code == 404:
            raise DriveNotFoundError(f"Not found: {message}", status_code=404)
        raise DriveError(f"Drive API error {res.status_code}: {message}", status_code=res.status_code)

    @staticmethod
    def _json(res: httpx.Response) -> dict:
        try:
            data = res.json()
        except ValueError as e:
            raise MalformedResponseError("Drive returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise MalformedResponseError("Drive returned an unexpected JSON shape")
        return data

    # ── Queries ─────────────────────────────────────────────────────

    async def list_files(self, query: str) -> list[DriveEntry]:
        """Search files, following pagination to the end."""
        entries: list[DriveEntry] = []
        page_token: Optional[str] = None
        while True:
            params = {
                "q": query,
                "fields": f"nextPageToken, files({FILE_FIELDS})",
                "pageSize": str(self._page_size),
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._json(await self._request("GET", f"{API_BASE}/files", params=params))
            for item in data.get("files") or []:
                try:
                    entries.append(DriveEntry.from_api(item))
                except MalformedResponseError:
                    logger.warning("Skipping malformed file resource in listing")
            page_token = data.get("nextPageToken")
            if not page_token:
                return entries

    async def list_children(self, folder_id: str) -> list[DriveEntry]:
        return await self.list_files(f"'{escape_query(folder_id)}' in parents and trashed = false")

    async def find_folders(self, name: str, parent_id: Optional[str] = None) -> list[DriveEntry]:
        query = f"mimeType = '{FOLDER_MIME}' and name = '{escape_query(name)}' and trashed = false"
        if parent_id:
            query = f"'{escape_query(parent_id)}' in parents and " + query
        return await self.list_files(query)

    async def get_start_page_token(self) -> str:
        data = self._json(await self._request("GET", f"{API_BASE}/changes/startPageToken"))
        token = data.get("startPageToken")
        if not token:
            raise MalformedResponseError("startPageToken missing from response")
        return token

    async def list_changes(self, page_token: str) -> ChangePage:
        params = {
            "pageToken": page_token,
            "pageSize": str(self._page_size),
            "fields": f"nextPageToken, newStartPageToken, changes(fileId, removed, file({FILE_FIELDS}))",
        }
        data = self._json(await self._request("GET", f"{API_BASE}/changes", params=params))
        page = ChangePage(
            next_page_token=data.get("nextPageToken"),
            new_start_page_token=data.get("newStartPageToken"),
        )
        for item in data.get("changes") or []:
            file_id = item.get("fileId") or (item.get("file") or {}).get("id")
            if not file_id:
                logger.warning("Skipping change without fileId")
                continue
            entry = None
            if item.get("file"):
                try:
                    entry = DriveEntry.from_api(item["file"])
                except MalformedResponseError:
                    logger.warning("Skipping malformed file resource in change %s", file_id)
                    continue
            page.changes.append(Change(file_id=file_id, removed=bool(item.get("removed")), entry=entry))
        return page

    async def get_metadata(self, file_id: str) -> DriveEntry:
        res = await self._request("GET", f"{API_BASE}/files/{file_id}", params={"fields": FILE_FIELDS.replace(" ", "")})
        return DriveEntry.from_api(self._json(res))

    # ── Content ─────────────────────────────────────────────────────

    async def download_text(self, file_id: str) -> str:
        res = await self._request("GET", f"{API_BASE}/files/{file_id}", params={"alt": "media"})
        return res.text

    async def download_binary(self, file_id: str) -> bytes:
        res = await self._request("GET", f"{API_BASE}/files/{file_id}", params={"alt": "media"})
        return res.content

    async def update_content(self, file_id: str, content: Union[str, bytes]) -> None:
        body = content.encode("utf-8") if isinstance(content, str) else content
        await self._request(
            "PATCH",
            f"{UPLOAD_BASE}/files/{file_id}",
            params={"uploadType": "media"},
            content=body,
            headers={"Content-Type": "application/octet-stream"},
        )

    # ── Metadata / structure ────────────────────────────────────────

    async def update_metadata(
        self,
        file_id: str,
        name: Optional[str] = None,
        add_parents: Optional[list[str]] = None,
        remove_parents: Optional[list[str]] = None,
        properties: Optional[dict] = None,
    ) -> DriveEntry:
        params = {"fields": FILE_FIELDS.replace(" ", "")}
        if add_parents:
            params["addParents"] = ",".join(add_parents)
        if remove_parents:
            params["removeParents"] = ",".join(remove_parents)
        body: dict = {}
        if name:
            body["name"] = name
        if properties:
            body["appProperties"] = properties
        res = await self._request("PATCH", f"{API_BASE}/files/{file_id}", params=params, json=body)
        return DriveEntry.from_api(self._json(res))

    async def create_file(
        self,
        name: str,
        parent_id: Optional[str],
        content: Union[str, bytes, None] = None,
        properties: Optional[dict] = None,
    ) -> DriveEntry:
        mime_type = guess_mime_type(name)
        metadata: dict = {"name": name, "parents": [parent_id] if parent_id else []}
        if properties:
            metadata["appProperties"] = properties
        if content is None:
            # Metadata-only create; the file starts out empty on Drive.
            metadata["mimeType"] = mime_type
            res = await self._request(
                "POST",
                f"{API_BASE}/files",
                params={"fields": FILE_FIELDS.replace(" ", "")},
                json=metadata,
            )
            return DriveEntry.from_api(self._json(res))
        body = content.encode("utf-8") if isinstance(content, str) else content
        files = {
            "metadata": (None, json.dumps(metadata), "application/json"),
            "file": (name, body, mime_type),
        }
        res = await self._request(
            "POST",
            f"{UPLOAD_BASE}/files",
            params={"uploadType": "multipart", "fields": FILE_FIELDS.replace(" ", "")},
            files=files,
        )
        return DriveEntry.from_api(self._json(res))

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> DriveEntry:
        body = {"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id] if parent_id else []}
        res = await self._request(
            "POST",
            f"{API_BASE}/files",
            params={"fields": FILE_FIELDS.replace(" ", "")},
            json=body,
        )
        return DriveEntry.from_api(self._json(res))

    async def delete(self, file_id: str) -> None:
        await self._request("DELETE", f"{API_BASE}/files/{file_id}")
