"""
File API routes over the local record store.

GET    /api/files?prefix=             — List records under a folder
GET    /api/files/by-tag/{tag}        — Records carrying a tag
GET    /api/files/{path}              — Read one record with content
PUT    /api/files/{path}              — Create or overwrite a text file
PATCH  /api/files/{path}/metadata     — Replace tags and/or metadata
POST   /api/files/{path}/append       — Append a paragraph
POST   /api/files/{path}/rename       — Move a file or folder subtree
DELETE /api/files/{path}              — Tombstone a file or folder subtree
POST   /api/folders/{path}            — Create a folder
GET    /api/search?q=                 — Semantic search over indexed files
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from driveshelf.storage.records import record_store
from driveshelf.storage.vector_store import vector_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["files"])


# ── Request/Response Models ─────────────────────────────────────────────

class FileOut(BaseModel):
    path: str
    name: str
    type: str
    updated_at: int
    remote_id: Optional[str] = None
    dirty: bool
    deleted: bool
    tags: list[str] = []
    metadata: dict = {}


class FileContentOut(FileOut):
    content: Optional[str] = None
    binary: bool = False


class WriteRequest(BaseModel):
    content: str
    tags: Optional[list[str]] = None
    metadata: Optional[dict] = None


class AppendRequest(BaseModel):
    text: str


class MetadataRequest(BaseModel):
    tags: Optional[list[str]] = None
    metadata: Optional[dict] = None


class RenameRequest(BaseModel):
    new_path: str


class DeleteResponse(BaseModel):
    deleted: list[str]


class SearchHit(BaseModel):
    text: str
    source: str
    file_path: str
    relevance: float


# ── Routes ──────────────────────────────────────────────────────────────

@router.get("/files", response_model=list[FileOut])
def list_files(prefix: str = ""):
    return [FileOut(**r.to_dict()) for r in record_store.list_by_prefix(prefix)]


@router.get("/files/by-tag/{tag}", response_model=list[FileOut])
def files_by_tag(tag: str):
    return [FileOut(**r.to_dict()) for r in record_store.get_files_by_tag(tag)]


@router.get("/files/{path:path}", response_model=FileContentOut)
def read_file(path: str):
    record = record_store.get(path)
    if record is None:
        raise HTTPException(404, f"File not found: {path}")
    return FileContentOut(**record.to_dict(include_content=True))


@router.put("/files/{path:path}", response_model=FileOut)
def write_file(path: str, req: WriteRequest):
    try:
        record = record_store.save_file(path, req.content, tags=req.tags, metadata=req.metadata)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return FileOut(**record.to_dict())


@router.patch("/files/{path:path}/metadata", response_model=FileOut)
def update_metadata(path: str, req: MetadataRequest):
    record = record_store.update_metadata(path, tags=req.tags, metadata=req.metadata)
    return FileOut(**record.to_dict())


@router.post("/files/{path:path}/append", response_model=FileOut)
def append_file(path: str, req: AppendRequest):
    try:
        record = record_store.append_file(path, req.text)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return FileOut(**record.to_dict())


@router.post("/files/{path:path}/rename", response_model=FileOut)
def rename_file(path: str, req: RenameRequest):
    try:
        record = record_store.rename(path, req.new_path)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return FileOut(**record.to_dict())


@router.delete("/files/{path:path}", response_model=DeleteResponse)
def delete_file(path: str):
    try:
        removed = record_store.delete(path)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if not removed:
        raise HTTPException(404, f"File not found: {path}")
    return DeleteResponse(deleted=removed)


@router.post("/folders/{path:path}", response_model=FileOut)
def create_folder(path: str):
    try:
        record = record_store.create_folder(path)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return FileOut(**record.to_dict())


@router.get("/search", response_model=list[SearchHit])
def search(q: str, limit: int = 8):
    """Semantic search across indexed notes and PDF sources."""
    return [SearchHit(**hit) for hit in vector_store.search(q, n_results=limit)]

