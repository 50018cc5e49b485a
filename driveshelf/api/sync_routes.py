"""
Sync API routes.

POST   /api/sync          — Trigger an immediate pull+push pass
GET    /api/sync/status   — Sync engine status and recent progress log
POST   /api/sync/reset    — Forget remote links; next pass re-pulls and re-pushes
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from driveshelf.sync.engine import sync_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


# ── Request/Response Models ─────────────────────────────────────────────

class SyncResponse(BaseModel):
    started: bool
    log: list[str]


class StatusResponse(BaseModel):
    initialized: bool
    state: str
    syncing: bool
    online: bool
    auto_sync_running: bool
    sync_interval_seconds: int
    has_change_token: bool
    last_sync_at: Optional[str] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None
    recent_log: list[str] = []


class ResetResponse(BaseModel):
    records_marked_dirty: int


# ── Routes ──────────────────────────────────────────────────────────────

@router.post("", response_model=SyncResponse)
async def trigger_sync():
    """Run one sync pass now. ``started`` is false when a pass was already running."""
    if not sync_engine.is_initialized:
        raise HTTPException(status_code=400, detail="Sync engine not initialized")
    messages: list[str] = []
    try:
        started = await sync_engine.sync(on_progress=messages.append)
    except RuntimeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SyncResponse(started=started, log=messages)


@router.get("/status", response_model=StatusResponse)
def get_status():
    """Get current sync engine status."""
    return StatusResponse(**sync_engine.status())


@router.post("/reset", response_model=ResetResponse)
def reset_sync():
    if sync_engine.is_syncing:
        raise HTTPException(status_code=409, detail="Sync in progress")
    count = sync_engine.store.reset_sync_state()
    return ResetResponse(records_marked_dirty=count)
