"""
DriveShelf Backend — FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from driveshelf.config.settings import settings
from driveshelf.storage.database import init_db
from driveshelf.storage.records import RecordNotFound, record_store
from driveshelf.sync.drive import DriveAuthError
from driveshelf.api.file_routes import router as file_router
from driveshelf.api.sync_routes import router as sync_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.data_dir / "driveshelf.log"),
    ],
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("DriveShelf backend starting...")
    init_db()
    # Initialize ChromaDB vector store
    if settings.index_enabled:
        from driveshelf.storage.vector_store import vector_store
        record_store.set_indexer(vector_store)
        logger.info("Vector store: %s", vector_store.stats())
    logger.info("Record store: %s", record_store.stats())
    # Initialize sync engine (if enabled)
    if settings.sync_enabled:
        from driveshelf.sync.engine import sync_engine
        sync_engine.initialize()
        await sync_engine.start_auto_sync()
    logger.info("API ready at http://%s:%s", settings.api_host, settings.api_port)
    yield
    logger.info("DriveShelf backend shutting down...")
    if settings.sync_enabled:
        from driveshelf.sync.engine import sync_engine
        await sync_engine.shutdown()


app = FastAPI(
    title="DriveShelf",
    description="Local-first file store with Google Drive sync",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(file_router)
app.include_router(sync_router)


@app.exception_handler(RecordNotFound)
async def record_not_found_handler(request: Request, exc: RecordNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DriveAuthError)
async def drive_auth_handler(request: Request, exc: DriveAuthError):
    logger.warning("Drive rejected credentials: %s", exc)
    return JSONResponse(status_code=401, content={"detail": "Google Drive authorization expired"})


@app.get("/health")
def health():
    return {"status": "ok", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "driveshelf.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
