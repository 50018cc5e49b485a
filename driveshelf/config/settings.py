from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator
from pathlib import Path
from typing import Optional


BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = f"sqlite:///{BASE_DIR}/data/db/driveshelf.db"

    # Server
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Storage
    data_dir: Path = BASE_DIR / "data"
    chroma_dir: Path = BASE_DIR / "data" / "db" / "chromadb"
    default_folders: list[str] = Field(default_factory=lambda: ["misc", "history"])

    # Semantic index
    index_enabled: bool = True
    index_chunk_size: int = 1000       # characters
    index_chunk_overlap: int = 200     # characters carried into the next hard-cut chunk

    # Google Drive
    drive_access_token: Optional[str] = None
    drive_root_folder_name: str = "DriveShelf"
    drive_timeout_seconds: float = 30.0
    drive_page_size: int = 1000

    # Sync Engine
    sync_enabled: bool = False
    sync_interval_seconds: int = 120                    # 2 minutes
    sync_max_change_pages: int = 100                    # safety bound on one incremental pull
    sync_log_size: int = 50                             # progress messages kept for status

    @model_validator(mode="after")
    def _check_chunking(self):
        if self.index_chunk_size <= 0:
            raise ValueError("index_chunk_size must be positive")
        if not 0 <= self.index_chunk_overlap < self.index_chunk_size:
            raise ValueError("index_chunk_overlap must be smaller than index_chunk_size")
        return self

    def model_post_init(self, __context):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (BASE_DIR / "data" / "db").mkdir(parents=True, exist_ok=True)


settings = Settings()
