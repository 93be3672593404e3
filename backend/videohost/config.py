# backend/videohost/config.py
"""Application settings loaded from environment variables (prefix ``VIDEOHOST_``)."""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VIDEOHOST_", env_file=".env", extra="ignore")

    # Storage
    STORAGE_DIR: str = os.path.join(BASE_DIR, "storage")
    UPLOADS_DIR: Optional[str] = None      # defaults to STORAGE_DIR/videos
    TRANSCODED_DIR: Optional[str] = None   # defaults to STORAGE_DIR/transcoded
    DATABASE_URL: Optional[str] = None     # defaults to sqlite in STORAGE_DIR

    # Encoder
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    ENCODE_TIMEOUT: float = 3600.0         # seconds
    ERROR_MESSAGE_LIMIT: int = 1000        # chars of stderr kept on a failed job

    # Scheduling
    MAX_WORKERS: int = 2
    MAX_PENDING_JOBS: int = 8              # queued + running, all videos

    # Progress tracker
    PROGRESS_GRACE_SECONDS: float = 30.0
    PROGRESS_RETENTION_SECONDS: float = 3600.0
    WS_PUSH_INTERVAL: float = 0.5

    # Uploads
    MAX_UPLOAD_BYTES: int = 2000 * 1024 * 1024
    ALLOWED_EXTENSIONS: List[str] = [".mp4", ".webm", ".mov"]

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    LOG_LEVEL: str = "INFO"

    @property
    def uploads_dir(self) -> str:
        return self.UPLOADS_DIR or os.path.join(self.STORAGE_DIR, "videos")

    @property
    def transcoded_dir(self) -> str:
        return self.TRANSCODED_DIR or os.path.join(self.STORAGE_DIR, "transcoded")

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL or f"sqlite:///{os.path.join(self.STORAGE_DIR, 'database.db')}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
