# backend/videohost/models.py
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field

logger = logging.getLogger(__name__)

FORMATS = ("mp4", "hls", "dash")
RESOLUTIONS = (240, 360, 480, 720, 1080, 1440, 2160)
BITRATES = ("500k", "1000k", "2000k", "4000k", "8000k", "16000k")

DEFAULT_FORMAT = "mp4"
DEFAULT_RESOLUTION = 720
DEFAULT_BITRATE = "1000k"


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    ACTIVE = (QUEUED, RUNNING)
    TERMINAL = (SUCCEEDED, FAILED)


class RenditionKind:
    MP4 = "mp4-variant"
    HLS = "hls-ladder"
    DASH = "dash-ladder"

    BY_FORMAT = {"mp4": MP4, "hls": HLS, "dash": DASH}


@dataclass(frozen=True)
class TranscodeRequest:
    format: str = DEFAULT_FORMAT
    resolution: int = DEFAULT_RESOLUTION
    bitrate: str = DEFAULT_BITRATE

    @property
    def label(self) -> str:
        return f"{self.resolution}p"

    @classmethod
    def parse(cls, format: Optional[str] = None, resolution=None, bitrate: Optional[str] = None) -> "TranscodeRequest":
        """Build a request from raw form values.

        Blank fields and values outside the ladders take the defaults.
        """
        fmt = (format or DEFAULT_FORMAT).strip().lower()
        if fmt not in FORMATS:
            logger.warning("Unsupported format %r, using %s", format, DEFAULT_FORMAT)
            fmt = DEFAULT_FORMAT

        try:
            res = int(str(resolution or DEFAULT_RESOLUTION).strip().lower().rstrip("p"))
        except ValueError:
            res = None
        if res not in RESOLUTIONS:
            logger.warning("Unsupported resolution %r, using %s", resolution, DEFAULT_RESOLUTION)
            res = DEFAULT_RESOLUTION

        rate = (bitrate or DEFAULT_BITRATE).strip().lower()
        if rate not in BITRATES:
            logger.warning("Unsupported bitrate %r, using %s", bitrate, DEFAULT_BITRATE)
            rate = DEFAULT_BITRATE

        return cls(format=fmt, resolution=res, bitrate=rate)


class Video(SQLModel, table=True):
    id: str = Field(primary_key=True, nullable=False)        # stored file name
    name: str = Field(nullable=False)
    url: str = Field(nullable=False)
    source_path: str = Field(nullable=False)
    size: int = Field(default=0, nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TranscodeJob(SQLModel, table=True):
    __tablename__ = "transcode_jobs"
    # at most one queued/running job per video
    __table_args__ = (
        Index(
            "uq_transcode_jobs_active_video",
            "video_id",
            unique=True,
            sqlite_where=text("status IN ('queued', 'running')"),
            postgresql_where=text("status IN ('queued', 'running')"),
        ),
    )

    id: str = Field(primary_key=True, nullable=False)
    video_id: str = Field(index=True, nullable=False)
    format: str = Field(nullable=False)
    resolution: int = Field(nullable=False)
    bitrate: str = Field(nullable=False)
    status: str = Field(default=JobStatus.QUEUED, nullable=False)  # queued | running | succeeded | failed
    progress: float = Field(default=0.0, nullable=False)           # 0.0 - 100.0
    error_kind: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def request(self) -> TranscodeRequest:
        return TranscodeRequest(format=self.format, resolution=self.resolution, bitrate=self.bitrate)


class Rendition(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    video_id: str = Field(index=True, nullable=False)
    job_id: str = Field(nullable=False)
    kind: str = Field(nullable=False)          # mp4-variant | hls-ladder | dash-ladder
    resolution: str = Field(nullable=False)    # e.g. "720p"
    bitrate: Optional[str] = Field(default=None)
    path: str = Field(nullable=False)          # public url of the file or manifest
    files: str = Field(default="[]")           # JSON list of public urls
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def file_list(self) -> List[str]:
        try:
            return json.loads(self.files) if self.files else []
        except ValueError:
            return []
