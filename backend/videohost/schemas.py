# backend/videohost/schemas.py
"""Response bodies; field names follow the frontend's camelCase contract."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .manifest import Manifest
from .models import TranscodeJob, Video


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VideoSummary(CamelModel):
    id: str
    name: str
    url: str
    has_hls: bool = Field(False, alias="hasHLS")
    hls_url: str = ""
    has_dash: bool = Field(False, alias="hasDASH")
    dash_url: str = ""
    has_mp4: bool = Field(False, alias="hasMP4")

    @classmethod
    def build(cls, video: Video, manifest: Manifest) -> "VideoSummary":
        return cls(
            id=video.id,
            name=video.name,
            url=video.url,
            has_hls=manifest.has_hls,
            hls_url=manifest.hls_url,
            has_dash=manifest.has_dash,
            dash_url=manifest.dash_url,
            has_mp4=manifest.has_mp4,
        )


class VideoDetail(VideoSummary):
    mp4_versions: List[str] = []
    size: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def build(cls, video: Video, manifest: Manifest) -> "VideoDetail":
        summary = VideoSummary.build(video, manifest)
        return cls(
            **summary.model_dump(),
            mp4_versions=list(manifest.mp4_versions),
            size=video.size,
            created_at=video.created_at,
        )


class UploadResponse(CamelModel):
    id: str
    name: str
    url: str
    size: int


class TranscodeAccepted(CamelModel):
    job_id: str
    video_id: str
    status: str
    format: str
    resolution: int
    bitrate: str

    @classmethod
    def build(cls, job: TranscodeJob) -> "TranscodeAccepted":
        return cls(
            job_id=job.id,
            video_id=job.video_id,
            status=job.status,
            format=job.format,
            resolution=job.resolution,
            bitrate=job.bitrate,
        )


class ProgressResponse(CamelModel):
    video_id: str
    progress: int
    status: Optional[str] = None
    job_id: Optional[str] = None
    # set when there is no job or the latest one failed
    error: Optional[str] = None
    kind: Optional[str] = None


class JobResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    video_id: str
    format: str
    resolution: int
    bitrate: str
    status: str
    progress: float
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
