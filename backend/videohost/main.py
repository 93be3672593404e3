# backend/videohost/main.py
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import quote
from uuid import uuid4

import aiofiles
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from .config import Settings, get_settings
from .coordinator import TranscodeCoordinator
from .db import init_db, make_engine
from .errors import InvalidUpload, NoActiveJob, StorageFailure, TranscodeError, VideoAlreadyExists
from .ffmpeg_utils import Encoder, FFmpegEncoder
from .jobstore import JobStore
from .models import JobStatus, TranscodeRequest, Video
from .progress import ProgressTracker
from .schemas import (
    JobResponse,
    ProgressResponse,
    TranscodeAccepted,
    UploadResponse,
    VideoDetail,
    VideoSummary,
)
from .worker import EncodeWorker, OutputLayout

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def build_coordinator(settings: Settings, encoder: Optional[Encoder] = None) -> TranscodeCoordinator:
    engine = make_engine(settings.database_url)
    store = JobStore(engine)
    tracker = ProgressTracker(
        grace_seconds=settings.PROGRESS_GRACE_SECONDS,
        retention_seconds=settings.PROGRESS_RETENTION_SECONDS,
    )
    if encoder is None:
        encoder = FFmpegEncoder(
            ffmpeg_path=settings.FFMPEG_PATH,
            ffprobe_path=settings.FFPROBE_PATH,
            timeout=settings.ENCODE_TIMEOUT,
            error_limit=settings.ERROR_MESSAGE_LIMIT,
        )
    worker = EncodeWorker(
        store,
        tracker,
        encoder,
        OutputLayout(settings.transcoded_dir),
        error_limit=settings.ERROR_MESSAGE_LIMIT,
    )
    return TranscodeCoordinator(
        store,
        tracker,
        worker,
        max_workers=settings.MAX_WORKERS,
        max_pending=settings.MAX_PENDING_JOBS,
    )


def safe_filename(filename: Optional[str], allowed_extensions: List[str]) -> str:
    name = os.path.basename((filename or "").replace("\\", "/")).strip()
    if not name or name.startswith("."):
        raise InvalidUpload(f"Invalid file name: {filename!r}")
    ext = os.path.splitext(name)[1].lower()
    if ext not in allowed_extensions:
        logger.info("Using default extension for file: %s", name)
        name = name + ".mp4"
    return name


# Save uploaded file in chunks (async); returns the number of bytes written
async def save_upload_file(upload_file: UploadFile, destination: str, max_bytes: int) -> int:
    written = 0
    try:
        async with aiofiles.open(destination, "wb") as out_file:
            while True:
                chunk = await upload_file.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise InvalidUpload(f"File too large: more than {max_bytes} bytes")
                await out_file.write(chunk)
    except OSError as e:
        raise StorageFailure(f"Failed to save video: {e}")
    finally:
        await upload_file.close()
    return written


def create_app(settings: Optional[Settings] = None, encoder: Optional[Encoder] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    coordinator = build_coordinator(settings, encoder)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for path in (settings.STORAGE_DIR, settings.uploads_dir, settings.transcoded_dir):
            os.makedirs(path, exist_ok=True)
        logger.info("Using uploads directory: %s", os.path.abspath(settings.uploads_dir))
        init_db(coordinator.store.engine)
        coordinator.encoder_available = await run_in_threadpool(coordinator.worker.encoder.check)
        if not coordinator.encoder_available:
            logger.error("FFmpeg is not installed or not in PATH; transcoding is disabled")
        await run_in_threadpool(coordinator.recover)
        yield
        coordinator.shutdown(wait=False)

    app = FastAPI(title="Video Host API", lifespan=lifespan)
    app.state.settings = settings
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "Content-Type"],
        max_age=86400,
    )

    @app.exception_handler(TranscodeError)
    async def transcode_error_handler(request: Request, exc: TranscodeError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "kind": exc.kind})

    app.mount("/videos", StaticFiles(directory=settings.uploads_dir, check_dir=False), name="videos")
    app.mount("/transcoded", StaticFiles(directory=settings.transcoded_dir, check_dir=False), name="transcoded")

    def get_coordinator() -> TranscodeCoordinator:
        return app.state.coordinator

    @app.get("/health")
    def health(coord: TranscodeCoordinator = Depends(get_coordinator)):
        return {
            "status": "ok",
            "ffmpeg": coord.encoder_available,
            "activeJobs": coord.store.count_active(),
        }

    @app.get("/api/videos", response_model=List[VideoSummary])
    def list_videos(coord: TranscodeCoordinator = Depends(get_coordinator)):
        videos = [VideoSummary.build(video, manifest) for video, manifest in coord.list_videos()]
        logger.info("Returning %d videos", len(videos))
        return videos

    @app.get("/api/videos/{video_id}", response_model=VideoDetail)
    def get_video(video_id: str, coord: TranscodeCoordinator = Depends(get_coordinator)):
        video, manifest = coord.get_video(video_id)
        return VideoDetail.build(video, manifest)

    @app.post("/api/videos", response_model=UploadResponse)
    async def upload_video(
        video: Optional[UploadFile] = File(None),
        coord: TranscodeCoordinator = Depends(get_coordinator),
    ):
        """
        Accept:
          - multipart field 'video' -> UploadFile
        Returns:
          - the stored video (id is the stored file name)
        """
        if video is None:
            raise InvalidUpload("No video file provided")
        filename = safe_filename(video.filename, settings.ALLOWED_EXTENSIONS)
        save_path = os.path.join(settings.uploads_dir, filename)

        exists = await run_in_threadpool(coord.store.get_video, filename)
        if exists or os.path.exists(save_path):
            raise VideoAlreadyExists(f"Video already exists: {filename}")

        os.makedirs(settings.uploads_dir, exist_ok=True)
        tmp_path = os.path.join(settings.uploads_dir, f".upload-{uuid4().hex}")
        try:
            size = await save_upload_file(video, tmp_path, settings.MAX_UPLOAD_BYTES)
            record = Video(
                id=filename,
                name=filename,
                url=f"/videos/{quote(filename)}",
                source_path=save_path,
                size=size,
            )
            await run_in_threadpool(coord.store.create_video, record)
            try:
                os.replace(tmp_path, save_path)
            except OSError as e:
                await run_in_threadpool(coord.store.delete_video, filename)
                raise StorageFailure(f"Failed to save video: {e}")
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

        logger.info("Video uploaded successfully: %s (%d bytes)", filename, size)
        return UploadResponse(id=record.id, name=record.name, url=record.url, size=record.size)

    @app.delete("/api/videos/{video_id}", status_code=204)
    def delete_video(video_id: str, coord: TranscodeCoordinator = Depends(get_coordinator)):
        logger.info("Delete request received for video: %s", video_id)
        coord.delete_video(video_id)
        return Response(status_code=204)

    @app.post("/api/videos/transcode/{video_id}", status_code=202, response_model=TranscodeAccepted)
    def transcode_video(
        video_id: str,
        format: Optional[str] = Form(None),
        resolution: Optional[str] = Form(None),
        bitrate: Optional[str] = Form(None),
        coord: TranscodeCoordinator = Depends(get_coordinator),
    ):
        logger.info("Transcoding request received for video: %s", video_id)
        request = TranscodeRequest.parse(format=format, resolution=resolution, bitrate=bitrate)
        job = coord.submit(video_id, request)
        return TranscodeAccepted.build(job)

    def read_progress(coord: TranscodeCoordinator, video_id: str) -> ProgressResponse:
        try:
            progress, job = coord.get_progress(video_id)
        except NoActiveJob as e:
            return ProgressResponse(
                video_id=video_id,
                progress=0,
                status=e.status,
                error=e.message,
                kind=e.failure_kind or e.kind,
            )
        return ProgressResponse(video_id=video_id, progress=progress, status=job.status, job_id=job.id)

    @app.get(
        "/api/transcode/progress/{video_id}",
        response_model=ProgressResponse,
        response_model_exclude_none=True,
    )
    def transcode_progress(video_id: str, coord: TranscodeCoordinator = Depends(get_coordinator)):
        return read_progress(coord, video_id)

    @app.get("/api/transcode/jobs/{job_id}", response_model=JobResponse)
    def get_job(job_id: str, coord: TranscodeCoordinator = Depends(get_coordinator)):
        job = coord.get_job(job_id)
        response = JobResponse.model_validate(job)
        if job.status == JobStatus.RUNNING:
            live = coord.tracker.get_progress(job.id)
            if live is not None:
                response.progress = float(live)
        return response

    @app.websocket("/ws/transcode/{video_id}")
    async def transcode_progress_ws(websocket: WebSocket, video_id: str):
        await websocket.accept()
        coord = websocket.app.state.coordinator
        try:
            while True:
                body = await run_in_threadpool(read_progress, coord, video_id)
                await websocket.send_json(body.model_dump(by_alias=True, exclude_none=True))
                if body.progress >= 100 or body.error:
                    break
                await asyncio.sleep(settings.WS_PUSH_INTERVAL)
            await websocket.close()
        except WebSocketDisconnect:
            logger.debug("progress websocket for %s closed by client", video_id)

    return app


app = create_app()
