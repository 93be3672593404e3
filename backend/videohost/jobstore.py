# backend/videohost/jobstore.py
"""Durable records for videos, transcode jobs and renditions.

One short session per call. Status changes are guarded updates
(``UPDATE ... WHERE status IN (...)``) so a job reaches a terminal state
exactly once, and the partial unique index on ``transcode_jobs.video_id``
rejects a second active job for a video even if callers race.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .errors import INTERRUPTED, JobAlreadyActive, StorageFailure, VideoAlreadyExists
from .models import JobStatus, Rendition, TranscodeJob, TranscodeRequest, Video

logger = logging.getLogger(__name__)

# allowed source states for each target state
TRANSITIONS = {
    JobStatus.RUNNING: (JobStatus.QUEUED,),
    JobStatus.SUCCEEDED: (JobStatus.RUNNING,),
    JobStatus.FAILED: (JobStatus.QUEUED, JobStatus.RUNNING),
}


class JobStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # --- videos ---

    def create_video(self, video: Video) -> Video:
        try:
            with self._session() as session:
                session.add(video)
                session.commit()
                return video
        except IntegrityError:
            raise VideoAlreadyExists(f"Video already exists: {video.id}")
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to save video: {e}")

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._session() as session:
            return session.get(Video, video_id)

    def list_videos(self) -> List[Video]:
        with self._session() as session:
            return list(session.exec(select(Video).order_by(Video.created_at, Video.id)).all())

    def delete_video(self, video_id: str) -> bool:
        """Remove a video with its jobs and renditions in one transaction."""
        try:
            with self._session() as session:
                video = session.get(Video, video_id)
                if not video:
                    return False
                session.execute(delete(Rendition).where(Rendition.video_id == video_id))
                session.execute(delete(TranscodeJob).where(TranscodeJob.video_id == video_id))
                session.delete(video)
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to delete video: {e}")

    # --- jobs ---

    def create_job(self, video_id: str, request: TranscodeRequest) -> TranscodeJob:
        now = datetime.utcnow()
        job = TranscodeJob(
            id=uuid4().hex,
            video_id=video_id,
            format=request.format,
            resolution=request.resolution,
            bitrate=request.bitrate,
            status=JobStatus.QUEUED,
            progress=0.0,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session() as session:
                session.add(job)
                session.commit()
        except IntegrityError:
            raise JobAlreadyActive(f"A transcode job is already active for video {video_id}")
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to create job: {e}")
        return job

    def get_job(self, job_id: str) -> Optional[TranscodeJob]:
        with self._session() as session:
            return session.get(TranscodeJob, job_id)

    def latest_job_for_video(self, video_id: str) -> Optional[TranscodeJob]:
        with self._session() as session:
            stmt = (
                select(TranscodeJob)
                .where(TranscodeJob.video_id == video_id)
                .order_by(TranscodeJob.created_at.desc())
                .limit(1)
            )
            return session.exec(stmt).first()

    def find_active_by_video(self, video_id: str) -> Optional[TranscodeJob]:
        with self._session() as session:
            stmt = select(TranscodeJob).where(
                TranscodeJob.video_id == video_id,
                TranscodeJob.status.in_(JobStatus.ACTIVE),
            )
            return session.exec(stmt).first()

    def count_active(self) -> int:
        with self._session() as session:
            stmt = select(func.count()).select_from(TranscodeJob).where(
                TranscodeJob.status.in_(JobStatus.ACTIVE)
            )
            return session.exec(stmt).one()

    def _transition(self, session: Session, job_id: str, status: str, **fields) -> bool:
        now = datetime.utcnow()
        values = dict(fields, status=status, updated_at=now)
        if status == JobStatus.RUNNING:
            values.setdefault("started_at", now)
        elif status in JobStatus.TERMINAL:
            values.setdefault("completed_at", now)
        stmt = (
            update(TranscodeJob)
            .where(TranscodeJob.id == job_id, TranscodeJob.status.in_(TRANSITIONS[status]))
            .values(**values)
        )
        return session.execute(stmt).rowcount == 1

    def update_status(self, job_id: str, status: str, **fields) -> bool:
        """Apply a state transition; returns False if the job was not in an allowed source state."""
        if status not in TRANSITIONS:
            raise ValueError(f"Not a target status: {status}")
        try:
            with self._session() as session:
                applied = self._transition(session, job_id, status, **fields)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to update job {job_id}: {e}")
        if not applied:
            logger.warning("job %s: transition to %s rejected", job_id, status)
        return applied

    def fail_job(self, job_id: str, kind: str, message: str) -> bool:
        return self.update_status(job_id, JobStatus.FAILED, error_kind=kind, error_message=message)

    def complete_job(self, job_id: str, renditions: Iterable[Rendition]) -> bool:
        """Mark a running job succeeded and record its renditions atomically."""
        try:
            with self._session() as session:
                if not self._transition(session, job_id, JobStatus.SUCCEEDED, progress=100.0):
                    session.rollback()
                    logger.warning("job %s: completion rejected, job is not running", job_id)
                    return False
                for rendition in renditions:
                    self._upsert_rendition(session, rendition)
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to complete job {job_id}: {e}")

    def fail_interrupted(self) -> int:
        """Fail jobs left queued or running by a previous process."""
        try:
            with self._session() as session:
                now = datetime.utcnow()
                stmt = (
                    update(TranscodeJob)
                    .where(TranscodeJob.status.in_(JobStatus.ACTIVE))
                    .values(
                        status=JobStatus.FAILED,
                        error_kind=INTERRUPTED,
                        error_message="Job was interrupted by a server restart",
                        completed_at=now,
                        updated_at=now,
                    )
                )
                count = session.execute(stmt).rowcount
                session.commit()
                return count
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to recover jobs: {e}")

    # --- renditions ---

    def _upsert_rendition(self, session: Session, rendition: Rendition) -> Rendition:
        existing = session.exec(
            select(Rendition).where(
                Rendition.video_id == rendition.video_id,
                Rendition.kind == rendition.kind,
                Rendition.resolution == rendition.resolution,
            )
        ).first()
        if existing:
            existing.job_id = rendition.job_id
            existing.path = rendition.path
            existing.bitrate = rendition.bitrate
            existing.files = rendition.files
            existing.created_at = rendition.created_at
            session.add(existing)
            return existing
        session.add(rendition)
        return rendition

    def append_rendition(self, rendition: Rendition) -> Rendition:
        try:
            with self._session() as session:
                stored = self._upsert_rendition(session, rendition)
                session.commit()
                return stored
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to save rendition: {e}")

    def list_renditions(self, video_id: str) -> List[Rendition]:
        with self._session() as session:
            stmt = (
                select(Rendition)
                .where(Rendition.video_id == video_id)
                .order_by(Rendition.created_at, Rendition.id)
            )
            return list(session.exec(stmt).all())
