# backend/videohost/coordinator.py
"""Transcode job coordinator.

Accepts submissions, enforces one active job per video, runs encodes on a
bounded thread pool and answers progress / manifest queries.

Job state machine::

    queued --(picked up)--> running --(encoder ok, output committed)--> succeeded
      |                        |
      +--(could not start)-----+--(encoder error, timeout, I/O error)--> failed

Terminal states are final. The per-video lock serializes the
check-and-create in ``submit`` and the queued -> running transition; a
global semaphore bounds queued + running jobs across all videos.
"""

import logging
import os
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from .errors import (
    CapacityExceeded,
    EncodeFailure,
    EncoderUnavailable,
    JobAlreadyActive,
    JobNotFound,
    NoActiveJob,
    StorageFailure,
    VideoNotFound,
)
from .jobstore import JobStore
from .manifest import Manifest, build_manifest
from .models import JobStatus, TranscodeJob, TranscodeRequest, Video
from .progress import ProgressTracker
from .worker import EncodeWorker

logger = logging.getLogger(__name__)


class KeyedLock:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class TranscodeCoordinator:
    def __init__(
        self,
        store: JobStore,
        tracker: ProgressTracker,
        worker: EncodeWorker,
        max_workers: int = 2,
        max_pending: int = 8,
    ):
        self.store = store
        self.tracker = tracker
        self.worker = worker
        self.max_pending = max_pending
        self.encoder_available = True
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="encode")
        self._slots = threading.BoundedSemaphore(max_pending)
        self._video_locks = KeyedLock()
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    # --- lifecycle ---

    def recover(self) -> int:
        """Fail jobs orphaned by a previous process and clear stale staging output."""
        count = self.store.fail_interrupted()
        if count:
            logger.warning("marked %d interrupted transcode jobs as failed", count)
        staging_root = self.worker.layout.staging_root
        shutil.rmtree(staging_root, ignore_errors=True)
        os.makedirs(staging_root, exist_ok=True)
        return count

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[TranscodeJob]:
        """Block until a dispatched job has finished running; returns its record."""
        with self._futures_lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get_job(job_id)

    # --- submission ---

    def submit(self, video_id: str, request: TranscodeRequest) -> TranscodeJob:
        if not self.encoder_available:
            raise EncoderUnavailable("FFmpeg is not installed or not in PATH")

        with self._video_locks.hold(video_id):
            video = self.store.get_video(video_id)
            if not video:
                raise VideoNotFound(f"Video not found: {video_id}")
            active = self.store.find_active_by_video(video_id)
            if active:
                raise JobAlreadyActive(f"Job {active.id} is already {active.status} for video {video_id}")
            if not self._slots.acquire(blocking=False):
                raise CapacityExceeded(f"Too many transcode jobs in progress (limit {self.max_pending})")
            try:
                job = self.store.create_job(video_id, request)
            except Exception:
                self._slots.release()
                raise

        logger.info(
            "job %s: queued for %s (%s %s @ %s)",
            job.id, video_id, request.format, request.label, request.bitrate,
        )
        try:
            future = self._executor.submit(self._run, job.id, video)
        except RuntimeError:
            # executor already shut down
            self._finish(job.id)
            self.store.fail_job(job.id, EncoderUnavailable.kind, "Transcoder is shutting down")
            raise EncoderUnavailable("Transcoder is shutting down")

        with self._futures_lock:
            self._futures[job.id] = future
        future.add_done_callback(lambda f, job_id=job.id: self._forget(job_id))
        return job

    def _forget(self, job_id: str):
        with self._futures_lock:
            self._futures.pop(job_id, None)

    def _finish(self, job_id: str):
        self.tracker.mark_terminal(job_id)
        self._slots.release()

    def _run(self, job_id: str, video: Video):
        try:
            with self._video_locks.hold(video.id):
                started = self.store.update_status(job_id, JobStatus.RUNNING)
                if started:
                    self.tracker.start(job_id)
            if not started:
                logger.warning("job %s: no longer queued, skipping", job_id)
                return

            job = self.store.get_job(job_id)
            logger.info("job %s: running", job_id)
            self.worker.execute(job, video)
        except Exception as e:
            # nothing crosses the pool boundary; the job record carries the failure
            logger.exception("job %s: worker crashed", job_id)
            try:
                self.store.fail_job(job_id, EncodeFailure.kind, str(e) or e.__class__.__name__)
            except StorageFailure:
                logger.exception("job %s: could not record failure", job_id)
        finally:
            self._finish(job_id)

    # --- queries ---

    def get_job(self, job_id: str) -> TranscodeJob:
        job = self.store.get_job(job_id)
        if not job:
            raise JobNotFound(f"Job not found: {job_id}")
        return job

    def get_progress(self, video_id: str) -> Tuple[int, TranscodeJob]:
        """Progress of the video's most recent job, with that job."""
        job = self.store.latest_job_for_video(video_id)
        if job is None:
            raise NoActiveJob(f"No transcode job for video {video_id}")

        if job.status == JobStatus.RUNNING:
            value = self.tracker.get_progress(job.id)
            if value is not None:
                return value, job
            # tracker entry may have been dropped after completion
            job = self.store.get_job(job.id) or job

        if job.status == JobStatus.SUCCEEDED:
            return 100, job
        if job.status == JobStatus.FAILED:
            raise NoActiveJob(
                f"Transcode failed: {job.error_message or job.error_kind}",
                status=job.status,
                failure_kind=job.error_kind,
            )
        return int(job.progress), job

    def get_manifest(self, video_id: str) -> Manifest:
        if not self.store.get_video(video_id):
            raise VideoNotFound(f"Video not found: {video_id}")
        return build_manifest(self.store.list_renditions(video_id))

    def list_videos(self) -> List[Tuple[Video, Manifest]]:
        return [
            (video, build_manifest(self.store.list_renditions(video.id)))
            for video in self.store.list_videos()
        ]

    def get_video(self, video_id: str) -> Tuple[Video, Manifest]:
        video = self.store.get_video(video_id)
        if not video:
            raise VideoNotFound(f"Video not found: {video_id}")
        return video, build_manifest(self.store.list_renditions(video_id))

    # --- deletion ---

    def delete_video(self, video_id: str):
        with self._video_locks.hold(video_id):
            video = self.store.get_video(video_id)
            if not video:
                raise VideoNotFound(f"Video not found: {video_id}")
            active = self.store.find_active_by_video(video_id)
            if active:
                raise JobAlreadyActive(f"Cannot delete {video_id} while job {active.id} is {active.status}")
            renditions = self.store.list_renditions(video_id)
            self.store.delete_video(video_id)

        try:
            if os.path.exists(video.source_path):
                os.remove(video.source_path)
        except OSError:
            logger.exception("failed to remove source of %s", video_id)
        self.worker.remove_rendition_files(renditions)
        shutil.rmtree(self.worker.layout.video_dir(video_id), ignore_errors=True)
        logger.info("deleted video %s and %d renditions", video_id, len(renditions))
