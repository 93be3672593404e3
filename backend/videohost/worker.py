# backend/videohost/worker.py
"""Runs one transcode job and publishes its output.

The encoder writes into a private staging directory
(``<transcoded>/.staging/<job_id>/out``). Only after it succeeds are the
artifacts moved into the public layout and the job committed together with
its renditions; any failure rolls the public files back and leaves the
video's manifest untouched.
"""

import json
import logging
import os
import shutil
from typing import List, Tuple
from urllib.parse import quote, unquote

from .errors import EncodeFailure, StorageFailure, TranscodeError, truncate_message
from .ffmpeg_utils import EncodeOutput, Encoder
from .jobstore import JobStore
from .models import Rendition, RenditionKind, TranscodeJob, Video
from .progress import ProgressTracker

logger = logging.getLogger(__name__)

# 100 is reserved for "committed"
MAX_RUNNING_PROGRESS = 99


class OutputLayout:
    """Where renditions live on disk and under which public url."""

    def __init__(self, transcoded_dir: str, public_prefix: str = "/transcoded"):
        self.root = transcoded_dir
        self.public_prefix = public_prefix.rstrip("/")

    @property
    def staging_root(self) -> str:
        return os.path.join(self.root, ".staging")

    def staging_dir(self, job_id: str) -> str:
        return os.path.join(self.staging_root, job_id)

    @staticmethod
    def stem(video_id: str) -> str:
        return os.path.splitext(video_id)[0]

    def video_dir(self, video_id: str) -> str:
        """Every rendition of a video lives under a directory named by its full id."""
        if not video_id or video_id.startswith(".") or "/" in video_id or os.sep in video_id:
            raise StorageFailure(f"Invalid video id for output: {video_id!r}")
        return os.path.join(self.root, video_id)

    def mp4_path(self, video_id: str, label: str) -> str:
        return os.path.join(self.video_dir(video_id), f"{self.stem(video_id)}_{label}.mp4")

    def ladder_dir(self, video_id: str, fmt: str, label: str, job_id: str) -> str:
        # one directory per job
        return os.path.join(self.video_dir(video_id), f"{fmt}_{label}-{job_id[:8]}")

    def url_for(self, path: str) -> str:
        rel = os.path.relpath(path, self.root).replace(os.sep, "/")
        return f"{self.public_prefix}/{quote(rel)}"

    def path_for(self, url: str) -> str:
        rel = unquote(url[len(self.public_prefix):].lstrip("/"))
        path = os.path.normpath(os.path.join(self.root, rel))
        if os.path.commonpath([path, os.path.normpath(self.root)]) != os.path.normpath(self.root):
            raise StorageFailure(f"Rendition path escapes storage: {url}")
        return path


class EncodeWorker:
    def __init__(
        self,
        store: JobStore,
        tracker: ProgressTracker,
        encoder: Encoder,
        layout: OutputLayout,
        error_limit: int = 1000,
    ):
        self.store = store
        self.tracker = tracker
        self.encoder = encoder
        self.layout = layout
        self.error_limit = error_limit

    def execute(self, job: TranscodeJob, video: Video) -> bool:
        """Encode a running job and record the outcome on it; True on success."""
        staging = self.layout.staging_dir(job.id)
        out_dir = os.path.join(staging, "out")
        published: List[Tuple[str, str]] = []
        try:
            if not os.path.exists(video.source_path):
                raise StorageFailure(f"Source video missing: {video.id}")
            try:
                os.makedirs(out_dir, exist_ok=True)
            except OSError as e:
                raise StorageFailure(f"Failed to create staging directory: {e}")

            def on_progress(pct):
                self.tracker.set_progress(job.id, min(pct, MAX_RUNNING_PROGRESS))

            logger.info("job %s: encoding %s as %s %s @ %s", job.id, video.id, job.format, job.request.label, job.bitrate)
            output = self.encoder.run(video.source_path, job.request, out_dir, on_progress)

            kind = RenditionKind.BY_FORMAT[job.format]
            previous = [
                r for r in self.store.list_renditions(video.id)
                if r.kind == kind and r.resolution == job.request.label
            ]
            renditions = self._publish(job, video, staging, out_dir, output, published)
            if not self.store.complete_job(job.id, renditions):
                raise StorageFailure(f"Job {job.id} could not be marked succeeded")

            self.tracker.mark_terminal(job.id, 100)
            logger.info("job %s: succeeded, %s", job.id, ", ".join(r.path for r in renditions))
            current = {r.path for r in renditions}
            self.remove_rendition_files([r for r in previous if r.path not in current])
            return True

        except TranscodeError as e:
            self._rollback(published)
            self._fail(job, e.kind, e.message)
        except OSError as e:
            self._rollback(published)
            self._fail(job, StorageFailure.kind, str(e))
        except Exception as e:
            logger.exception("job %s: unexpected error", job.id)
            self._rollback(published)
            self._fail(job, EncodeFailure.kind, str(e) or e.__class__.__name__)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        return False

    def _fail(self, job: TranscodeJob, kind: str, message: str):
        message = truncate_message(message, self.error_limit)
        logger.error("job %s: failed (%s) %s", job.id, kind, message)
        self.store.fail_job(job.id, kind, message)
        self.tracker.mark_terminal(job.id)

    def _publish(self, job, video, staging, out_dir, output: EncodeOutput, published: List[Tuple[str, str]]):
        """Move staged artifacts into place.

        Returns the renditions to record. Each move is appended to
        ``published`` as a (final, backup) pair; a backup is a link to the
        file that previously lived at the final location.

        An mp4 replaces its predecessor with a single rename, so the
        committed url always resolves. Ladders go to a new per-job
        directory and the old one is removed only after the commit.
        """
        request = job.request
        manifest_path = os.path.join(out_dir, output.manifest)
        if not os.path.isfile(manifest_path):
            raise EncodeFailure(f"Encoder did not produce {output.manifest}")

        if request.format == "mp4":
            source = manifest_path
            final = self.layout.mp4_path(video.id, request.label)
            urls = [self.layout.url_for(final)]
            manifest_url = urls[0]
        else:
            segments = [name for name in output.files if name != output.manifest]
            if not segments:
                raise EncodeFailure(f"Encoder produced no segments for {output.manifest}")
            source = out_dir
            final = self.layout.ladder_dir(video.id, request.format, request.label, job.id)
            manifest_url = self.layout.url_for(os.path.join(final, output.manifest))
            urls = [manifest_url] + [self.layout.url_for(os.path.join(final, name)) for name in segments]

        os.makedirs(os.path.dirname(final), exist_ok=True)
        backup = ""
        if os.path.isfile(final):
            backup = os.path.join(staging, "previous")
            link_or_copy(final, backup)
        published.append((final, backup))
        os.replace(source, final)

        rendition = Rendition(
            video_id=video.id,
            job_id=job.id,
            kind=RenditionKind.BY_FORMAT[request.format],
            resolution=request.label,
            bitrate=request.bitrate,
            path=manifest_url,
            files=json.dumps(urls),
        )
        return [rendition]

    def _rollback(self, published: List[Tuple[str, str]]):
        for final, backup in reversed(published):
            try:
                if backup and os.path.exists(backup):
                    os.replace(backup, final)
                elif os.path.isdir(final):
                    shutil.rmtree(final)
                elif os.path.exists(final):
                    os.remove(final)
            except OSError:
                logger.exception("failed to roll back %s", final)

    def remove_rendition_files(self, renditions: List[Rendition]):
        """Delete the files behind renditions (superseded ladders, deleted videos)."""
        for rendition in renditions:
            try:
                path = self.layout.path_for(rendition.path)
                if rendition.kind == RenditionKind.MP4:
                    if os.path.exists(path):
                        os.remove(path)
                else:
                    shutil.rmtree(os.path.dirname(path), ignore_errors=True)
            except (OSError, StorageFailure):
                logger.exception("failed to remove files of rendition %s", rendition.path)


def link_or_copy(src: str, dst: str):
    try:
        os.link(src, dst)
    except OSError:
        shutil.copy2(src, dst)
