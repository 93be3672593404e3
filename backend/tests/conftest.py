# backend/tests/conftest.py
import os
import threading
import time

import pytest

from videohost.config import Settings
from videohost.db import init_db, make_engine
from videohost.errors import EncodeFailure, EncodeTimeout
from videohost.ffmpeg_utils import OUTPUT_NAMES, EncodeOutput, Encoder
from videohost.jobstore import JobStore
from videohost.main import build_coordinator
from videohost.models import Video

SEGMENTS = {
    "mp4": [],
    "hls": ["playlist0.ts", "playlist1.ts"],
    "dash": ["init-stream0.m4s", "chunk-stream0-00001.m4s"],
}


class FakeEncoder(Encoder):
    """Writes small placeholder artifacts instead of running ffmpeg.

    ``gate`` (when set up with ``hold()``) blocks every run until ``release()``;
    ``fail_with`` makes runs raise after emitting progress.
    """

    def __init__(self, progress=(25, 50, 75), available=True):
        self.progress = list(progress)
        self.available = available
        self.fail_with = None
        self.step_delay = 0.0
        self.calls = []
        self.started = threading.Event()
        self._gate = threading.Event()
        self._gate.set()
        self._lock = threading.Lock()
        self.running = 0
        self.max_running = 0

    def hold(self):
        self._gate.clear()

    def release(self):
        self._gate.set()

    def check(self):
        return self.available

    def run(self, source_path, request, output_dir, on_progress=None):
        with self._lock:
            self.calls.append((source_path, request))
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.started.set()
        try:
            for pct in self.progress:
                if on_progress:
                    on_progress(pct)
                if self.step_delay:
                    time.sleep(self.step_delay)
            if not self._gate.wait(timeout=10):
                raise EncodeTimeout("fake encoder was never released")
            if self.fail_with:
                raise self.fail_with

            manifest = OUTPUT_NAMES[request.format]
            names = [manifest] + SEGMENTS[request.format]
            for name in names:
                with open(os.path.join(output_dir, name), "w") as f:
                    f.write(f"{request.format} {request.resolution} {request.bitrate}\n")
            return EncodeOutput(manifest=manifest, files=sorted(names))
        finally:
            with self._lock:
                self.running -= 1


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def add_video(store: JobStore, settings: Settings, video_id: str = "v1") -> Video:
    os.makedirs(settings.uploads_dir, exist_ok=True)
    source_path = os.path.join(settings.uploads_dir, video_id)
    with open(source_path, "wb") as f:
        f.write(b"\x00" * 1024)
    return store.create_video(
        Video(id=video_id, name=video_id, url=f"/videos/{video_id}", source_path=source_path, size=1024)
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        STORAGE_DIR=str(tmp_path / "storage"),
        MAX_WORKERS=2,
        MAX_PENDING_JOBS=8,
        PROGRESS_GRACE_SECONDS=0.0,
        WS_PUSH_INTERVAL=0.01,
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def store(settings):
    os.makedirs(settings.STORAGE_DIR, exist_ok=True)
    engine = make_engine(settings.database_url)
    init_db(engine)
    return JobStore(engine)


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def coordinator(settings, encoder):
    for path in (settings.STORAGE_DIR, settings.uploads_dir, settings.transcoded_dir):
        os.makedirs(path, exist_ok=True)
    coord = build_coordinator(settings, encoder)
    init_db(coord.store.engine)
    coord.recover()
    yield coord
    encoder.release()
    coord.shutdown(wait=True)
