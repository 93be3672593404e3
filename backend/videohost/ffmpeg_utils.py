# backend/videohost/ffmpeg_utils.py
import logging
import os
import re
import shlex
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import EncodeFailure, EncodeTimeout, truncate_message
from .models import TranscodeRequest

logger = logging.getLogger(__name__)

# file the encoder writes into its output directory, per format
OUTPUT_NAMES = {
    "mp4": "video.mp4",
    "hls": "playlist.m3u8",
    "dash": "manifest.mpd",
}

STDERR_TAIL_LINES = 40

ProgressCallback = Callable[[int], None]


@dataclass
class EncodeOutput:
    """Artifacts an encoder left in its output directory (names relative to it)."""
    manifest: str
    files: List[str] = field(default_factory=list)


class Encoder(ABC):
    """Runs one transcode of ``source_path`` into ``output_dir``.

    Implementations raise ``EncodeFailure`` (or ``EncodeTimeout``) on failure
    and may call ``on_progress`` with 0-100 estimates while running.
    """

    def check(self) -> bool:
        return True

    @abstractmethod
    def run(
        self,
        source_path: str,
        request: TranscodeRequest,
        output_dir: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EncodeOutput:
        raise NotImplementedError


def run_cmd(cmd: list, timeout: Optional[float] = None):
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, timeout=timeout)
    return proc.returncode, proc.stdout, proc.stderr


def check_ffmpeg(ffmpeg_path: str = "ffmpeg") -> bool:
    try:
        code, _, _ = run_cmd([ffmpeg_path, "-version"], timeout=10)
    except (OSError, subprocess.SubprocessError):
        return False
    return code == 0


def get_video_info(path: str, ffprobe_path: str = "ffprobe") -> Dict:
    """Return dict: {duration: float_seconds, width: int, height: int}"""
    cmd = [
        ffprobe_path, "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "format=duration:stream=width,height",
        "-of", "default=noprint_wrappers=1",
        path,
    ]
    info = {"duration": 0.0, "width": None, "height": None}
    try:
        code, out, _ = run_cmd(cmd, timeout=30)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("ffprobe failed for %s: %s", path, e)
        return info
    if code != 0:
        return info

    for line in out.splitlines():
        key, _, value = line.strip().partition("=")
        try:
            if key == "duration":
                info["duration"] = float(value)
            elif key in ("width", "height"):
                info[key] = int(value)
        except ValueError:
            continue
    return info


def build_transcode_command(
    input_path: str,
    request: TranscodeRequest,
    output_path: str,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """ffmpeg argv for one rendition; progress goes to stdout as key=value lines."""
    scale = f"scale=-2:{request.resolution}"
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y", "-i", input_path]

    if request.format == "hls":
        cmd += [
            "-c:v", "libx264", "-c:a", "aac",
            "-profile:v", "baseline",
            "-level", "3.0",
            "-start_number", "0",
            "-hls_time", "10",
            "-hls_list_size", "0",
            "-f", "hls",
        ]
    elif request.format == "dash":
        cmd += [
            "-c:v", "libx264", "-c:a", "aac",
            "-profile:v", "baseline",
            "-level", "3.0",
            "-bf", "0",
            "-f", "dash",
            "-use_timeline", "1",
            "-use_template", "1",
            "-window_size", "5",
            "-adaptation_sets", "id=0,streams=v id=1,streams=a",
        ]
    else:
        cmd += [
            "-c:v", "libx264",
            "-preset", "fast",
            "-c:a", "aac",
            "-movflags", "+faststart",
        ]

    cmd += ["-vf", scale, "-b:v", request.bitrate, "-progress", "pipe:1", "-nostats", output_path]
    return cmd


_CLOCK_RE = re.compile(r"(\d+):(\d+):(\d+(?:\.\d+)?)")


def parse_progress_line(line: str, duration: float) -> Optional[int]:
    """Percentage from one ``-progress`` line, or None if the line carries no position."""
    if duration <= 0:
        return None
    key, _, value = line.strip().partition("=")
    seconds = None
    try:
        # out_time_ms is in microseconds too
        if key in ("out_time_us", "out_time_ms"):
            seconds = int(value) / 1_000_000.0
        elif key == "out_time":
            match = _CLOCK_RE.match(value)
            if match:
                hours, minutes, secs = match.groups()
                seconds = int(hours) * 3600 + int(minutes) * 60 + float(secs)
    except ValueError:
        return None
    if seconds is None or seconds < 0:
        return None
    return int(min(100, seconds / duration * 100))


def _drain(stream, tail: deque):
    for line in iter(stream.readline, ""):
        tail.append(line.rstrip())
    stream.close()


class FFmpegEncoder(Encoder):
    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout: float = 3600.0,
        error_limit: int = 1000,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.error_limit = error_limit

    def check(self) -> bool:
        return check_ffmpeg(self.ffmpeg_path)

    def run(self, source_path, request, output_dir, on_progress=None) -> EncodeOutput:
        duration = get_video_info(source_path, self.ffprobe_path)["duration"]
        if duration <= 0:
            logger.warning("could not read duration of %s, progress will jump at completion", source_path)

        manifest = OUTPUT_NAMES[request.format]
        output_path = os.path.join(output_dir, manifest)
        cmd = build_transcode_command(source_path, request, output_path, self.ffmpeg_path)
        logger.info("Running FFmpeg command: %s", shlex.join(cmd))

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                cwd=output_dir,
            )
        except OSError as e:
            raise EncodeFailure(f"Failed to start FFmpeg: {e}")

        # stderr drained on its own thread, only the tail is kept
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        drainer = threading.Thread(target=_drain, args=(proc.stderr, stderr_tail), daemon=True)
        drainer.start()

        timed_out = threading.Event()

        def kill():
            timed_out.set()
            try:
                proc.kill()
            except ProcessLookupError:
                pass  # already exited

        timer = threading.Timer(self.timeout, kill)
        timer.daemon = True
        timer.start()
        try:
            for line in proc.stdout:
                pct = parse_progress_line(line, duration)
                if pct is not None and on_progress:
                    on_progress(pct)
            proc.wait()
        finally:
            timer.cancel()
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            drainer.join(timeout=5)

        if timed_out.is_set():
            raise EncodeTimeout(f"FFmpeg exceeded the {self.timeout:.0f}s limit")
        if proc.returncode != 0:
            detail = "\n".join(stderr_tail)
            raise EncodeFailure(
                truncate_message(f"FFmpeg exited with code {proc.returncode}: {detail}", self.error_limit)
            )
        if not os.path.exists(output_path):
            raise EncodeFailure(f"FFmpeg did not produce {manifest}")

        return EncodeOutput(manifest=manifest, files=list_output_files(output_dir))


def list_output_files(output_dir: str) -> List[str]:
    return sorted(
        name for name in os.listdir(output_dir)
        if os.path.isfile(os.path.join(output_dir, name))
    )
