# backend/videohost/progress.py
"""In-memory progress view of running transcode jobs.

Values are monotonic per job: encoder progress streams jitter, so a smaller
value than the one already stored is dropped silently. Entries are a
transient view; the job store remains the durable record.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: int = 0
    terminal_at: Optional[float] = None
    read_after_terminal: bool = False


class ProgressTracker:
    def __init__(
        self,
        grace_seconds: float = 30.0,
        retention_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.grace_seconds = grace_seconds
        self.retention_seconds = max(retention_seconds, grace_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def start(self, job_id: str) -> None:
        with self._lock:
            self._entries.setdefault(job_id, _Entry())
        self.evict_expired()

    def set_progress(self, job_id: str, pct: float) -> int:
        """Record progress for a job and return the value readers will now see."""
        value = int(max(0, min(100, pct)))
        with self._lock:
            entry = self._entries.setdefault(job_id, _Entry())
            if entry.terminal_at is None and value > entry.value:
                entry.value = value
            return entry.value

    def get_progress(self, job_id: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                return None
            if entry.terminal_at is not None:
                entry.read_after_terminal = True
            return entry.value

    def mark_terminal(self, job_id: str, final_value: Optional[int] = None) -> None:
        """Freeze the entry; ``final_value`` (e.g. 100 on success) is applied first."""
        with self._lock:
            entry = self._entries.setdefault(job_id, _Entry())
            if final_value is not None and final_value > entry.value:
                entry.value = int(min(100, final_value))
            if entry.terminal_at is None:
                entry.terminal_at = self._clock()

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                job_id
                for job_id, entry in self._entries.items()
                if entry.terminal_at is not None
                and (
                    (entry.read_after_terminal and now - entry.terminal_at >= self.grace_seconds)
                    or now - entry.terminal_at >= self.retention_seconds
                )
            ]
            for job_id in expired:
                del self._entries[job_id]
        if expired:
            logger.debug("evicted progress for %d finished jobs", len(expired))
        return len(expired)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
