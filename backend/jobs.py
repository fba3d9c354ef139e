"""
In-memory job registry. Nothing is persisted: all state lives in this process.
A server restart will clear all jobs.

Each Job carries its own lock; every read-modify-write of its fields happens
under that lock, and terminal states (completed / failed) are written once.
"""

import logging
import math
import threading
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class UnknownJob(KeyError):
    """Raised when a job id is not in the registry."""


def percent(done: int, total: int) -> int:
    """Whole-number percentage, halves rounded up. 0 when *total* is 0."""
    if total <= 0:
        return 0
    return math.floor(100 * done / total + 0.5)


class Job:
    def __init__(self, job_id: str, source_kind: str = "audio") -> None:
        self.id = job_id
        self.source_kind = source_kind
        self.status = JobStatus.QUEUED
        self.total_clips = 0
        self.completed_clips = 0
        self.progress = 0
        self.outputs: List[str] = []
        self.error_message: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_terminal(self) -> bool:
        with self._lock:
            return self.status in TERMINAL_STATUSES

    def start_processing(self, total_clips: int) -> None:
        """queued → processing, or straight to completed when there is nothing to render."""
        with self._lock:
            if self.status is not JobStatus.QUEUED:
                raise RuntimeError(f"Job {self.id} is {self.status.value}, expected queued")
            self.total_clips = total_clips
            self.status = JobStatus.COMPLETED if total_clips == 0 else JobStatus.PROCESSING

    def record_clip(self, output: str) -> bool:
        """
        Count one finished clip. Returns True only for the call that moved the
        job to completed; events arriving after a terminal state are dropped.
        """
        with self._lock:
            if self.status in TERMINAL_STATUSES:
                logger.debug("[Job %s] Ignoring clip %s: job is %s", self.id, output, self.status.value)
                return False
            self.completed_clips += 1
            self.progress = percent(self.completed_clips, self.total_clips)
            self.outputs.append(output)
            if self.completed_clips == self.total_clips:
                self.status = JobStatus.COMPLETED
                return True
            return False

    def fail(self, message: str) -> bool:
        """Move the job to failed. Returns False if it was already terminal."""
        with self._lock:
            if self.status in TERMINAL_STATUSES:
                logger.debug("[Job %s] Ignoring failure: job is %s", self.id, self.status.value)
                return False
            self.status = JobStatus.FAILED
            self.error_message = message
            return True

    def snapshot(self) -> Dict[str, Any]:
        """Consistent copy of the job, shaped for status polling."""
        with self._lock:
            return {
                "job_id": self.id,
                "status": self.status.value,
                "progress": self.progress,
                "total_clips": self.total_clips,
                "clips_generated": self.completed_clips,
                "download_urls": list(self.outputs),
                "error_message": self.error_message,
            }


class JobRegistry:
    """Process-wide mapping from job id to Job."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, source_kind: str = "audio") -> Job:
        """Create a queued job under a fresh id and return it."""
        job = Job(str(uuid.uuid4()), source_kind)
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJob(job_id)
        return job

    def snapshot(self, job_id: str) -> Dict[str, Any]:
        return self.get(job_id).snapshot()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
