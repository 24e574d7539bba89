"""
Job helpers: run one loop conversion at a time and broadcast its progress.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from loop_builder import LoopRequest
from media_engine import MediaEngine
from orchestrator import FAILURE_MESSAGE, LoopFailed, LoopInputs, PreconditionError, run_loop_to_file

from . import storage

LOG = logging.getLogger(__name__)

MAX_TRACKED_JOBS = 20

QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class JobEventBus:
    """
    Fans job events out to every socket watching that job.

    Each watcher gets a bounded queue; a watcher that falls behind loses its
    oldest events rather than blocking the conversion thread.
    """

    QUEUE_SIZE = 100

    def __init__(self) -> None:
        self._watchers: Dict[str, List[queue.Queue]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> queue.Queue:
        inbox: queue.Queue = queue.Queue(maxsize=self.QUEUE_SIZE)
        with self._lock:
            self._watchers.setdefault(job_id, []).append(inbox)
        return inbox

    def unsubscribe(self, job_id: str, inbox: queue.Queue) -> None:
        with self._lock:
            watchers = self._watchers.get(job_id, [])
            if inbox in watchers:
                watchers.remove(inbox)
            if not watchers:
                self._watchers.pop(job_id, None)

    def publish(self, job_id: str, event: dict) -> None:
        with self._lock:
            watchers = tuple(self._watchers.get(job_id, ()))
        for inbox in watchers:
            while True:
                try:
                    inbox.put_nowait(event)
                    break
                except queue.Full:
                    try:
                        inbox.get_nowait()
                    except queue.Empty:
                        pass


class JobBusy(Exception):
    def __init__(self, active_id: str):
        super().__init__(f"job {active_id} is still running")
        self.active_id = active_id


@dataclass
class Job:
    id: str
    status: str = QUEUED
    progress: int = 0
    message: Optional[str] = None
    created_at: str = field(default_factory=_utc_now_iso)
    finished_at: Optional[str] = None

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class JobRegistry:
    """Tracks recent jobs and enforces a single in-flight conversion."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._active: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def active_id(self) -> Optional[str]:
        return self._active

    @property
    def busy(self) -> bool:
        return self._active is not None

    def start(self) -> Job:
        with self._lock:
            if self._active is not None:
                raise JobBusy(self._active)
            job = Job(id=uuid4().hex)
            self._jobs[job.id] = job
            self._active = job.id
            while len(self._jobs) > MAX_TRACKED_JOBS:
                oldest = next(iter(self._jobs))
                self._jobs.pop(oldest)
            return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def release(self, job_id: str) -> None:
        with self._lock:
            if self._active == job_id:
                self._active = None


events = JobEventBus()
registry = JobRegistry()


def _publish_status(job: Job) -> None:
    events.publish(job.id, {"type": "status", "job": job.id, **job.snapshot()})


def run_job(engine: MediaEngine, job: Job, request: LoopRequest, inputs: LoopInputs) -> Job:
    """
    Blocking conversion for one job; meant to run in a worker thread.
    The in-flight slot is released whatever the outcome.
    """
    job.status = RUNNING
    job.progress = 0
    _publish_status(job)

    removed = storage.clear_outputs(keep=job.id)
    if removed:
        LOG.info("Removed %d previous output(s)", removed)

    def on_progress(pct: int) -> None:
        job.progress = pct
        events.publish(job.id, {"type": "progress", "job": job.id, "progress": pct})

    pending = None
    try:
        pending = storage.pending_output(job.id)
        run_loop_to_file(engine, request, inputs, pending, on_progress=on_progress)
        storage.commit_output(job.id, pending)
        job.status = SUCCEEDED
        job.progress = 100
        job.message = None
    except PreconditionError as exc:
        job.status = FAILED
        job.message = str(exc)
    except LoopFailed as exc:
        LOG.warning("Job %s failed: %s", job.id, exc.detail)
        job.status = FAILED
        job.message = exc.message
    except Exception:  # noqa: BLE001
        LOG.exception("Job %s crashed", job.id)
        job.status = FAILED
        job.message = FAILURE_MESSAGE
    finally:
        if pending is not None and pending.exists():
            try:
                pending.unlink()
            except OSError as exc:
                LOG.debug("Could not remove %s: %s", pending, exc)
        job.finished_at = _utc_now_iso()
        registry.release(job.id)
        _publish_status(job)
    return job


__all__ = ["FAILED", "Job", "JobBusy", "JobRegistry", "QUEUED", "RUNNING", "SUCCEEDED", "events", "registry", "run_job"]
