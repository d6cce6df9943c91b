"""
Track asynchronous multi-unit jobs (import, extract, export, merge, resize).

Why this module exists:
- One place owns job status, progress and the grace period after a job
  finishes, so the UI layer only ever reads `JobQueue.jobs()`.
- `run_units` is the shared per-unit loop: every unit is raced against a
  deadline, and a failing unit is logged and skipped instead of sinking the
  whole job.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import sys
import time
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TextIO, TypeVar

from .manifest import ManifestRecorder
from .utils import OversizeInput, RenderTimeout, UserError, new_id


T = TypeVar("T")
R = TypeVar("R")


class JobKind(Enum):
    IMPORT = "import"
    EXTRACT = "extract"
    EXPORT = "export"
    MERGE = "merge"
    RESIZE = "resize"


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class JobProgress:
    current: int
    total: int

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(1.0, self.current / self.total)


@dataclass(frozen=True)
class JobSummary:
    attempted: int
    succeeded: int
    failed: int
    skipped: int
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "message": self.message,
        }


@dataclass
class Job:
    id: str
    session_id: str
    session_name: str
    kind: JobKind
    recorder: ManifestRecorder
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = JobProgress(0, 0)
    message: str = ""
    created_at: float = 0.0
    finished_at: Optional[float] = None
    summary: Optional[JobSummary] = None
    errors: List[str] = field(default_factory=list)


class JobQueue:
    """
    Active jobs plus the recently finished ones still inside their grace period.

    Expired jobs are purged lazily on every read, measured with the injected
    clock so tests never sleep.
    """

    def __init__(
        self,
        grace_period: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        verbosity: str = "normal",
        console_stream: TextIO | None = None,
    ) -> None:
        self.grace_period = grace_period
        self._clock = clock
        self._verbosity = verbosity
        self._console_stream = console_stream if console_stream is not None else sys.stderr
        self._jobs: Dict[str, Job] = {}

    def dispatch(
        self,
        kind: JobKind,
        session_id: str,
        total_units: int,
        session_name: str = "",
    ) -> str:
        """Register a new pending job and return its id."""

        if total_units < 0:
            raise UserError("A job cannot have a negative unit count.")
        job_id = new_id("job")
        recorder = ManifestRecorder(
            command=f"{kind.value} job",
            context={"job_id": job_id, "session_id": session_id, "session_name": session_name},
            verbosity=self._verbosity,
            console_stream=self._console_stream,
        )
        job = Job(
            id=job_id,
            session_id=session_id,
            session_name=session_name,
            kind=kind,
            recorder=recorder,
            progress=JobProgress(0, total_units),
            message=f"Starting {kind.value} processing...",
            created_at=self._clock(),
        )
        self._jobs[job_id] = job
        recorder.log(job.message, level="debug")
        return job_id

    def require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise UserError(f"Unknown job: {job_id}")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        self.purge_expired()
        return self._jobs.get(job_id)

    def update_progress(self, job_id: str, current: int, message: str | None = None) -> None:
        job = self.require(job_id)
        if job.status.is_terminal:
            raise UserError(f"Job {job_id} already finished.")
        job.status = JobStatus.RUNNING
        job.progress = JobProgress(max(0, current), job.progress.total)
        if message is not None:
            job.message = message
            job.recorder.log(message, level="debug")

    def set_total(self, job_id: str, total_units: int) -> None:
        job = self.require(job_id)
        job.progress = JobProgress(job.progress.current, max(0, total_units))

    def note_failure(self, job_id: str, message: str) -> None:
        """Fold a unit failure into the job's running message."""

        job = self.require(job_id)
        job.errors.append(message)
        job.message = message

    def complete(
        self,
        job_id: str,
        status: JobStatus,
        message: str,
        summary: JobSummary | None = None,
    ) -> Job:
        """Move a job to its terminal status; allowed exactly once."""

        if not status.is_terminal:
            raise UserError(f"Cannot complete a job with status {status.value}.")
        job = self.require(job_id)
        if job.status.is_terminal:
            raise UserError(f"Job {job_id} already finished as {job.status.value}.")

        job.status = status
        job.message = message
        job.summary = summary
        job.finished_at = self._clock()
        job.recorder.log(message, level="info" if status is JobStatus.COMPLETED else "error")
        return job

    def purge_expired(self) -> None:
        now = self._clock()
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.finished_at is not None and now - job.finished_at >= self.grace_period
        ]
        for job_id in expired:
            del self._jobs[job_id]

    def jobs(self, session_id: str | None = None) -> List[Job]:
        self.purge_expired()
        return [
            job
            for job in self._jobs.values()
            if session_id is None or job.session_id == session_id
        ]

    def is_session_processing(self, session_id: str) -> bool:
        return any(not job.status.is_terminal for job in self.jobs(session_id))

    @property
    def processing_count(self) -> int:
        return sum(1 for job in self.jobs() if not job.status.is_terminal)

    def global_status_message(self) -> str:
        for job in self.jobs():
            if job.status is JobStatus.RUNNING:
                return job.message
        return ""


@dataclass
class UnitBatch(Generic[R]):
    results: List[R] = field(default_factory=list)
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


async def race_deadline(awaitable: Awaitable[R], timeout: float, label: str) -> R:
    """Await with a deadline; overrunning raises RenderTimeout for this unit only."""

    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise RenderTimeout(f"{label} did not finish within {timeout:g}s.") from exc


async def run_units(
    queue: JobQueue,
    job_id: str,
    units: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    describe: Callable[[T], str],
    action: str,
    unit_timeout: float,
    batch: UnitBatch[R] | None = None,
) -> UnitBatch[R]:
    """
    Process units in order, tolerating per-unit failure.

    Successful results keep input order. Oversize inputs are skipped with a
    warning; every other exception marks the unit failed.
    """

    job = queue.require(job_id)
    batch = batch if batch is not None else UnitBatch()
    total = len(units)

    for position, unit in enumerate(units, start=1):
        label = describe(unit)
        progress = f"Processing {label} ({position}/{total})"
        if batch.failed:
            progress = f"{progress}, {batch.failed} failed"
        queue.update_progress(job_id, position - 1, progress)
        batch.attempted += 1
        try:
            result = await race_deadline(worker(unit), unit_timeout, label)
        except OversizeInput as exc:
            batch.skipped += 1
            job.recorder.log(f"Skipped {label}: {exc}", level="warning")
            job.recorder.add_action(action, "skipped", unit=label, reason=str(exc))
            continue
        except Exception as exc:  # one bad unit must not sink its siblings
            batch.failed += 1
            message = f"{label} failed: {exc}"
            queue.note_failure(job_id, message)
            job.recorder.log(message, level="error")
            job.recorder.add_action(action, "failed", unit=label, error=str(exc))
            continue

        batch.results.append(result)
        batch.succeeded += 1
        job.recorder.add_action(action, "written", unit=label)

    queue.update_progress(job_id, total)
    return batch


def finish_job(
    queue: JobQueue,
    job_id: str,
    batch: UnitBatch[Any],
    verb: str,
    noun: str,
) -> Job:
    """
    Complete a job from its unit tally.

    The job fails only when nothing succeeded.
    """

    message = f"{verb} {batch.succeeded}/{batch.attempted} {noun}"
    extras = []
    if batch.failed:
        extras.append(f"{batch.failed} failed")
    if batch.skipped:
        extras.append(f"{batch.skipped} skipped")
    if extras:
        message = f"{message} ({', '.join(extras)})"

    status = JobStatus.COMPLETED if batch.succeeded > 0 else JobStatus.FAILED
    summary = JobSummary(
        attempted=batch.attempted,
        succeeded=batch.succeeded,
        failed=batch.failed,
        skipped=batch.skipped,
        message=message,
    )
    return queue.complete(job_id, status, message, summary)
