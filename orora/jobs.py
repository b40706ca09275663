"""Job model and registry.

The registry is the only owner of job state: content edits, status transitions
and output appends all go through it. It is not thread-safe: the Session
loop is its single consumer.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog

from .bootstrap import JOBS_EXECUTED
from .protocol import EXECUTE

NOT_CONNECTED_LINE = "Error: connection not available"
NO_OUTPUT_LINE = "No output"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"


class DisplayMode(str, Enum):
    CODE = "code"
    RENDERED = "rendered"
    BOTH = "both"


class JobNotFound(LookupError):
    """Raised when an operation addresses an id that is not in the registry."""

    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class JobStateError(RuntimeError):
    """Raised when an operation is not allowed in the job's current status."""


@dataclass(slots=True)
class Job:
    id: str
    content: str = ""
    output: list[str] = field(default_factory=list)
    status: JobStatus = JobStatus.IDLE
    display_mode: DisplayMode = DisplayMode.CODE

    def to_dict(self) -> dict:
        data = asdict(self)
        data["output"] = list(self.output)
        data["status"] = self.status.value
        data["display_mode"] = self.display_mode.value
        return data


def new_job_id() -> str:
    return uuid.uuid4().hex


# Sender contract: returns True when the frame was handed to a live connection.
Sender = Callable[[dict], bool]


class JobRegistry:
    """Ordered collection of jobs keyed by id, with selection bookkeeping."""

    def __init__(self, *, seed: bool = False, logger: structlog.BoundLogger | None = None):
        self._jobs: list[Job] = []
        self._selected_id: Optional[str] = None
        self.logger = logger or structlog.get_logger().bind(component="registry")
        if seed:
            self.create()

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return self._index(job_id) is not None  # type: ignore[arg-type]

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs)

    @property
    def selected_id(self) -> Optional[str]:
        return self._selected_id

    def get(self, job_id: str) -> Optional[Job]:
        idx = self._index(job_id)
        if idx is None:
            self.logger.warning("job_not_found", job_id=job_id)
            return None
        return self._jobs[idx]

    def running(self) -> list[Job]:
        return [j for j in self._jobs if j.status is JobStatus.RUNNING]

    def _index(self, job_id: str) -> Optional[int]:
        for i, job in enumerate(self._jobs):
            if job.id == job_id:
                return i
        return None

    def _require(self, job_id: str) -> Job:
        idx = self._index(job_id)
        if idx is None:
            raise JobNotFound(job_id)
        return self._jobs[idx]

    # ------------------------------------------------------------
    # Editing operations
    # ------------------------------------------------------------
    def create(self, position: Optional[int] = None) -> str:
        job = Job(id=new_job_id())
        if position is None:
            self._jobs.append(job)
        else:
            position = max(0, min(position, len(self._jobs)))
            self._jobs.insert(position, job)
        self._selected_id = job.id
        self.logger.debug("job_created", job_id=job.id, position=position)
        return job.id

    def update(self, job_id: str, content: str) -> Job:
        job = self._require(job_id)
        job.content = content
        self._selected_id = job_id
        return job

    def delete(self, job_id: str) -> None:
        idx = self._index(job_id)
        if idx is None:
            raise JobNotFound(job_id)
        del self._jobs[idx]
        if self._selected_id == job_id:
            if not self._jobs:
                self._selected_id = None
            elif idx < len(self._jobs):
                self._selected_id = self._jobs[idx].id
            else:
                self._selected_id = self._jobs[-1].id
        self.logger.debug("job_deleted", job_id=job_id, selected=self._selected_id)

    def select(self, job_id: Optional[str]) -> None:
        if job_id is not None:
            self._require(job_id)
        self._selected_id = job_id

    def set_display_mode(self, job_id: str, mode: DisplayMode | str) -> Job:
        job = self._require(job_id)
        job.display_mode = DisplayMode(mode)
        return job

    def delete_output(self, job_id: str) -> Job:
        job = self._require(job_id)
        if job.status is JobStatus.RUNNING:
            raise JobStateError(f"job {job_id} is running; output cannot be cleared")
        job.output.clear()
        return job

    # ------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------
    def execute(self, job_id: str, send: Sender, *, connected: bool) -> Job:
        """Start a new execution cycle for ``job_id``.

        The job is moved to running with an empty output before anything is
        sent. When no connection is available the cycle ends immediately with
        an inline error line instead of a frame.
        """
        job = self._require(job_id)
        if job.status is JobStatus.RUNNING:
            raise JobStateError(f"job {job_id} is already running")
        self.mark_running(job_id, reset=True)
        frame = {"type": EXECUTE, "id": job.id, "code": job.content}
        if connected and send(frame):
            JOBS_EXECUTED.labels(outcome="sent").inc()
            self.logger.info("job_execute_sent", job_id=job_id, code_chars=len(job.content))
            return job
        JOBS_EXECUTED.labels(outcome="not_connected").inc()
        self.logger.warning("job_execute_not_connected", job_id=job_id)
        job.output[:] = [NOT_CONNECTED_LINE]
        job.status = JobStatus.COMPLETED
        return job

    # ------------------------------------------------------------
    # Transition primitives used by the router
    # ------------------------------------------------------------
    def mark_running(self, job_id: str, *, reset: bool = False) -> Job:
        job = self._require(job_id)
        if reset:
            job.output.clear()
        job.status = JobStatus.RUNNING
        return job

    def append_output(self, job_id: str, lines: Iterable[str]) -> Job:
        job = self._require(job_id)
        job.output.extend(lines)
        return job

    def mark_completed(self, job_id: str, *, sentinel: bool = False) -> Job:
        job = self._require(job_id)
        if sentinel and not job.output:
            job.output.append(NO_OUTPUT_LINE)
        job.status = JobStatus.COMPLETED
        return job
