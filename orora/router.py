"""Message router: applies inbound status frames to the job registry."""
from __future__ import annotations

from enum import Enum

import structlog

from .bootstrap import FRAMES_RECEIVED, FRAME_DECODE_FAILURES
from .jobs import JobRegistry, JobStatus
from .protocol import (
    STATUS_COMPLETED,
    STATUS_RUNNING,
    ProtocolDecodeError,
    decode_frame,
    parse_execution_status,
    recover_id,
)

PARSE_ERROR_LINE = "Error: Failed to parse server response"


class FailurePolicy(str, Enum):
    """Which jobs are failed when a frame cannot be routed.

    ALL_RUNNING assumes the stream is out of sync and completes every running
    job. ADDRESSED_ONLY fails only the job whose id can be read from the raw
    frame, leaving the others untouched.
    """

    ALL_RUNNING = "all_running"
    ADDRESSED_ONLY = "addressed_only"


class MessageRouter:
    def __init__(
        self,
        registry: JobRegistry,
        *,
        policy: FailurePolicy | str = FailurePolicy.ALL_RUNNING,
        logger: structlog.BoundLogger | None = None,
    ):
        self.registry = registry
        self.policy = FailurePolicy(policy)
        self.logger = logger or structlog.get_logger().bind(component="router")

    def route(self, raw: str | bytes) -> list[str]:
        """Apply one inbound frame. Returns the ids of the jobs it mutated."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = decode_frame(raw)
            status = parse_execution_status(data)
            if status is None:
                FRAMES_RECEIVED.labels(type=str(data.get("type"))).inc()
                self.logger.debug("frame_ignored", frame_type=data.get("type"))
                return []
            FRAMES_RECEIVED.labels(type=data["type"]).inc()
            return self._apply(status.id, status.status, status.lines())
        except ProtocolDecodeError as exc:
            FRAME_DECODE_FAILURES.inc()
            self.logger.error("frame_decode_failed", error=str(exc), frame=raw[:500])
            return self._contain(raw)
        except Exception as exc:
            self.logger.exception("frame_routing_failed", error=str(exc), frame=raw[:500])
            return self._contain(raw)

    def _apply(self, job_id: str, status: str, lines: list[str]) -> list[str]:
        job = self.registry.get(job_id)
        if job is None:
            self.logger.warning("frame_for_unknown_job", job_id=job_id, status=status)
            return []
        if status == STATUS_RUNNING:
            if job.status is JobStatus.COMPLETED:
                # only execute starts a new cycle
                self.logger.warning("frame_after_completion", job_id=job_id, status=status)
                return []
            self.registry.append_output(job_id, lines)
            self.registry.mark_running(job_id)
        elif status == STATUS_COMPLETED:
            self.registry.append_output(job_id, lines)
            self.registry.mark_completed(job_id, sentinel=True)
            self.logger.info("job_completed", job_id=job_id)
        else:
            self.logger.warning("frame_unknown_status", job_id=job_id, status=status)
            return []
        return [job_id]

    def _contain(self, raw: str) -> list[str]:
        if self.policy is FailurePolicy.ADDRESSED_ONLY:
            job_id = recover_id(raw)
            job = self.registry.get(job_id) if job_id else None
            targets = [job] if job is not None and job.status is JobStatus.RUNNING else []
        else:
            targets = self.registry.running()
        for job in targets:
            self.registry.append_output(job.id, [PARSE_ERROR_LINE])
            self.registry.mark_completed(job.id)
        if targets:
            self.logger.warning(
                "jobs_failed_on_bad_frame",
                policy=self.policy.value,
                job_ids=[j.id for j in targets],
            )
        return [j.id for j in targets]
