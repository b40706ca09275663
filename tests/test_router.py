from __future__ import annotations

import json

from orora.jobs import JobRegistry, JobStatus
from orora.router import PARSE_ERROR_LINE, FailurePolicy, MessageRouter


def _status(job_id: str, status: str, result: str = "") -> str:
    return json.dumps({"type": "execution_status", "id": job_id, "status": status, "result": result})


def _running_jobs(n: int) -> tuple[JobRegistry, list[str]]:
    reg = JobRegistry()
    ids = [reg.create() for _ in range(n)]
    for job_id in ids:
        reg.execute(job_id, lambda frame: True, connected=True)
    return reg, ids


def test_running_then_completed_scenario():
    reg, (a,) = _running_jobs(1)
    router = MessageRouter(reg)

    assert router.route(_status(a, "running", "computing\n")) == [a]
    job = reg.get(a)
    assert job.output == ["computing"]
    assert job.status is JobStatus.RUNNING

    assert router.route(_status(a, "completed", "")) == [a]
    assert job.output == ["computing"]
    assert job.status is JobStatus.COMPLETED


def test_output_is_concatenation_in_arrival_order():
    reg, (a,) = _running_jobs(1)
    router = MessageRouter(reg)
    for chunk in ("1\n2\n", "", "\n3", "4\n\n5"):
        router.route(_status(a, "running", chunk))
    router.route(_status(a, "completed", "6\n"))
    assert reg.get(a).output == ["1", "2", "3", "4", "5", "6"]


def test_completed_without_output_gets_sentinel():
    reg, (a,) = _running_jobs(1)
    MessageRouter(reg).route(_status(a, "completed", "\n\n"))
    assert reg.get(a).output == ["No output"]
    assert reg.get(a).status is JobStatus.COMPLETED


def test_raw_control_characters_are_accepted():
    reg, (a,) = _running_jobs(1)
    raw = '{"type":"execution_status","id":"%s","status":"running","result":"col1\tcol2\nnext"}' % a
    MessageRouter(reg).route(raw)
    assert reg.get(a).output == ["col1\tcol2", "next"]


def test_frames_for_unknown_jobs_are_ignored():
    reg, (a,) = _running_jobs(1)
    assert MessageRouter(reg).route(_status("ghost", "completed", "boo")) == []
    assert reg.get(a).output == []
    assert reg.get(a).status is JobStatus.RUNNING


def test_other_frame_types_and_statuses_are_ignored():
    reg, (a,) = _running_jobs(1)
    router = MessageRouter(reg)
    assert router.route(json.dumps({"type": "heartbeat"})) == []
    assert router.route(_status(a, "queued", "x")) == []
    assert reg.get(a).output == []


def test_only_addressed_job_is_mutated():
    reg, (a, b) = _running_jobs(2)
    MessageRouter(reg).route(_status(a, "completed", "done"))
    assert reg.get(a).status is JobStatus.COMPLETED
    assert reg.get(b).status is JobStatus.RUNNING
    assert reg.get(b).output == []


def test_bad_frame_fails_every_running_job():
    reg, (a, b) = _running_jobs(2)
    idle = reg.create()
    touched = MessageRouter(reg).route("{not json")
    assert sorted(touched) == sorted([a, b])
    for job_id in (a, b):
        job = reg.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.output == [PARSE_ERROR_LINE]
    assert reg.get(idle).status is JobStatus.IDLE
    assert reg.running() == []


def test_bad_frame_keeps_prior_output():
    reg, (a,) = _running_jobs(1)
    router = MessageRouter(reg)
    router.route(_status(a, "running", "partial"))
    router.route("\x00garbage")
    assert reg.get(a).output == ["partial", PARSE_ERROR_LINE]


def test_late_running_frame_does_not_reopen_completed_job():
    reg, (a,) = _running_jobs(1)
    router = MessageRouter(reg)
    assert router.route("{bad") == [a]
    assert router.route(_status(a, "running", "late\n")) == []
    job = reg.get(a)
    assert job.status is JobStatus.COMPLETED
    assert job.output == [PARSE_ERROR_LINE]

    # a new execute starts the next cycle and accepts frames again
    reg.execute(a, lambda frame: True, connected=True)
    assert router.route(_status(a, "running", "fresh\n")) == [a]
    assert job.output == ["fresh"]
    assert job.status is JobStatus.RUNNING


def test_addressed_only_policy_fails_just_the_recoverable_id():
    reg, (a, b) = _running_jobs(2)
    router = MessageRouter(reg, policy=FailurePolicy.ADDRESSED_ONLY)
    raw = '{"type":"execution_status","id":"%s","status":"running","result":"bad\v"}' % a
    assert router.route(raw) == [a]
    assert reg.get(a).status is JobStatus.COMPLETED
    assert reg.get(a).output == [PARSE_ERROR_LINE]
    assert reg.get(b).status is JobStatus.RUNNING

    assert router.route("total garbage") == []
    assert reg.get(b).status is JobStatus.RUNNING


def test_policy_accepts_string_values():
    assert MessageRouter(JobRegistry(), policy="addressed_only").policy is FailurePolicy.ADDRESSED_ONLY
