from __future__ import annotations

import asyncio

import pytest

from orora.bootstrap import Settings
from orora.connection import ReconnectPolicy
from orora.events import EventType
from orora.jobs import NOT_CONNECTED_LINE, JobNotFound, JobStateError
from orora.router import PARSE_ERROR_LINE
from orora.session import MISSING_URL_ERROR, Session, SessionClosed

FAST = ReconnectPolicy(delay=0.01)


def _session(backend, **kwargs) -> Session:
    return Session(Settings(), url="ws://backend", reconnect=FAST, connector=backend.connect, **kwargs)


@pytest.mark.asyncio
async def test_execute_streams_output_to_completion(backend, eventually):
    async with _session(backend) as session:
        assert await session.supervisor.wait_connected(1.0)
        (seeded,) = session.snapshot()
        job_id = seeded["id"]
        await session.update(job_id, "long_computation()")
        job = await session.execute(job_id)
        assert job["status"] == "running" and job["output"] == []

        await eventually(lambda: backend.current.sent)
        assert backend.current.sent_frames() == [{"type": "execute", "id": job_id, "code": "long_computation()"}]

        backend.current.push({"type": "execution_status", "id": job_id, "status": "running", "result": "computing\n"})
        backend.current.push({"type": "execution_status", "id": job_id, "status": "completed", "result": ""})
        final = await session.wait_completed(job_id, timeout=1.0)
        assert final["output"] == ["computing"]
        assert final["status"] == "completed"


@pytest.mark.asyncio
async def test_publishes_job_updates_and_connection_state(backend):
    session = _session(backend, seed=False)
    updates = session.events.register_listener()
    await session.start()
    try:
        await session.supervisor.wait_connected(1.0)
        job_id = await session.create()
        seen = []
        while not updates.empty():
            seen.append(updates.get_nowait())
        types = [e["type"] for e in seen]
        assert EventType.CONNECTION in types
        assert {"type": EventType.JOB_UPDATE, "job": session.get(job_id)} in seen
        assert {"type": EventType.SELECTION, "job_id": job_id} in seen
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_registry_errors_reach_the_caller_only(backend):
    async with _session(backend) as session:
        with pytest.raises(JobNotFound):
            await session.update("nope", "x")
        with pytest.raises(JobNotFound):
            await session.delete("nope")
        # loop keeps consuming
        job_id = await session.create()
        assert session.selected_id == job_id


@pytest.mark.asyncio
async def test_execute_while_running_is_rejected(backend):
    async with _session(backend) as session:
        await session.supervisor.wait_connected(1.0)
        job_id = session.snapshot()[0]["id"]
        await session.execute(job_id)
        with pytest.raises(JobStateError):
            await session.execute(job_id)
        with pytest.raises(JobStateError):
            await session.delete_output(job_id)


@pytest.mark.asyncio
async def test_bad_frame_completes_running_jobs(backend):
    async with _session(backend, seed=False) as session:
        await session.supervisor.wait_connected(1.0)
        a = await session.create()
        b = await session.create()
        await session.execute(a)
        await session.execute(b)
        backend.current.push("{definitely not json")
        job_a = await session.wait_completed(a, timeout=1.0)
        job_b = await session.wait_completed(b, timeout=1.0)
        assert job_a["output"] == [PARSE_ERROR_LINE]
        assert job_b["output"] == [PARSE_ERROR_LINE]


@pytest.mark.asyncio
async def test_wait_completed_survives_output_burst(backend):
    async with _session(backend) as session:
        await session.supervisor.wait_connected(1.0)
        job_id = session.snapshot()[0]["id"]
        await session.execute(job_id)
        burst = session.events.maxsize + 500
        for n in range(burst):
            backend.current.push({"type": "execution_status", "id": job_id, "status": "running", "result": f"{n}\n"})
        backend.current.push({"type": "execution_status", "id": job_id, "status": "completed", "result": ""})
        final = await session.wait_completed(job_id, timeout=5.0)
        assert final["status"] == "completed"
        assert len(final["output"]) == burst
        assert final["output"][-1] == str(burst - 1)
        assert session.events.listener_count == 0


@pytest.mark.asyncio
async def test_missing_url_degrades_execute_locally():
    async with Session(Settings()) as session:
        assert session.error == MISSING_URL_ERROR
        assert session.supervisor is None
        job_id = session.snapshot()[0]["id"]
        job = await session.execute(job_id)
        assert job["status"] == "completed"
        assert job["output"] == [NOT_CONNECTED_LINE]


@pytest.mark.asyncio
async def test_execute_while_disconnected_then_reconnect(backend, eventually):
    backend.refuse_next = 1
    session = Session(Settings(), url="ws://backend", reconnect=ReconnectPolicy(delay=0.2), connector=backend.connect)
    async with session:
        job_id = session.snapshot()[0]["id"]
        job = await session.execute(job_id)
        assert job["output"] == [NOT_CONNECTED_LINE]
        await eventually(lambda: session.is_connected)
        job = await session.execute(job_id)
        assert job["status"] == "running"


@pytest.mark.asyncio
async def test_delete_and_display_mode(backend):
    async with _session(backend, seed=False) as session:
        a = await session.create()
        b = await session.create()
        assert (await session.set_display_mode(a, "rendered"))["display_mode"] == "rendered"
        await session.select(a)
        await session.delete(a)
        assert session.selected_id == b
        assert [j["id"] for j in session.snapshot()] == [b]


@pytest.mark.asyncio
async def test_commands_fail_when_session_not_running(backend):
    session = _session(backend)
    with pytest.raises(SessionClosed):
        await session.create()
    await session.start()
    await session.close()
    with pytest.raises(SessionClosed):
        await session.create()


@pytest.mark.asyncio
async def test_close_stops_reconnecting(backend):
    session = _session(backend)
    await session.start()
    await session.supervisor.wait_connected(1.0)
    await session.close()
    assert not session.is_connected
    await asyncio.sleep(0.05)
    assert backend.attempts == 1
