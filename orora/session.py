"""Session: the single consumer that owns the job registry.

Everything that can change a job (UI commands, inbound frames, connection
state changes) is put on one asyncio.Queue and applied by one task, one event
at a time. UI-facing coroutines enqueue a command with a future and await it,
so registry errors surface to the caller that issued the command and never to
the loop.

Usage:
    async with Session(settings) as session:
        job_id = await session.create()
        await session.update(job_id, "print(1)")
        await session.execute(job_id)
        job = await session.wait_completed(job_id)
"""
from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import structlog

from .bootstrap import Settings
from .connection import ConnectionState, ConnectionSupervisor, Connector, ReconnectPolicy
from .events import EventBus, EventType
from .jobs import DisplayMode, JobNotFound, JobRegistry, JobStatus
from .router import FailurePolicy, MessageRouter

MISSING_URL_ERROR = "ORORA_API_URL is not defined"


@dataclass(slots=True)
class _Command:
    name: str
    args: tuple
    future: asyncio.Future = field(repr=False)


@dataclass(slots=True)
class _Inbound:
    raw: str | bytes


@dataclass(slots=True)
class _StateChange:
    state: ConnectionState


class SessionClosed(RuntimeError):
    """The session is not running (never started, or already closed)."""


class Session:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        url: str | None = None,
        reconnect: ReconnectPolicy | None = None,
        failure_policy: FailurePolicy | str | None = None,
        connector: Connector | None = None,
        seed: bool = True,
        logger: structlog.BoundLogger | None = None,
    ):
        self.settings = settings or Settings()
        self.logger = logger or structlog.get_logger().bind(component="session")
        self.registry = JobRegistry(seed=seed, logger=self.logger.bind(component="registry"))
        self.router = MessageRouter(
            self.registry,
            policy=failure_policy or self.settings.failure_policy,
            logger=self.logger.bind(component="router"),
        )
        self.events = EventBus()
        self.error: Optional[str] = None
        self.supervisor: Optional[ConnectionSupervisor] = None
        ws_url = url or self.settings.ws_url
        if ws_url:
            self.supervisor = ConnectionSupervisor(
                ws_url,
                policy=reconnect or ReconnectPolicy.from_settings(self.settings),
                connector=connector,
                on_frame=lambda raw: self._queue.put_nowait(_Inbound(raw)),
                on_state=lambda state: self._queue.put_nowait(_StateChange(state)),
                logger=self.logger.bind(component="connection", url=ws_url),
            )
        else:
            self.error = MISSING_URL_ERROR
        self._queue: asyncio.Queue[_Command | _Inbound | _StateChange] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._handlers: Dict[str, Callable[..., Any]] = {
            "create": self._do_create,
            "update": self._do_update,
            "delete": self._do_delete,
            "execute": self._do_execute,
            "delete_output": self._do_delete_output,
            "select": self._do_select,
            "set_display_mode": self._do_set_display_mode,
        }

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    async def start(self) -> None:
        if self._consumer is not None:
            return
        self._consumer = asyncio.create_task(self._consume(), name="orora_session_consumer")
        if self.supervisor is not None:
            self.supervisor.start()
        else:
            self.logger.error("session_not_connected", error=self.error)

    async def close(self) -> None:
        if self.supervisor is not None:
            await self.supervisor.close()
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if isinstance(event, _Command) and not event.future.done():
                event.future.set_exception(SessionClosed("session closed"))

    async def __aenter__(self) -> "Session":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------
    # Read-only views (safe between events: the loop is single-threaded)
    # ------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self.supervisor is not None and self.supervisor.is_connected

    @property
    def selected_id(self) -> Optional[str]:
        return self.registry.selected_id

    def snapshot(self) -> list[dict]:
        return [job.to_dict() for job in self.registry.jobs]

    def get(self, job_id: str) -> Optional[dict]:
        job = self.registry.get(job_id)
        return job.to_dict() if job is not None else None

    # ------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------
    async def create(self, position: Optional[int] = None) -> str:
        return await self._submit("create", position)

    async def update(self, job_id: str, content: str) -> dict:
        return await self._submit("update", job_id, content)

    async def delete(self, job_id: str) -> None:
        await self._submit("delete", job_id)

    async def execute(self, job_id: str) -> dict:
        return await self._submit("execute", job_id)

    async def delete_output(self, job_id: str) -> dict:
        return await self._submit("delete_output", job_id)

    async def select(self, job_id: Optional[str]) -> None:
        await self._submit("select", job_id)

    async def set_display_mode(self, job_id: str, mode: DisplayMode | str) -> dict:
        return await self._submit("set_display_mode", job_id, mode)

    async def wait_completed(self, job_id: str, timeout: float | None = None) -> dict:
        """Wait until ``job_id`` reaches completed and return its snapshot."""
        # unbounded: a burst of frames must not drop the waiter
        q = self.events.register_listener(maxsize=0)
        try:
            job = self.registry.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status is JobStatus.COMPLETED:
                return job.to_dict()

            async def _wait() -> dict:
                while True:
                    event = await q.get()
                    if event["type"] == EventType.JOB_REMOVED and event["job_id"] == job_id:
                        raise JobNotFound(job_id)
                    if event["type"] == EventType.JOB_UPDATE and event["job"]["id"] == job_id:
                        if event["job"]["status"] == JobStatus.COMPLETED.value:
                            return event["job"]

            return await asyncio.wait_for(_wait(), timeout)
        finally:
            self.events.unregister_listener(q)

    async def _submit(self, name: str, *args: Any) -> Any:
        if self._consumer is None:
            raise SessionClosed("session is not running")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Command(name, args, future))
        return await future

    # ------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------
    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._dispatch(event)
            except Exception as exc:  # pragma: no cover
                self.logger.exception("session_event_failed", error=str(exc))

    def _dispatch(self, event: _Command | _Inbound | _StateChange) -> None:
        if isinstance(event, _Inbound):
            self._publish(self.router.route(event.raw))
        elif isinstance(event, _StateChange):
            self.events.broadcast({"type": EventType.CONNECTION, "state": event.state.value})
        else:
            if event.future.done():  # caller gave up (cancelled)
                return
            handler = self._handlers[event.name]
            try:
                result = handler(*event.args)
            except Exception as exc:
                self.logger.warning("session_command_failed", command=event.name, error=str(exc))
                event.future.set_exception(exc)
                return
            event.future.set_result(result)

    def _publish(self, job_ids: list[str]) -> None:
        for job_id in job_ids:
            if job_id in self.registry:
                self.events.broadcast({"type": EventType.JOB_UPDATE, "job": self.registry.get(job_id).to_dict()})

    def _publish_selection(self) -> None:
        self.events.broadcast({"type": EventType.SELECTION, "job_id": self.registry.selected_id})

    # ------------------------------------------------------------
    # Command handlers (run inside the consumer)
    # ------------------------------------------------------------
    def _do_create(self, position: Optional[int]) -> str:
        job_id = self.registry.create(position)
        self._publish([job_id])
        self._publish_selection()
        return job_id

    def _do_update(self, job_id: str, content: str) -> dict:
        job = self.registry.update(job_id, content)
        self._publish([job_id])
        self._publish_selection()
        return job.to_dict()

    def _do_delete(self, job_id: str) -> None:
        self.registry.delete(job_id)
        self.events.broadcast({"type": EventType.JOB_REMOVED, "job_id": job_id})
        self._publish_selection()

    def _do_execute(self, job_id: str) -> dict:
        if self.supervisor is not None:
            job = self.registry.execute(job_id, self.supervisor.send, connected=self.supervisor.is_connected)
        else:
            job = self.registry.execute(job_id, lambda _frame: False, connected=False)
        self._publish([job_id])
        return job.to_dict()

    def _do_delete_output(self, job_id: str) -> dict:
        job = self.registry.delete_output(job_id)
        self._publish([job_id])
        return job.to_dict()

    def _do_select(self, job_id: Optional[str]) -> None:
        self.registry.select(job_id)
        self._publish_selection()

    def _do_set_display_mode(self, job_id: str, mode: DisplayMode | str) -> dict:
        job = self.registry.set_display_mode(job_id, mode)
        self._publish([job_id])
        return job.to_dict()
