"""Connection supervisor for the compute backend.

Owns exactly one duplex connection at a time and keeps it alive:

    disconnected -> connecting -> connected
    connecting/connected -> disconnected   (any transport failure)

Each time the connection is lost a single reconnect attempt is scheduled after
the delay given by the ReconnectPolicy. The default policy keeps the delay
fixed at three seconds and never gives up.

Outbound frames go through ``send`` which never raises: it returns False when
there is no live connection so the caller can degrade locally. Inbound text
frames and state changes are handed to the ``on_frame`` / ``on_state``
callables supplied by the owner (the Session puts them on its queue).
"""
from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog

from .bootstrap import CONNECTION_STATE, FRAMES_DROPPED, RECONNECT_ATTEMPTS, Settings
from .protocol import encode_frame


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


_STATE_GAUGE = {
    ConnectionState.DISCONNECTED: 0,
    ConnectionState.CONNECTING: 1,
    ConnectionState.CONNECTED: 2,
}


class Transport(Protocol):
    async def send(self, message: str) -> None: ...
    async def recv(self) -> str | bytes: ...
    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


async def websocket_connect(url: str) -> Transport:
    """Default connector: the websockets asyncio client."""
    from websockets.asyncio.client import connect

    return await connect(url)


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    delay: float = 3.0
    backoff: float = 1.0
    max_delay: float = 60.0
    max_attempts: int = 0  # consecutive failed attempts before giving up; 0 = never

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectPolicy":
        return cls(
            delay=settings.reconnect_delay_seconds,
            backoff=settings.reconnect_backoff,
            max_delay=settings.reconnect_max_delay_seconds,
            max_attempts=settings.reconnect_max_attempts,
        )

    def delay_for(self, failures: int) -> float:
        """Delay before the next attempt, given consecutive failed attempts so far."""
        if self.backoff <= 1.0:
            return self.delay
        return min(self.max_delay, self.delay * (self.backoff ** failures))

    def gives_up(self, failures: int) -> bool:
        return self.max_attempts > 0 and failures >= self.max_attempts


class ConnectionSupervisor:
    def __init__(
        self,
        url: str,
        *,
        policy: ReconnectPolicy | None = None,
        connector: Connector | None = None,
        on_frame: Callable[[str | bytes], None] | None = None,
        on_state: Callable[[ConnectionState], None] | None = None,
        logger: structlog.BoundLogger | None = None,
    ):
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self._connector = connector or websocket_connect
        self._on_frame = on_frame or (lambda _frame: None)
        self._on_state = on_state or (lambda _state: None)
        self.logger = logger or structlog.get_logger().bind(component="connection", url=url)
        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._outbound: Optional[asyncio.Queue[str]] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._closing = False
        self._connected = asyncio.Event()

    # ------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def start(self) -> None:
        if self._task is not None:
            return
        self._closing = False
        self._task = asyncio.create_task(self._run(), name="orora_connection_supervisor")

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def send(self, frame: dict[str, Any]) -> bool:
        """Queue a frame on the live connection. Returns False when there is none."""
        if not self.is_connected or self._outbound is None:
            FRAMES_DROPPED.inc()
            self.logger.warning("send_not_connected", state=self._state.value, frame_type=frame.get("type"))
            return False
        self._outbound.put_nowait(encode_frame(frame))
        return True

    async def close(self) -> None:
        """Close the current connection and stop reconnecting."""
        self._closing = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._drop_transport()
        self._set_state(ConnectionState.DISCONNECTED)
        self.logger.info("connection_closed")

    # ------------------------------------------------------------
    # Supervision loop
    # ------------------------------------------------------------
    async def _run(self) -> None:
        failures = 0
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            RECONNECT_ATTEMPTS.inc()
            try:
                transport = await self._connector(self.url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                self.logger.warning("connect_failed", error=str(exc), failures=failures)
            else:
                failures = 0
                await self._serve(transport)
            if self._closing:
                break
            self._set_state(ConnectionState.DISCONNECTED)
            if self.policy.gives_up(failures):
                self.logger.error("reconnect_gave_up", failures=failures)
                break
            delay = self.policy.delay_for(failures)
            self.logger.info("reconnect_scheduled", delay_seconds=delay, failures=failures)
            await asyncio.sleep(delay)

    async def _serve(self, transport: Transport) -> None:
        self._transport = transport
        self._outbound = asyncio.Queue()
        self._set_state(ConnectionState.CONNECTED)
        self.logger.info("connection_open")
        reader = asyncio.create_task(self._read_loop(transport))
        writer = asyncio.create_task(self._write_loop(transport, self._outbound))
        try:
            done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    self.logger.warning("connection_lost", error=str(exc), error_type=type(exc).__name__)
        finally:
            for task in (reader, writer):
                task.cancel()
            for task in (reader, writer):
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
            await self._drop_transport()

    async def _read_loop(self, transport: Transport) -> None:
        while True:
            message = await transport.recv()
            self._on_frame(message)

    async def _write_loop(self, transport: Transport, outbound: asyncio.Queue[str]) -> None:
        while True:
            message = await outbound.get()
            await transport.send(message)

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        outbound, self._outbound = self._outbound, None
        if outbound is not None and not outbound.empty():
            self.logger.warning("outbound_frames_discarded", count=outbound.qsize())
            FRAMES_DROPPED.inc(outbound.qsize())
        if transport is not None:
            with contextlib.suppress(Exception):
                await transport.close()

    def _set_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        if state is self._state:
            return
        self._state = state
        CONNECTION_STATE.set(_STATE_GAUGE[state])
        self.logger.debug("connection_state", state=state.value)
        self._on_state(state)
