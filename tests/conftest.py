from __future__ import annotations

import asyncio
import json
import shlex
import sys
from pathlib import Path

import pytest

from orora import bootstrap as bootstrap_mod

# Stands in for latexmk: argv = <outdir> <input.tex>. Leaves auxiliary files
# behind like the real renderer; markers in the source select failure modes.
STUB_RENDERER = r'''
import pathlib, sys, time
outdir, src = pathlib.Path(sys.argv[1]), pathlib.Path(sys.argv[2])
text = src.read_text(encoding="utf-8")
for ext in (".aux", ".log", ".fls", ".fdb_latexmk", ".synctex.gz", ".xdv"):
    (outdir / (src.stem + ext)).write_text("aux")
if "\\fail" in text:
    sys.exit(12)
if "\\hang" in text:
    time.sleep(60)
if "\\slow" in text:
    time.sleep(0.3)
if "\\nopdf" in text:
    sys.exit(0)
payload = b"" if "\\emptypdf" in text else b"%PDF-1.4\n" + text.encode("utf-8")
(outdir / (src.stem + ".pdf")).write_bytes(payload)
'''


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    # Each test builds its own context from its own environment
    monkeypatch.delenv("ORORA_API_URL", raising=False)
    monkeypatch.delenv("ENTRYPOINT_TEST_MODE", raising=False)
    monkeypatch.setenv("QUIET_STARTUP", "1")
    monkeypatch.setattr(bootstrap_mod, "_context_singleton", None)
    yield


@pytest.fixture
def scratch_dir(tmp_path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def renderer_command(tmp_path) -> str:
    script = tmp_path / "stub_renderer.py"
    script.write_text(STUB_RENDERER, encoding="utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{outdir}} {{input}}"


@pytest.fixture
def render_env(monkeypatch, scratch_dir, renderer_command) -> Path:
    monkeypatch.setenv("ORORA_SCRATCH_DIR", str(scratch_dir))
    monkeypatch.setenv("ORORA_RENDER_COMMAND", renderer_command)
    monkeypatch.setenv("ORORA_RENDER_TIMEOUT_SECONDS", "20")
    return scratch_dir


# ------------------------------------------------------------
# Fake streaming backend
# ------------------------------------------------------------
class FakeTransport:
    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("closed")
        self.sent.append(message)

    async def recv(self) -> str:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def push(self, frame) -> None:
        self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        self.incoming.put_nowait(ConnectionError("connection reset by peer"))

    def sent_frames(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


class FakeBackend:
    """Connector double: hands out FakeTransports, or refuses connections."""

    def __init__(self):
        self.transports: list[FakeTransport] = []
        self.urls: list[str] = []
        self.refuse_next = 0
        self.refuse_all = False

    async def connect(self, url: str) -> FakeTransport:
        self.urls.append(url)
        if self.refuse_all or self.refuse_next > 0:
            self.refuse_next = max(0, self.refuse_next - 1)
            raise ConnectionRefusedError("connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def attempts(self) -> int:
        return len(self.urls)

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return _eventually
