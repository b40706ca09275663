"""LaTeX -> PDF rendering as isolated out-of-process jobs.

Each call to :meth:`RenderRunner.render` gets its own uuid-named workspace in
the scratch directory, runs the external renderer once, and returns the PDF
bytes. Whatever happens, the workspace files for that id are removed before
the call returns or raises.
"""
from __future__ import annotations

import asyncio
import contextlib
import shlex
import time
import uuid
from pathlib import Path
from typing import Optional

import structlog

from .bootstrap import (
    DEFAULT_RENDER_COMMAND,
    RENDER_DURATION_SECONDS,
    RENDER_IN_FLIGHT,
    RENDER_JOBS_TOTAL,
    Settings,
)

AUX_SUFFIXES = (".aux", ".log", ".fls", ".fdb_latexmk", ".synctex.gz", ".out")


class RenderFailure(Exception):
    """Opaque rendering error; the underlying cause is chained and logged."""


class Workspace:
    """Scratch files owned by one render request.

    Usage:
        async with Workspace(scratch_dir) as ws:
            ws.source_path.write_text(source)
            ...
    """

    def __init__(
        self,
        scratch_dir: str | Path,
        render_id: Optional[str] = None,
        *,
        logger: structlog.BoundLogger | None = None,
    ):
        self.scratch_dir = Path(scratch_dir)
        self.id = render_id or uuid.uuid4().hex
        self.logger = logger or structlog.get_logger().bind(component="render")

    @property
    def source_path(self) -> Path:
        return self.scratch_dir / f"{self.id}.tex"

    @property
    def output_path(self) -> Path:
        return self.scratch_dir / f"{self.id}.pdf"

    def files(self) -> list[Path]:
        known = [self.source_path, self.output_path]
        known += [self.scratch_dir / f"{self.id}{suffix}" for suffix in AUX_SUFFIXES]
        # renderers may leave other <id>.* artifacts behind
        extra = [p for p in self.scratch_dir.glob(f"{self.id}.*") if p not in known]
        return known + extra

    def release(self) -> int:
        removed = 0
        for path in self.files():
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                self.logger.warning("workspace_cleanup_failed", render_id=self.id, path=str(path), error=str(exc))
        return removed

    async def __aenter__(self) -> "Workspace":
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()


class RenderRunner:
    def __init__(
        self,
        scratch_dir: str | Path,
        *,
        command: str = DEFAULT_RENDER_COMMAND,
        concurrency: int = 2,
        timeout: float | None = 120.0,
        logger: structlog.BoundLogger | None = None,
    ):
        self.scratch_dir = Path(scratch_dir)
        self.command = command
        self.concurrency = concurrency
        self.timeout = timeout if timeout and timeout > 0 else None
        self.logger = logger or structlog.get_logger().bind(component="render")
        self._semaphore = asyncio.Semaphore(concurrency)
        self._in_flight = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenderRunner":
        return cls(
            settings.scratch_dir,
            command=settings.render_command,
            concurrency=settings.render_concurrency,
            timeout=settings.render_timeout_seconds,
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def build_argv(self, workspace: Workspace) -> list[str]:
        values = {"outdir": str(workspace.scratch_dir), "input": str(workspace.source_path)}
        return [token.format(**values) for token in shlex.split(self.command)]

    async def render(self, source: str) -> bytes:
        """Render ``source`` to PDF bytes or raise :class:`RenderFailure`."""
        started = time.perf_counter()
        ws = Workspace(self.scratch_dir, logger=self.logger)
        logger = self.logger.bind(render_id=ws.id)
        try:
            # released on every exit path, before the handlers below run
            async with ws:
                ws.source_path.write_text(source, encoding="utf-8")
                async with self._semaphore:
                    await self._run(ws, logger)
                pdf = ws.output_path.read_bytes()
            if not pdf:
                raise RenderFailure("renderer produced an empty document")
        except asyncio.CancelledError:
            RENDER_JOBS_TOTAL.labels(status="cancelled").inc()
            logger.warning("render_cancelled")
            raise
        except Exception as exc:
            RENDER_JOBS_TOTAL.labels(status="failed").inc()
            logger.error("render_failed", error=str(exc), error_type=type(exc).__name__)
            if isinstance(exc, RenderFailure):
                raise
            raise RenderFailure("Failed to convert LaTeX to PDF") from exc
        finally:
            RENDER_DURATION_SECONDS.observe(time.perf_counter() - started)
        RENDER_JOBS_TOTAL.labels(status="ok").inc()
        logger.info("render_complete", bytes=len(pdf), duration_seconds=round(time.perf_counter() - started, 3))
        return pdf

    async def _run(self, ws: Workspace, logger: structlog.BoundLogger) -> None:
        argv = self.build_argv(ws)
        self._in_flight += 1
        RENDER_IN_FLIGHT.inc()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(ws.scratch_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            logger.debug("renderer_started", pid=proc.pid, program=argv[0])
            try:
                stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
                raise
            if proc.returncode != 0:
                tail = (stdout or b"").decode("utf-8", errors="replace")[-2000:]
                logger.warning("renderer_exit_nonzero", returncode=proc.returncode, output_tail=tail)
                raise RenderFailure(f"renderer exited with status {proc.returncode}")
        except asyncio.TimeoutError as exc:
            raise RenderFailure(f"renderer timed out after {self.timeout}s") from exc
        finally:
            self._in_flight -= 1
            RENDER_IN_FLIGHT.dec()
