"""Command line launcher for Orora.

Subcommands:
 - serve               : run the rendering service (uvicorn, ORORA_RENDER_HOST / ORORA_RENDER_PORT)
 - render SOURCE [-o]  : render a .tex file locally, or through a running service with --url
 - exec SOURCE         : execute a file's content as one job on the compute backend (ORORA_API_URL)
                         and print its output lines as they stream in

Test shortcut: set ENTRYPOINT_TEST_MODE=1 to make main() return without doing anything.

Usage (source):
  python entrypoint.py serve
  python entrypoint.py render paper.tex -o paper.pdf
  python entrypoint.py exec script.py
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog

from orora.bootstrap import Settings, configure_logging, get_context
from orora.client import RenderClient
from orora.events import EventType
from orora.jobs import NOT_CONNECTED_LINE, JobStatus
from orora.render import RenderFailure
from orora.session import Session

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orora", description="Orora job runtime")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="run the LaTeX rendering service")

    p_render = sub.add_parser("render", help="render a LaTeX file to PDF")
    p_render.add_argument("source", type=Path)
    p_render.add_argument("-o", "--output", type=Path, default=None, help="defaults to SOURCE with a .pdf suffix")
    p_render.add_argument("--url", default=None, help="render through a running service instead of locally")

    p_exec = sub.add_parser("exec", help="execute a file on the compute backend")
    p_exec.add_argument("source", type=Path)
    p_exec.add_argument("--connect-timeout", type=float, default=10.0)
    p_exec.add_argument("--timeout", type=float, default=None, help="give up waiting for completion after N seconds")
    return parser


async def _serve(settings: Settings) -> int:
    import uvicorn

    config = uvicorn.Config(
        "server.main:app",
        host=settings.render_host,
        port=settings.render_port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    await server.serve()
    return EXIT_OK


async def _render(args: argparse.Namespace, settings: Settings) -> int:
    logger = structlog.get_logger().bind(component="cli")
    output = args.output or args.source.with_suffix(".pdf")
    source = args.source.read_text(encoding="utf-8")
    try:
        if args.url:
            async with RenderClient(args.url) as client:
                pdf = await client.render(source)
        else:
            ctx = await get_context()
            pdf = await ctx.render_runner.render(source)
    except RenderFailure as exc:
        logger.error("cli_render_failed", source=str(args.source), error=str(exc))
        print(f"render failed: {exc}", file=sys.stderr)
        return EXIT_FAILED
    output.write_bytes(pdf)
    logger.info("cli_render_written", output=str(output), bytes=len(pdf))
    return EXIT_OK


async def _exec(args: argparse.Namespace, settings: Settings) -> int:
    code = args.source.read_text(encoding="utf-8")
    async with Session(settings, seed=False) as session:
        if session.error:
            print(session.error, file=sys.stderr)
            return EXIT_USAGE
        if not await session.supervisor.wait_connected(args.connect_timeout):
            print(NOT_CONNECTED_LINE, file=sys.stderr)
            return EXIT_FAILED

        updates = session.events.register_listener(maxsize=0)
        try:
            job_id = await session.create()
            await session.update(job_id, code)
            job = await session.execute(job_id)
            printed = 0

            async def _follow() -> dict:
                nonlocal printed
                snapshot = job
                while True:
                    for line in snapshot["output"][printed:]:
                        print(line)
                    printed = len(snapshot["output"])
                    if snapshot["status"] == JobStatus.COMPLETED.value:
                        return snapshot
                    event = await updates.get()
                    if event["type"] == EventType.JOB_UPDATE and event["job"]["id"] == job_id:
                        snapshot = event["job"]

            final = await asyncio.wait_for(_follow(), args.timeout)
        except asyncio.TimeoutError:
            print(f"job did not complete within {args.timeout}s", file=sys.stderr)
            return EXIT_FAILED
        finally:
            session.events.unregister_listener(updates)
    return EXIT_FAILED if final["output"] == [NOT_CONNECTED_LINE] else EXIT_OK


async def main(argv: Optional[Sequence[str]] = None) -> int:
    # Test shortcut: bail out quickly (used by unit test)
    if os.environ.get("ENTRYPOINT_TEST_MODE") == "1":
        structlog.get_logger().bind(component="cli").info("entrypoint_test_mode")
        return EXIT_OK
    args = build_parser().parse_args(argv)
    settings = Settings()
    configure_logging(settings.log_level, settings)
    if args.command == "serve":
        return await _serve(settings)
    if args.command == "render":
        return await _render(args, settings)
    return await _exec(args, settings)


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n[orora] Interrupted")


if __name__ == "__main__":
    run()
