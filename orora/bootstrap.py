"""Bootstrap module for the Orora job runtime.

Central responsibilities:
- Load and validate settings from environment (.env read by the Settings class)
- Configure structured logging (structlog + optional rotating file handler)
- Build the shared rendering runner (bounded worker pool)
- Provide a shared context object for the server and the command line
- Expose Prometheus metric instruments (counters, gauges, histograms)

Design notes:
- Idempotent initialization: bootstrap() returns the cached context unless force=True
- The streaming session is not part of the context; each caller owns its Session
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TYPE_CHECKING
import asyncio
import logging
import re
from logging.handlers import RotatingFileHandler
import sys
import tempfile

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from prometheus_client import Counter, Histogram, Gauge

if TYPE_CHECKING:  # pragma: no cover
    from .render import RenderRunner

DEFAULT_RENDER_COMMAND = (
    "latexmk -pdf -file-line-error -synctex=1 -interaction=nonstopmode "
    "-shell-escape -f -output-directory={outdir} {input}"
)

# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

class Settings(BaseSettings):
    """Application settings loaded from environment.

    Uses Pydantic BaseSettings to automatically read from env vars.
    Defaults are safe for local development.
    """

    app_name: str = Field("orora", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(None, alias="LOG_FILE")
    log_max_bytes: int = Field(2_000_000, alias="LOG_MAX_BYTES")  # ~2MB
    log_backup_count: int = Field(5, alias="LOG_BACKUP_COUNT")

    # Compute backend (streaming connection)
    api_url: Optional[str] = Field(None, alias="ORORA_API_URL")
    reconnect_delay_seconds: float = Field(3.0, alias="ORORA_RECONNECT_DELAY_SECONDS")
    # 1.0 keeps the delay fixed; >1.0 multiplies it after each failed attempt
    reconnect_backoff: float = Field(1.0, alias="ORORA_RECONNECT_BACKOFF")
    reconnect_max_delay_seconds: float = Field(60.0, alias="ORORA_RECONNECT_MAX_DELAY_SECONDS")
    reconnect_max_attempts: int = Field(0, alias="ORORA_RECONNECT_MAX_ATTEMPTS")  # 0 = unbounded
    failure_policy: str = Field("all_running", alias="ORORA_FAILURE_POLICY")

    # Rendering backend
    scratch_dir: str = Field(default_factory=tempfile.gettempdir, alias="ORORA_SCRATCH_DIR")
    render_command: str = Field(DEFAULT_RENDER_COMMAND, alias="ORORA_RENDER_COMMAND")
    render_concurrency: int = Field(2, alias="ORORA_RENDER_CONCURRENCY")
    render_timeout_seconds: float = Field(120.0, alias="ORORA_RENDER_TIMEOUT_SECONDS")  # 0 disables
    render_host: str = Field("0.0.0.0", alias="ORORA_RENDER_HOST")
    render_port: int = Field(16842, alias="ORORA_RENDER_PORT")
    render_url: str = Field("http://localhost:16842", alias="ORORA_RENDER_URL")

    # Misc
    enable_metrics: bool = Field(True, alias="ENABLE_METRICS")
    quiet_startup: bool = Field(False, alias="QUIET_STARTUP")

    @field_validator("failure_policy")
    @classmethod
    def _check_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("all_running", "addressed_only"):
            raise ValueError(f"unknown failure policy: {v}")
        return v

    @field_validator("render_concurrency")
    @classmethod
    def _check_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("render concurrency must be at least 1")
        return v

    @field_validator("api_url")
    @classmethod
    def _strip_api_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @property
    def ws_url(self) -> Optional[str]:
        """WebSocket URL derived from the API base URL (http -> ws, https -> wss)."""
        if not self.api_url:
            return None
        if self.api_url.startswith("http"):
            return "ws" + self.api_url[len("http"):]
        return self.api_url

    # Pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


# ------------------------------------------------------------
# Logging configuration (structlog)
# ------------------------------------------------------------

_URL_USERINFO = re.compile(r"(\w[\w+.-]*://)[^/\s@]+@")


def redact_url_credentials(logger, method_name, event_dict):  # noqa: D401
    """Mask user:password in any URL bound to a log call (backend and service URLs)."""

    def _scrub(value):
        if isinstance(value, str):
            return _URL_USERINFO.sub(r"\1[REDACTED]@", value)
        if isinstance(value, dict):
            return {k: _scrub(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_scrub(v) for v in value]
        if isinstance(value, tuple):  # exc_info stays a tuple for format_exc_info
            return tuple(_scrub(v) for v in value)
        return value

    return _scrub(event_dict)


def configure_logging(level: str = "INFO", settings: Settings | None = None) -> None:
    """Configure structured logging with structlog.

    Uses a standard logging handler + structlog processors for JSON output.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    def add_request_id(logger, method_name, event_dict):  # noqa: D401
        rid = structlog.contextvars.get_contextvars().get("request_id")
        if rid:
            event_dict["request_id"] = rid
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            add_request_id,
            structlog.processors.add_log_level,
            redact_url_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(stream_handler)

    if settings and settings.log_file:
        try:
            log_path = Path(settings.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(file_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set file handler: {e}", file=sys.stderr)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# ------------------------------------------------------------
# Metrics instruments
# ------------------------------------------------------------
FRAMES_RECEIVED = Counter(
    "orora_frames_received_total", "Inbound frames decoded by the router", labelnames=("type",)
)
FRAME_DECODE_FAILURES = Counter(
    "orora_frame_decode_failures_total", "Inbound frames that could not be decoded"
)
FRAMES_DROPPED = Counter(
    "orora_frames_dropped_total", "Outbound frames dropped because no connection was available"
)
RECONNECT_ATTEMPTS = Counter(
    "orora_reconnect_attempts_total", "Connection attempts made by the supervisor"
)
CONNECTION_STATE = Gauge(
    "orora_connection_state", "0=disconnected, 1=connecting, 2=connected"
)
JOBS_EXECUTED = Counter(
    "orora_jobs_executed_total", "Execute requests issued by the registry", labelnames=("outcome",)
)
RENDER_JOBS_TOTAL = Counter(
    "orora_render_jobs_total", "Render jobs processed", labelnames=("status",)
)
RENDER_DURATION_SECONDS = Histogram(
    "orora_render_duration_seconds", "Duration of a render job in seconds"
)
RENDER_IN_FLIGHT = Gauge(
    "orora_render_in_flight", "Renderer processes currently running"
)


# ------------------------------------------------------------
# Context dataclass
# ------------------------------------------------------------
@dataclass(slots=True)
class AppContext:
    settings: Settings
    logger: structlog.BoundLogger
    render_runner: Optional["RenderRunner"] = None


_context_singleton: Optional[AppContext] = None
_context_lock = asyncio.Lock()


async def bootstrap(force: bool = False) -> AppContext:
    """Create (or return existing) application context.

    Args:
        force: Recreate the context even if already initialized (tests).
    """
    global _context_singleton
    if _context_singleton and not force:
        return _context_singleton

    async with _context_lock:
        if _context_singleton and not force:
            return _context_singleton

        settings = Settings()  # Loads from env automatically
        configure_logging(settings.log_level, settings)
        logger = structlog.get_logger().bind(component="bootstrap")

        try:
            Path(settings.scratch_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:  # pragma: no cover
            logger.warning("directory_creation_failed", path=settings.scratch_dir, error=str(e))

        # Lazy import to avoid circular (render imports bootstrap metrics)
        from .render import RenderRunner

        ctx = AppContext(
            settings=settings,
            logger=logger.bind(subsystem="core"),
            render_runner=RenderRunner.from_settings(settings),
        )
        log_method = logger.debug if settings.quiet_startup else logger.info
        log_method(
            "bootstrap_complete",
            scratch_dir=settings.scratch_dir,
            render_concurrency=settings.render_concurrency,
            api_url=settings.api_url,
            failure_policy=settings.failure_policy,
        )
        _context_singleton = ctx
        return ctx


async def get_context() -> AppContext:
    """Public accessor for the global application context."""
    return await bootstrap()
