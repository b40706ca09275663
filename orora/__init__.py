"""Orora job runtime.

Streams code execution jobs to a remote compute backend over one supervised
WebSocket connection, and renders LaTeX documents to PDF through isolated
out-of-process jobs.

MODULES:
    - bootstrap: settings, logging, metrics and the shared context
    - protocol: wire format of the streaming connection
    - jobs: job model and registry
    - router: applies inbound status frames to the registry
    - connection: connection supervisor with reconnect policy
    - session: single-consumer event loop tying the above together
    - render: LaTeX -> PDF runner
    - client: HTTP client for the rendering service

USAGE:
    from orora import Session, RenderRunner
"""

from .jobs import DisplayMode, Job, JobNotFound, JobRegistry, JobStateError, JobStatus  # noqa: F401
from .protocol import ProtocolDecodeError  # noqa: F401
from .render import RenderFailure, RenderRunner, Workspace  # noqa: F401
from .router import FailurePolicy, MessageRouter  # noqa: F401
from .connection import ConnectionState, ConnectionSupervisor, ReconnectPolicy  # noqa: F401
from .session import Session, SessionClosed  # noqa: F401

__all__ = [
    # Jobs
    "DisplayMode",
    "Job",
    "JobNotFound",
    "JobRegistry",
    "JobStateError",
    "JobStatus",
    # Streaming
    "ProtocolDecodeError",
    "FailurePolicy",
    "MessageRouter",
    "ConnectionState",
    "ConnectionSupervisor",
    "ReconnectPolicy",
    "Session",
    "SessionClosed",
    # Rendering
    "RenderFailure",
    "RenderRunner",
    "Workspace",
]
