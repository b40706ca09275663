"""Wire format of the streaming connection.

Frames are JSON text records with a ``type`` discriminator. The backend embeds
raw control characters inside string values, which JSON does not allow, so
inbound text is escaped before decoding.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

EXECUTE = "execute"
EXECUTION_STATUS = "execution_status"

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"

_CONTROL_ESCAPES = {
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\b": "\\b",
    "\f": "\\f",
    "\v": "\\v",
}
_CONTROL_RE = re.compile("[\n\r\t\b\f\v]")
# Best-effort id recovery from a frame that failed to decode.
_ID_RE = re.compile(r'"id"\s*:\s*"([^"\\]*)"')


class ProtocolDecodeError(ValueError):
    """Frame could not be decoded even after control-character escaping."""

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


@dataclass(slots=True, frozen=True)
class ExecutionStatus:
    id: str
    status: str
    result: str

    def lines(self) -> list[str]:
        """Non-empty lines of ``result``, in order."""
        return [line for line in self.result.split("\n") if line != ""]


def sanitize(text: str) -> str:
    """Escape raw control characters to their two-character JSON forms."""
    return _CONTROL_RE.sub(lambda m: _CONTROL_ESCAPES[m.group(0)], text)


def decode_frame(text: str | bytes) -> dict[str, Any]:
    """Decode one inbound frame into a mapping.

    Raises ProtocolDecodeError when the payload is not a JSON object after
    sanitizing. A vertical tab becomes ``\\v`` which JSON rejects, so such
    frames stay undecodable.
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    try:
        data = json.loads(sanitize(text))
    except json.JSONDecodeError as exc:
        raise ProtocolDecodeError(str(exc), text) from exc
    if not isinstance(data, dict):
        raise ProtocolDecodeError("frame is not an object", text)
    return data


def parse_execution_status(data: dict[str, Any]) -> Optional[ExecutionStatus]:
    """Return the typed status record, or None for any other frame type."""
    if data.get("type") != EXECUTION_STATUS:
        return None
    job_id = data.get("id")
    status = data.get("status")
    result = data.get("result", "")
    if not isinstance(job_id, str) or not isinstance(status, str):
        raise ProtocolDecodeError("execution_status without id/status", json.dumps(data))
    if result is None:
        result = ""
    if not isinstance(result, str):
        raise ProtocolDecodeError("execution_status result is not a string", json.dumps(data))
    return ExecutionStatus(id=job_id, status=status, result=result)


def encode_frame(frame: dict[str, Any]) -> str:
    return json.dumps(frame)


def recover_id(raw: str) -> Optional[str]:
    match = _ID_RE.search(raw)
    return match.group(1) if match else None
