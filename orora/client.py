"""HTTP client for the rendering service."""
from __future__ import annotations

from typing import Optional

import httpx
import structlog
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .render import RenderFailure

CONVERT_PATH = "/convert-latex"


class RenderClient:
    """Posts LaTeX sources to a running rendering service.

    Usage:
        async with RenderClient("http://localhost:16842") as client:
            pdf = await client.render(source)
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 150.0,
        attempts: int = 3,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.attempts = attempts
        self.backoff = backoff
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self.logger = structlog.get_logger().bind(component="render_client", base_url=self.base_url)

    async def __aenter__(self) -> "RenderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def render(self, source: str) -> bytes:
        try:
            resp = await self._post(source)
        except (httpx.TransportError, RetryError) as exc:
            self.logger.error("render_request_failed", error=str(exc), attempts=self.attempts)
            raise RenderFailure("rendering service unreachable") from exc
        if resp.status_code != 200:
            message = _error_message(resp)
            self.logger.warning("render_rejected", status_code=resp.status_code, error=message)
            raise RenderFailure(message)
        return resp.content

    async def _post(self, source: str) -> httpx.Response:
        @retry(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential_jitter(initial=self.backoff, max=5, jitter=self.backoff),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        async def _once() -> httpx.Response:
            return await self._client.post(CONVERT_PATH, json={"latex": source})

        return await _once()


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"rendering service returned {resp.status_code}"
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return f"rendering service returned {resp.status_code}"
