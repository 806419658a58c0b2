"""Async HTTP step invoker with timeout cancellation and response capture."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from flowbench import __version__

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")


@dataclass
class InvocationResult:
    """Normalized outcome of one HTTP call. Never an exception."""
    status: int
    status_text: str
    headers: dict[str, str]
    body: Any
    duration_ms: int
    error: str | None = None
    error_type: str | None = None  # transport, timeout
    size_bytes: int = 0
    truncated: bool = False  # body cut at max_body_size, kept as text
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_transport_failure(self) -> bool:
        return self.error is not None

    @property
    def is_http_error(self) -> bool:
        return self.error is None and self.status >= 400

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


def is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class StepInvoker:
    """Performs one HTTP call per step on a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        follow_redirects: bool = True,
        verify_ssl: bool = True,
        max_body_size: int = 10 * 1024 * 1024,  # 10MB max response body
    ):
        self.follow_redirects = follow_redirects
        self.verify_ssl = verify_ssl
        self.max_body_size = max_body_size
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=self.follow_redirects,
                verify=self.verify_ssl,
            )
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client if this invoker created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def invoke(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any = None,
        timeout_ms: int = 30_000,
    ) -> InvocationResult:
        """
        Execute an HTTP request, racing it against a deadline.

        On expiry the request task is cancelled, so the connection is
        released, and a synthetic result with status 0 is returned.
        Bodies over ``max_body_size`` are cut, left unparsed and flagged as
        ``truncated``.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE, etc.)
            url: Fully resolved URL
            headers: Resolved request headers
            body: Resolved body (dict/list sent as JSON, str sent raw)
            timeout_ms: Deadline for the whole exchange

        Returns:
            InvocationResult with status, headers, parsed body and timing
        """
        client = await self._get_client()
        method = method.upper()

        request_headers = {"User-Agent": f"flowbench/{__version__}"}
        request_headers.update(headers or {})

        kwargs: dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": request_headers,
        }

        if body is not None and method in BODY_METHODS:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            elif isinstance(body, bytes):
                kwargs["content"] = body
            else:
                kwargs["content"] = str(body).encode()

        timeout_s = timeout_ms / 1000.0
        # httpx timeouts are per phase; the deadline below bounds the total
        kwargs["timeout"] = httpx.Timeout(timeout_s)

        start_time = time.perf_counter()

        try:
            response, body_bytes, truncated = await asyncio.wait_for(
                self._send(client, kwargs), timeout=timeout_s
            )
            elapsed_ms = int((time.perf_counter() - start_time) * 1000)

            headers_dict = dict(response.headers)
            if truncated:
                logger.warning(
                    "Response body over %s bytes truncated: %s %s", self.max_body_size, method, url
                )
                # The cut may split a multi-byte character
                parsed_body = body_bytes.decode("utf-8", errors="ignore")
            else:
                parsed_body = self._parse_body(body_bytes, headers_dict.get("content-type"))

            return InvocationResult(
                status=response.status_code,
                status_text=response.reason_phrase,
                headers=headers_dict,
                body=parsed_body,
                duration_ms=elapsed_ms,
                size_bytes=len(body_bytes),
                truncated=truncated,
            )

        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Request timeout after %sms: %s %s", timeout_ms, method, url)
            return InvocationResult(
                status=0,
                status_text="Request Timeout",
                headers={},
                body=None,
                duration_ms=int((time.perf_counter() - start_time) * 1000),
                error=f"Request timeout after {timeout_ms}ms",
                error_type="timeout",
            )
        except httpx.ConnectError as e:
            logger.warning("Connection error: %s %s: %s", method, url, e)
            return self._transport_failure(start_time, f"Connection error: {e}")
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("Request error: %s %s: %s", method, url, e)
            return self._transport_failure(start_time, f"Request error: {e}")

    async def _send(self, client: httpx.AsyncClient, kwargs: dict[str, Any]) -> tuple[httpx.Response, bytes, bool]:
        """Send the request and read at most ``max_body_size`` bytes of the body."""
        async with client.stream(**kwargs) as response:
            chunks: list[bytes] = []
            received = 0
            truncated = False
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                received += len(chunk)
                if received > self.max_body_size:
                    truncated = True
                    break
        return response, b"".join(chunks)[:self.max_body_size], truncated

    def _transport_failure(self, start_time: float, message: str) -> InvocationResult:
        return InvocationResult(
            status=0,
            status_text="Network Error",
            headers={},
            body=None,
            duration_ms=int((time.perf_counter() - start_time) * 1000),
            error=message,
            error_type="transport",
        )

    def _parse_body(self, body_bytes: bytes, content_type: str | None) -> Any:
        """Parse JSON bodies into structured data, keep anything else as text."""
        try:
            text = body_bytes.decode("utf-8")
        except UnicodeDecodeError:
            text = body_bytes.decode("latin-1")

        if is_json_content_type(content_type) and text.strip():
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text
        return text
