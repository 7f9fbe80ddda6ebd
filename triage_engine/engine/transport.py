# =============================================================================
# ISSUE TRIAGE SYSTEM - HTTP TRANSPORT
# =============================================================================
"""
HTTP Transport

Thin aiohttp wrapper shared by the GitHub client, the device authorization
flow and the completion providers.

The transport applies connect/total timeouts and converts transport-level
faults into the shared error taxonomy. It never retries: retry and circuit
decisions belong to the resilience layer.

Usage:
    async with HttpTransport(connect_timeout=5, total_timeout=30) as transport:
        response = await transport.request("GET", "https://api.github.com/rate_limit")
        if response.ok:
            data = response.json()
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import aiohttp

from triage_engine.engine.errors import (
    AuthFailedError,
    ClientRequestError,
    IntegrationError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
    ServerError,
    ValidationError,
)


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "issue-triage/0.4"


# =============================================================================
# RESPONSE
# =============================================================================

@dataclass
class HttpResponse:
    """Fully-read HTTP response."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def json(self, service: str = None) -> Any:
        """Decode the body as JSON, raising InvalidResponseError on garbage."""
        if not self.text:
            return None
        try:
            return json.loads(self.text)
        except json.JSONDecodeError as e:
            raise InvalidResponseError(
                f"Malformed JSON in response: {e.msg}",
                status_code=self.status,
                service=service,
            ) from e


# =============================================================================
# HELPERS
# =============================================================================

def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """
    Parse a Retry-After header.

    Accepts delta-seconds ("120") or an HTTP-date. Returns seconds to wait,
    or None when the header is absent or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now if now is not None else time.time()
    return max(0.0, when.timestamp() - current)


def _error_message(response: HttpResponse) -> str:
    """Best-effort extraction of a human-readable error from a response body."""
    try:
        data = json.loads(response.text) if response.text else None
    except json.JSONDecodeError:
        data = None
    # Some OpenAI-compatible gateways wrap the error in a list
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return f"HTTP {response.status}"


def classify_response(
    response: HttpResponse,
    service: str,
    retryable_statuses: frozenset = frozenset({429, 500, 502, 503, 504}),
) -> IntegrationError:
    """
    Convert a non-2xx response into the matching IntegrationError.

    Args:
        response: The failed response
        service: Downstream name, attached to the error
        retryable_statuses: Statuses treated as transient

    Returns:
        The exception instance (the caller raises it)
    """
    status = response.status
    message = _error_message(response)
    retry_after = parse_retry_after(response.header("Retry-After"))

    if status == 429:
        return RateLimitedError(message, retry_after=retry_after, service=service)
    if status in (401, 403):
        return AuthFailedError(message, status_code=status, service=service)
    if status == 404:
        return NotFoundError(message, service=service)
    if status == 422:
        errors = []
        try:
            errors = (json.loads(response.text) or {}).get("errors", [])
        except (json.JSONDecodeError, AttributeError):
            pass
        return ValidationError(message, errors=errors, service=service)
    if status in retryable_statuses or status >= 500:
        error = ServerError(message, status_code=status, service=service, retry_after=retry_after)
        if status not in retryable_statuses:
            # e.g. 501: server-side but not transient
            error.retryable = False
        return error
    return ClientRequestError(message, status_code=status, service=service)


# =============================================================================
# TRANSPORT
# =============================================================================

class HttpTransport:
    """
    Async HTTP transport with configured timeouts and no retry logic.

    Attributes:
        connect_timeout: Seconds allowed to establish a connection
        total_timeout: Seconds allowed for the whole request
        user_agent: Value of the User-Agent header
    """

    def __init__(
        self,
        connect_timeout: float = 5.0,
        total_timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.connect_timeout = connect_timeout
        self.total_timeout = total_timeout
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(
                    total=self.total_timeout,
                    connect=self.connect_timeout,
                ),
                headers={"User-Agent": self.user_agent},
            )
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        data: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        service: str = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        """
        Issue one HTTP request and read the full body.

        Raises:
            NetworkError: Connection-level failure
            RequestTimeoutError: Connect or total timeout exceeded
        """
        session = await self._get_session()
        kwargs: Dict[str, Any] = {"headers": dict(headers or {})}
        if json is not None:
            kwargs["json"] = json
        if data is not None:
            kwargs["data"] = data
        if params is not None:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(
                total=timeout, connect=min(self.connect_timeout, timeout)
            )

        logger.debug(f"{method} {url}")
        try:
            async with session.request(method, url, **kwargs) as response:
                text = await response.text()
                return HttpResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    text=text,
                    url=str(response.url),
                )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"{method} {url} timed out", service=service
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkError(
                f"{method} {url} failed: {e.__class__.__name__}", service=service
            ) from e

    async def close(self):
        """Close the HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


__all__ = [
    "HttpResponse",
    "HttpTransport",
    "classify_response",
    "parse_retry_after",
    "DEFAULT_USER_AGENT",
]
