"""RPC error hierarchy and retry classification.

Errors raised by chain clients and the RPC manager all extend RPCError so
callers (trading/quote services) can catch a single base type. The retry
executor does not rely on types alone: third-party clients raise their own
exceptions, so classify_error() also looks at HTTP status codes and message
text.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Mapping, Optional

import aiohttp


class RPCError(Exception):
    """Base error for RPC pool and chain client failures."""

    def __init__(self, message: str, *, status: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class NoHealthyEndpoint(RPCError):
    """Every endpoint for a chain is unhealthy, failed or over its rate cap."""


class RateLimited(RPCError):
    """Upstream returned HTTP 429 or a JSON-RPC rate-limit error."""

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after_s: Optional[float] = None,
        status: Optional[int] = 429,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message, status=status, url=url)
        self.retry_after_s = retry_after_s


class NetworkTransient(RPCError):
    """Connection failure or timeout talking to an endpoint."""


class InvalidRequest(RPCError):
    """Malformed request (bad address, bad params). Never retried."""


class NotFound(RPCError):
    """Requested object or method does not exist. Never retried."""


class ChainNotConfigured(InvalidRequest):
    pass


RATE_LIMITED = "rate_limited"
NETWORK = "network"
INVALID = "invalid"
OTHER = "other"


_RATE_LIMIT_CODE = re.compile(r"\b429\b")


def classify_error(err: BaseException) -> str:
    """Map an exception to rate_limited / network / invalid / other.

    Typed validation errors win over message text: addresses and hashes
    routinely contain "429".
    """
    if isinstance(err, (InvalidRequest, NotFound)):
        return INVALID
    if isinstance(err, RateLimited):
        return RATE_LIMITED
    status = getattr(err, "status", None)
    if status == 429 or getattr(err, "code", None) == 429:
        return RATE_LIMITED
    msg = str(err)
    if _RATE_LIMIT_CODE.search(msg) or "rate limit" in msg.lower():
        return RATE_LIMITED

    if isinstance(err, (NetworkTransient, asyncio.TimeoutError, aiohttp.ClientConnectionError, ConnectionError)):
        return NETWORK
    if getattr(err, "code", None) == "NETWORK_ERROR" or "fetch failed" in msg:
        return NETWORK

    if "Invalid" in msg or "Not found" in msg:
        return INVALID
    return OTHER


_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")


def _header(headers: Optional[Mapping[str, Any]], name: str) -> Optional[str]:
    if not headers:
        return None
    for k, v in headers.items():
        if str(k).lower() == name:
            return str(v)
    return None


def suggested_wait_s(err: BaseException) -> Optional[float]:
    """Return the upstream's suggested wait in seconds, if it sent one."""
    retry_after = getattr(err, "retry_after_s", None)
    if retry_after is not None:
        return float(retry_after)
    raw = _header(getattr(err, "headers", None), "retry-after")
    if raw is not None:
        try:
            return float(raw)
        except ValueError:
            pass
    msg = str(err)
    if "wait" in msg.lower():
        m = _NUMBER.search(msg)
        if m:
            return float(m.group(1))
    return None
