"""Shared HTTP plumbing for the collaborator adapters."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import aiohttp

from payment_check.exceptions import PermanentError, TransientError

USER_AGENT = "Payment-Status-Check/1.0"

# Treated as retryable even though they are 4xx
_RETRYABLE_CLIENT_STATUSES = {408, 425, 429}


def classify_status(status: int, context: str) -> Optional[Exception]:
    """Map an HTTP status to the error the engine should see (None for success)."""
    if status < 400:
        return None
    if status >= 500 or status in _RETRYABLE_CLIENT_STATUSES:
        return TransientError(f"{context}: HTTP {status}")
    return PermanentError(f"{context}: HTTP {status}")


@asynccontextmanager
async def client_session(timeout_seconds: float) -> AsyncIterator[aiohttp.ClientSession]:
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    async with aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": USER_AGENT}) as session:
        yield session


async def request(
    method: str,
    url: str,
    *,
    context: str,
    timeout_seconds: float,
    json: Any = None,
    headers: Optional[dict[str, str]] = None,
) -> tuple[int, Any]:
    """Issue one request; return (status, parsed body or None).

    Only successful JSON responses are parsed. Connection failures, client
    timeouts and unparseable JSON bodies are surfaced as `TransientError`.
    Status classification is left to the caller.
    """
    try:
        async with client_session(timeout_seconds) as session:
            async with session.request(method, url, json=json, headers=headers) as response:
                body = None
                if response.status < 400 and response.content_type == "application/json":
                    body = await response.json()
                return response.status, body
    except asyncio.TimeoutError:
        raise TransientError(f"{context}: request timed out")
    except aiohttp.ClientError as e:
        raise TransientError(f"{context}: client error: {e}")
    except ValueError as e:
        # json.JSONDecodeError and friends from a malformed body
        raise TransientError(f"{context}: malformed response body: {e}")


__all__ = ["classify_status", "client_session", "request", "USER_AGENT"]
