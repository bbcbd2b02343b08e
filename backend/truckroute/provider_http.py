from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

from .errors import DecodeError, NetworkError, ProviderHTTPError
from .metrics_store import record_call


def new_async_client() -> httpx.AsyncClient:
    # trust_env=False keeps proxy env vars away from local OSRM / docker service names.
    return httpx.AsyncClient(
        timeout=httpx.Timeout(30.0, connect=5.0),
        trust_env=False,
        headers={"accept": "application/json"},
    )


def format_provider_error(provider: str, resp: httpx.Response) -> str:
    """Best-effort decode of provider JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            code = data.get("code") or data.get("errorCode")
            message = data.get("message") or data.get("detailedError") or data.get("error")
            if isinstance(message, dict):
                message = message.get("message") or message.get("description")
            if code and message:
                return f"{provider} {resp.status_code} {code}: {message}"
            if code:
                return f"{provider} {resp.status_code} {code}"
            if message:
                return f"{provider} {resp.status_code}: {message}"
    except ValueError:
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"{provider} {resp.status_code}: {body}"
    return f"{provider} HTTP {resp.status_code}"


def _describe(exc: BaseException) -> str:
    # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    timeout_s: float,
    params: dict[str, Any] | None = None,
    data: dict[str, str] | None = None,
    allow_statuses: frozenset[int] = frozenset(),
) -> Any:
    """One provider call with an explicit deadline. Never retries.

    ``allow_statuses`` lets callers inspect provider payloads that come back
    with an error status but a meaningful body (e.g. OSRM ``NoRoute`` as 400).
    """
    t0 = time.perf_counter()
    error: str | None = None
    try:
        try:
            resp = await asyncio.wait_for(
                client.request(method, url, params=params, data=data, timeout=timeout_s),
                timeout=timeout_s,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            error = f"timeout after {timeout_s:.1f}s"
            raise NetworkError(f"{provider} request timed out after {timeout_s:.1f}s", provider=provider) from e
        except httpx.TransportError as e:
            error = _describe(e)
            raise NetworkError(f"{provider} transport error: {error}", provider=provider) from e

        if resp.status_code >= 400 and resp.status_code not in allow_statuses:
            error = f"http_{resp.status_code}"
            raise ProviderHTTPError(
                format_provider_error(provider, resp),
                status_code=resp.status_code,
                provider=provider,
            )

        try:
            return resp.json()
        except ValueError as e:
            error = "decode"
            raise DecodeError(f"{provider} returned a non-JSON payload", provider=provider) from e
    finally:
        record_call(provider, duration_ms=(time.perf_counter() - t0) * 1000.0, error=error)
