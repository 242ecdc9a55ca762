"""
Retry/backoff and rate-limit-aware HTTP helper for the async ingest clients.
This module centralizes request retry logic so ingest.github and ingest.linear share it.
"""

import asyncio
import email.utils
import logging
import os
import random
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from errors import SourceFetchError

logger = logging.getLogger(__name__)

# retry/backoff defaults from environment
DEFAULT_MAX_RETRIES = int(os.getenv("ORGPULSE_MAX_RETRIES", "3"))
DEFAULT_BACKOFF_BASE = float(os.getenv("ORGPULSE_BACKOFF_BASE", "0.5"))
_env_jitter = os.getenv("ORGPULSE_BACKOFF_JITTER")
DEFAULT_BACKOFF_JITTER = float(_env_jitter) if _env_jitter is not None and _env_jitter != "" else None
DEFAULT_MAX_BACKOFF = float(os.getenv("ORGPULSE_MAX_BACKOFF", "120.0"))

# hard cap on a single server-requested wait
MAX_SINGLE_WAIT = 300.0

# runtime-overrides
_runtime_max_retries: Optional[int] = None
_runtime_backoff_base: Optional[float] = None
_runtime_backoff_jitter: Optional[float] = None
_runtime_max_backoff: Optional[float] = None


def configure_retry(
    max_retries: Optional[int] = None, backoff_base: Optional[float] = None, backoff_jitter: Optional[float] = None, max_backoff: Optional[float] = None
):
    """Configure retry/backoff defaults at runtime (e.g. from CLI)."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    if max_retries is not None:
        _runtime_max_retries = int(max_retries)
    if backoff_base is not None:
        _runtime_backoff_base = float(backoff_base)
    if backoff_jitter is not None:
        _runtime_backoff_jitter = float(backoff_jitter)
    if max_backoff is not None:
        _runtime_max_backoff = float(max_backoff)


def reset_retry_configuration():
    """Drop runtime overrides and fall back to the environment defaults."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    _runtime_max_retries = None
    _runtime_backoff_base = None
    _runtime_backoff_jitter = None
    _runtime_max_backoff = None


def _parse_retry_after(raw_ra: Optional[str]) -> Optional[float]:
    if not raw_ra:
        return None
    try:
        return float(raw_ra)
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(raw_ra)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _header_number(headers: httpx.Headers, key: str, cast):
    val = headers.get(key)
    if val is None:
        return None
    try:
        return cast(val)
    except ValueError:
        return None


def _parse_rate_headers(resp: httpx.Response):
    headers = resp.headers
    ra = _parse_retry_after(headers.get('Retry-After'))
    rl_remaining = _header_number(headers, 'X-RateLimit-Remaining', int)
    rl_reset = _header_number(headers, 'X-RateLimit-Reset', float)
    return ra, rl_remaining, rl_reset


def _resolve_backoff_params(backoff_base: Optional[float], backoff_jitter: Optional[float], max_backoff: Optional[float]):
    if backoff_base is not None:
        base = float(backoff_base)
    elif _runtime_backoff_base is not None:
        base = float(_runtime_backoff_base)
    else:
        base = float(DEFAULT_BACKOFF_BASE)

    if backoff_jitter is not None:
        jitter = float(backoff_jitter)
    elif _runtime_backoff_jitter is not None:
        jitter = float(_runtime_backoff_jitter)
    elif DEFAULT_BACKOFF_JITTER is not None:
        jitter = float(DEFAULT_BACKOFF_JITTER)
    else:
        jitter = base

    if max_backoff is not None:
        cap = float(max_backoff)
    elif _runtime_max_backoff is not None:
        cap = float(_runtime_max_backoff)
    else:
        cap = float(DEFAULT_MAX_BACKOFF)

    return base, jitter, cap


def _resolve_max_retries(max_retries: Optional[int]) -> int:
    if max_retries is not None:
        return max(1, int(max_retries))
    if _runtime_max_retries is not None:
        return max(1, int(_runtime_max_retries))
    return max(1, DEFAULT_MAX_RETRIES)


def _should_retry_response(status_code: int, ra: Optional[float], rl_remaining: Optional[int]) -> bool:
    if status_code in (429, 503):
        return True
    if status_code in (200, 201, 202, 204):
        return False
    if ra is not None:
        return True
    if rl_remaining is not None and rl_remaining <= 0:
        return True
    return False


def _compute_wait_seconds(ra: Optional[float], rl_reset: Optional[float], backoff: float, jitter: float) -> float:
    if ra is not None:
        return min(float(ra) + random.uniform(0, jitter), MAX_SINGLE_WAIT)
    if rl_reset:
        now = datetime.now(timezone.utc).timestamp()
        wait = max(0.0, float(rl_reset) - now)
        return min(wait + random.uniform(0, jitter), MAX_SINGLE_WAIT)
    return min(backoff + random.uniform(0, jitter), MAX_SINGLE_WAIT)


async def perform_request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_jitter: Optional[float] = None,
    max_backoff: Optional[float] = None,
) -> httpx.Response:
    """Send a request, retrying transport errors, 429/503 and exhausted rate limits with backoff.

    Returns the last response received (which may still be a rate-limit response when every
    attempt was throttled). Raises SourceFetchError when no attempt produced a response.
    """
    base, jitter, cap = _resolve_backoff_params(backoff_base, backoff_jitter, max_backoff)
    attempts = _resolve_max_retries(max_retries)
    backoff = base
    last_response: Optional[httpx.Response] = None
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            resp = await client.request(method, url, headers=headers or {}, params=params or None, json=json_body)
        except httpx.TransportError as ex:
            last_error = ex
            logger.debug("request %s %s failed (attempt %d/%d): %s", method, url, attempt + 1, attempts, ex)
            if attempt + 1 < attempts:
                await asyncio.sleep(min(backoff + random.uniform(0, jitter), cap))
                backoff = min(backoff * 2, cap)
            continue

        last_response = resp
        ra, rl_remaining, rl_reset = _parse_rate_headers(resp)
        if not _should_retry_response(resp.status_code, ra, rl_remaining):
            return resp
        if attempt + 1 < attempts:
            wait_seconds = _compute_wait_seconds(ra, rl_reset, backoff, jitter)
            logger.warning("rate limited on %s (status %s); retrying in %.1fs", url, resp.status_code, wait_seconds)
            await asyncio.sleep(wait_seconds)
            backoff = min(backoff * 2, cap)

    if last_response is not None:
        return last_response
    raise SourceFetchError(f"{method} {url} failed after {attempts} attempt(s): {last_error}")


__all__ = ["configure_retry", "reset_retry_configuration", "perform_request_with_retries"]
