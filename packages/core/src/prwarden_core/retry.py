"""Retry controller for remote calls.

Every GitHub and model call goes through with_retries(). Two fixed delay
profiles exist: STANDARD_RETRY for ordinary transient failures and QUOTA_RETRY
for rate limits and quota exhaustion. A quota error upgrades the remaining
attempt budget and switches to the much longer delays, because providers that
throttle us usually need minutes rather than seconds to recover.

Delay for attempt n (0-based):

    delay = min(cap, max(floor, base * 2**n))
    delay = max(delay, provider retry hint)
    delay += delay * jitter_ratio * random()

Before sleeping, the controller checks the profile's elapsed-time ceiling and
gives up (re-raising the last error) rather than sleeping past it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import random
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, TypeVar

from prwarden_core.errors import HistoryNotFoundError, QuotaExceededError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_QUOTA_PATTERN = re.compile(r"quota|resource[_ -]?exhausted|rate[ _-]?limit|\b429\b", re.IGNORECASE)
_RETRY_DELAY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)s$", re.IGNORECASE)


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float
    max_delay: float
    min_delay: float = 0.0
    jitter_ratio: float = 0.2
    max_elapsed: float = 60.0
    min_attempts: int = 0  # 0 = whatever the caller asked for


STANDARD_RETRY = RetryPolicy(base_delay=1.0, max_delay=8.0, min_delay=0.0, jitter_ratio=0.2, max_elapsed=60.0)
QUOTA_RETRY = RetryPolicy(
    base_delay=30.0,
    max_delay=300.0,
    min_delay=30.0,
    jitter_ratio=0.2,
    max_elapsed=3600.0,
    min_attempts=12,
)


def quota_policy(max_elapsed: float | None = None, min_attempts: int | None = None) -> RetryPolicy:
    """Return QUOTA_RETRY with the configurable ceiling and attempt floor applied."""
    policy = QUOTA_RETRY
    if max_elapsed is not None:
        policy = replace(policy, max_elapsed=float(max_elapsed))
    if min_attempts is not None:
        policy = replace(policy, min_attempts=int(min_attempts))
    return policy


def default_should_retry(error: BaseException) -> bool:
    return not isinstance(error, (ValidationError, HistoryNotFoundError))


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def is_quota_error(error: BaseException | str) -> bool:
    if isinstance(error, QuotaExceededError):
        return True
    if _QUOTA_PATTERN.search(_error_message(error)):
        return True
    return extract_status_code(error) == 429


def extract_status_code(error: Any) -> int | None:
    if error is None or isinstance(error, str):
        return None
    for attr in ("status", "status_code", "code"):
        value = _to_number(getattr(error, attr, None))
        if value is not None:
            return int(value)
    response = getattr(error, "response", None)
    if response is not None:
        value = _to_number(getattr(response, "status_code", None) or getattr(response, "status", None))
        if value is not None:
            return int(value)
    nested = getattr(error, "error", None)
    if isinstance(nested, dict):
        value = _to_number(nested.get("code") or nested.get("statusCode"))
        if value is not None:
            return int(value)
    return None


# ---------------------------------------------------------------------------
# Provider retry hints
# ---------------------------------------------------------------------------


def extract_retry_after(error: Any, now: datetime | None = None) -> float | None:
    """Return the provider's retry hint in seconds, or None.

    Looked up in order: explicit attributes (retry_after_ms / retry_after), a
    Retry-After header (seconds or HTTP date), then a structured error payload
    whose details carry a retryDelay ("30s", a number, or {seconds, nanos}).
    """
    direct_ms = _to_number(getattr(error, "retry_after_ms", None))
    if direct_ms is not None:
        return max(0.0, direct_ms / 1000)

    direct_seconds = _to_number(getattr(error, "retry_after", None))
    if direct_seconds is not None:
        return max(0.0, direct_seconds)

    header = _header_value(error)
    if header:
        parsed = parse_retry_after(header, now)
        if parsed is not None:
            return parsed

    for payload in _structured_payloads(error):
        details = None
        if isinstance(payload.get("error"), dict):
            details = payload["error"].get("details")
        if details is None:
            details = payload.get("details")
        if not isinstance(details, list):
            continue
        for detail in details:
            if not isinstance(detail, dict):
                continue
            retry_delay = detail.get("retryDelay")
            if retry_delay is None and isinstance(detail.get("retryInfo"), dict):
                retry_delay = detail["retryInfo"].get("retryDelay")
            seconds = _parse_retry_delay(retry_delay)
            if seconds is not None:
                return seconds
    return None


def parse_retry_after(value: str, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header value: delta-seconds or an HTTP date."""
    trimmed = str(value).strip()
    if not trimmed:
        return None
    numeric = _to_number(trimmed)
    if numeric is not None:
        return max(0.0, numeric)
    try:
        when = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _parse_retry_delay(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        match = _RETRY_DELAY_PATTERN.match(value.strip())
        return max(0.0, float(match.group(1))) if match else None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return max(0.0, float(value))
    if isinstance(value, dict):
        seconds = _to_number(value.get("seconds")) or 0.0
        nanos = _to_number(value.get("nanos")) or 0.0
        if seconds or nanos:
            return max(0.0, seconds + nanos / 1e9)
    return None


def _header_value(error: Any) -> str | None:
    headers = getattr(error, "headers", None)
    if not headers:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None) if response is not None else None
    if not headers:
        return None
    for key in ("retry-after", "Retry-After", "retry_after"):
        try:
            raw = headers.get(key)
        except AttributeError:
            return None
        if raw is None:
            continue
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return str(raw)
        if isinstance(raw, str):
            return raw
    return None


def _structured_payloads(error: Any) -> list[dict]:
    """Structured error bodies attached to the exception, then JSON embedded in its message."""
    payloads = []
    for attr in ("data", "body"):
        value = getattr(error, attr, None)
        if isinstance(value, dict):
            payloads.append(value)
    embedded = _extract_embedded_json(_error_message(error))
    if isinstance(embedded, dict):
        payloads.append(embedded)
    return payloads


def _extract_embedded_json(message: str) -> Any:
    trimmed = message.strip()
    if not trimmed:
        return None
    for candidate in (trimmed, trimmed[trimmed.find("{") : trimmed.rfind("}") + 1]):
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def _error_message(error: Any) -> str:
    if isinstance(error, str):
        return error
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) if error is not None else ""


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def compute_retry_delay(
    attempt: int,
    policy: RetryPolicy,
    retry_after: float | None = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before retry number ``attempt + 1``.

    Jitter is only ever added, so the result never drops below the policy floor
    or the provider's hint.
    """
    exponential = policy.base_delay * (2**attempt)
    delay = min(policy.max_delay, max(policy.min_delay, exponential))
    if retry_after is not None:
        delay = max(delay, retry_after, policy.min_delay)
    if policy.jitter_ratio > 0:
        delay += delay * policy.jitter_ratio * rng()
    return max(0.0, delay)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    should_retry: Callable[[BaseException], bool] = default_should_retry,
    *,
    standard: RetryPolicy = STANDARD_RETRY,
    quota: RetryPolicy = QUOTA_RETRY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: Callable[[], float] = random.random,
    description: str = "remote call",
) -> T:
    """Run ``operation`` until it succeeds or the retry budget is spent.

    Raises the last observed error when attempts or the elapsed-time ceiling
    run out, and raises immediately when ``should_retry`` rejects the error.
    """
    max_attempts = max(1, attempts)
    started = clock()
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            if not should_retry(e):
                raise

            quota_error = is_quota_error(e)
            if quota_error:
                max_attempts = max(max_attempts, attempts, quota.min_attempts)

            if attempt >= max_attempts - 1:
                logger.error("%s failed after %d attempt(s): %s", description, attempt + 1, e)
                raise

            policy = quota if quota_error else standard
            delay = compute_retry_delay(attempt, policy, extract_retry_after(e), rng)
            elapsed = clock() - started
            if elapsed + delay > policy.max_elapsed:
                logger.error(
                    "%s: giving up after %.1fs; next delay %.1fs would pass the %.0fs ceiling: %s",
                    description,
                    elapsed,
                    delay,
                    policy.max_elapsed,
                    e,
                )
                raise

            logger.warning(
                "%s error (attempt %d/%d%s): %s. Retrying in %.1fs...",
                description,
                attempt + 1,
                max_attempts,
                ", quota" if quota_error else "",
                e,
                delay,
            )
            await sleep(delay)
            attempt += 1
