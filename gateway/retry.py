"""
mintsaga — Backoff Policy & Retry for Idempotent Calls

Provides:
  - Exponential backoff with a cap: delay = min(base * 2^attempt, cap)
  - Optional jitter (off by default so reconnect schedules are predictable)
  - Transient-error classification (timeouts, connection failures, 429/5xx)
  - call_with_retry() for side-effect-free reads (ledger slots, item queries)

Only idempotent calls go through call_with_retry. Signing requests and
rollback notifications are never retried here: both must be issued at
most once per pending action.

Usage:
    from gateway.retry import BackoffPolicy, call_with_retry

    policy = BackoffPolicy(base=0.5, cap=4.0, max_attempts=3)
    value = call_with_retry(lambda: reader.allowance(holder), policy, label="allowance")
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

logger = logging.getLogger("mintsaga.retry")

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════
# Backoff Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class BackoffPolicy:
    """Backoff configuration. Units are whatever the caller sleeps in."""
    base: float = 1.0
    cap: float = 30.0
    max_attempts: int = 3
    jitter: float = 0.0             # ±fraction of the capped delay

    retryable_exceptions: tuple = (
        TimeoutError,
        ConnectionError,
    )
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


DEFAULT_READ_POLICY = BackoffPolicy(base=0.5, cap=4.0, max_attempts=3)


def compute_backoff(attempt: int, policy: BackoffPolicy) -> float:
    """
    Delay before retry number `attempt` (0-indexed).

    attempt=0 → base, attempt=1 → 2*base, ... capped at policy.cap.
    """
    capped = min(policy.base * (2 ** attempt), policy.cap)
    if policy.jitter:
        jitter_range = capped * policy.jitter
        capped = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, capped)


# ═══════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════

# RPC nodes and the backend report these in free text
_TRANSIENT_MARKERS = (
    "timeout", "timed out", "connection", "unavailable", "too many requests",
    "rate limit", "header not found", "econnreset",
)
_PERMANENT_MARKERS = (
    "401", "403", "unauthorized", "forbidden", "execution reverted", "invalid address",
)


def _status_of(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def is_transient(error: BaseException, policy: BackoffPolicy = DEFAULT_READ_POLICY) -> bool:
    """
    Decide whether a failed read is worth repeating.

    Checked in order: exception type, HTTP status, the error's own
    ``retryable`` flag (lifecycle errors), then the message text.
    """
    if isinstance(error, policy.retryable_exceptions):
        return True

    status = _status_of(error)
    if status is not None:
        return status in policy.retryable_status_codes

    flag = getattr(error, "retryable", None)
    if isinstance(flag, bool):
        return flag

    text = str(error).lower()
    if any(marker in text for marker in _PERMANENT_MARKERS):
        return False
    if any(str(code) in text for code in policy.retryable_status_codes):
        return True
    return any(marker in text for marker in _TRANSIENT_MARKERS)


# ═══════════════════════════════════════════════════════════════════
# Retry Loop
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryOutcome:
    """Value plus attempt log for a call that went through call_with_retry."""
    value: Any
    attempts: int
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


def call_with_retry(
    fn: Callable[[], T],
    policy: BackoffPolicy | None = None,
    label: str = "",
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    """
    Invoke an idempotent callable with retry and backoff.

    Non-transient errors propagate immediately. After max_attempts the
    last transient error is re-raised.
    """
    return call_with_retry_logged(fn, policy, label, sleep_fn).value


def call_with_retry_logged(
    fn: Callable[[], T],
    policy: BackoffPolicy | None = None,
    label: str = "",
    sleep_fn: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Same as call_with_retry, returning the attempt log as well."""
    if policy is None:
        policy = DEFAULT_READ_POLICY

    attempt_log: list[dict[str, Any]] = []
    last_error: BaseException | None = None

    for attempt in range(policy.max_attempts):
        t0 = time.time()
        entry: dict[str, Any] = {"attempt": attempt + 1, "label": label}
        try:
            value = fn()
        except Exception as e:
            entry["latency_s"] = round(time.time() - t0, 3)
            entry["error"] = str(e)[:200]
            last_error = e

            if not is_transient(e, policy):
                entry["status"] = "non_retryable"
                attempt_log.append(entry)
                logger.error("Non-retryable error (%s): %s", label, str(e)[:100])
                raise

            entry["status"] = "retryable_error"
            attempt_log.append(entry)
            logger.warning(
                "Retryable error (attempt %d/%d, %s): %s",
                attempt + 1, policy.max_attempts, label, str(e)[:100],
            )
            if attempt < policy.max_attempts - 1:
                delay = compute_backoff(attempt, policy)
                entry["backoff"] = round(delay, 3)
                sleep_fn(delay)
            continue

        entry["latency_s"] = round(time.time() - t0, 3)
        entry["status"] = "success"
        attempt_log.append(entry)
        return RetryOutcome(value=value, attempts=attempt + 1, attempt_log=attempt_log)

    logger.error("All retry attempts exhausted (%s, attempts=%d)", label, len(attempt_log))
    assert last_error is not None
    raise last_error
