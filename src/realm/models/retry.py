"""Retry classification and backoff for model invocations.

``classify_error`` maps a raised error to a ``RetryDecision`` without
touching any state. ``call_with_retry`` wraps one async model call in a
bounded retry budget and re-raises the original exception unchanged once
the budget is spent or the error is fatal.

Unrecognized errors are retryable. A single unclassified error type
should not abort a long multi-cycle run; the agent loop's iteration and
consecutive-failure ceilings are the backstop.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from realm.config import RetryConfig
from realm.exceptions import RetryableError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(Enum):
    """Failure categories with different retry behavior."""

    VALIDATION = "validation"
    INVALID_REQUEST = "invalid_request"
    AUTHENTICATION = "authentication"
    QUOTA = "quota"
    CONTENT_POLICY = "content_policy"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"
    TRANSIENT = "transient"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


_FATAL_KINDS = frozenset({
    ErrorKind.VALIDATION,
    ErrorKind.INVALID_REQUEST,
    ErrorKind.AUTHENTICATION,
    ErrorKind.QUOTA,
    ErrorKind.CONTENT_POLICY,
    ErrorKind.NOT_FOUND,
    ErrorKind.CANCELLED,
})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy: ``wait = max(min_wait, base_multiplier * 2**attempt)``."""

    max_retries: int = 3
    base_multiplier: float = 5.0
    min_wait: float = 0.5
    max_wait: float = 300.0
    jitter_seconds: float = 0.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=max(0, int(config.max_retries)),
            base_multiplier=max(0.0, float(config.base_multiplier)),
            min_wait=max(0.0, float(config.min_wait)),
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def wait_seconds(self, attempt: int) -> float:
        """Wait before the retry that follows failed ``attempt`` (0-based)."""
        wait = max(self.min_wait, self.base_multiplier * (2 ** attempt))
        wait = min(wait, max(self.max_wait, self.min_wait))
        if self.jitter_seconds > 0:
            wait += random.uniform(0.0, self.jitter_seconds)
        return wait


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of classifying one error."""

    retryable: bool
    wait_seconds: float
    error_kind: ErrorKind
    reason: str = ""


# Vendor SDK error codes (object-storage and cloud SDK style).
RETRYABLE_ERROR_CODES = frozenset({
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "ServiceUnavailable",
    "ETIMEDOUT",
    "ECONNRESET",
    "ECONNREFUSED",
    "EPIPE",
})

FATAL_ERROR_CODES = frozenset({
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "NoSuchKey",
    "NoSuchBucket",
    "InvalidArgument",
    "InvalidRequest",
})

_CODE_KINDS: dict[str, ErrorKind] = {
    "SlowDown": ErrorKind.RATE_LIMIT,
    "Throttling": ErrorKind.RATE_LIMIT,
    "ThrottlingException": ErrorKind.RATE_LIMIT,
    "TooManyRequestsException": ErrorKind.RATE_LIMIT,
    "RequestTimeout": ErrorKind.TIMEOUT,
    "RequestTimeoutException": ErrorKind.TIMEOUT,
    "ETIMEDOUT": ErrorKind.TIMEOUT,
    "ECONNRESET": ErrorKind.NETWORK,
    "ECONNREFUSED": ErrorKind.NETWORK,
    "EPIPE": ErrorKind.NETWORK,
    "AccessDenied": ErrorKind.AUTHENTICATION,
    "InvalidAccessKeyId": ErrorKind.AUTHENTICATION,
    "SignatureDoesNotMatch": ErrorKind.AUTHENTICATION,
    "NoSuchKey": ErrorKind.NOT_FOUND,
    "NoSuchBucket": ErrorKind.NOT_FOUND,
}

# Exception class names that indicate a transient transport failure.
RETRYABLE_ERROR_NAMES = frozenset({
    "AbortError",
    "TimeoutError",
    "NetworkError",
    "FetchError",
    "ConnectError",
    "ConnectTimeout",
    "ReadTimeout",
    "WriteTimeout",
    "PoolTimeout",
    "ReadError",
    "RemoteProtocolError",
})

# Account and content refusals. Checked before structured codes and
# statuses: providers report quota exhaustion as HTTP 429.
_REFUSAL_PATTERNS: list[tuple[re.Pattern, ErrorKind]] = [
    (
        re.compile(
            r"quota exceeded|quota_exceeded|exceeded your current quota|"
            r"insufficient_quota|billing|"
            r"usage limit|exceeded budget|budget exceeded|over budget",
            re.IGNORECASE,
        ),
        ErrorKind.QUOTA,
    ),
    (
        re.compile(r"content policy|safety|blocked", re.IGNORECASE),
        ErrorKind.CONTENT_POLICY,
    ),
]

# Patterns for error classification, non-retryable first (fail fast).
_FATAL_PATTERNS: list[tuple[re.Pattern, ErrorKind]] = [
    (
        re.compile(
            r"status:? 400|bad request|status:? 422|unprocessable|malformed|"
            r"invalid request|invalid_request|invalid argument|invalid_argument|"
            r"model not found|invalid model",
            re.IGNORECASE,
        ),
        ErrorKind.INVALID_REQUEST,
    ),
    (
        re.compile(
            r"status:? 401|unauthori[sz]ed|status:? 403|forbidden|authentication|"
            r"invalid api key|api key invalid|api key not valid|"
            r"permission denied|access denied",
            re.IGNORECASE,
        ),
        ErrorKind.AUTHENTICATION,
    ),
    (
        re.compile(r"status:? 404|not found", re.IGNORECASE),
        ErrorKind.NOT_FOUND,
    ),
]

_RETRYABLE_PATTERNS: list[tuple[re.Pattern, ErrorKind]] = [
    (
        re.compile(
            r"rate limit|rate_limit|ratelimit|too many requests|\b429\b|"
            r"resource exhausted|resource_exhausted",
            re.IGNORECASE,
        ),
        ErrorKind.RATE_LIMIT,
    ),
    (
        re.compile(
            r"timeout|timed out|etimedout|deadline exceeded|aborted",
            re.IGNORECASE,
        ),
        ErrorKind.TIMEOUT,
    ),
    (
        re.compile(
            r"econnreset|econnrefused|socket hang up|network error|fetch failed|"
            r"connection refused|connection reset|connection error|epipe|enotfound",
            re.IGNORECASE,
        ),
        ErrorKind.NETWORK,
    ),
    (
        re.compile(
            r"\b50[0234]\b|internal server error|bad gateway|service unavailable|"
            r"gateway timeout|overloaded|capacity|temporarily unavailable|try again",
            re.IGNORECASE,
        ),
        ErrorKind.SERVER,
    ),
]


def _status_of(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _kind_for_status(status: int) -> ErrorKind | None:
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status == 408:
        return ErrorKind.TIMEOUT
    if status >= 500:
        return ErrorKind.SERVER
    if status in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status == 404:
        return ErrorKind.NOT_FOUND
    if 400 <= status < 500:
        return ErrorKind.INVALID_REQUEST
    return None


def _classify_kind(error: BaseException) -> tuple[ErrorKind, str]:
    """Return (kind, reason) for an error. Pure; no logging."""
    if isinstance(error, asyncio.CancelledError):
        return ErrorKind.CANCELLED, "cancelled"
    if isinstance(error, RetryableError):
        return ErrorKind.TRANSIENT, "explicitly retryable"
    if isinstance(error, ValidationError):
        return ErrorKind.VALIDATION, "validation error"

    message = str(error or "")
    for pattern, kind in _REFUSAL_PATTERNS:
        match = pattern.search(message)
        if match:
            return kind, match.group(0)

    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        if code in RETRYABLE_ERROR_CODES:
            return _CODE_KINDS.get(code, ErrorKind.SERVER), f"code {code}"
        if code in FATAL_ERROR_CODES:
            return _CODE_KINDS.get(code, ErrorKind.INVALID_REQUEST), f"code {code}"

    status = _status_of(error)
    if status is not None:
        kind = _kind_for_status(status)
        if kind is not None:
            return kind, f"status {status}"

    for pattern, kind in _FATAL_PATTERNS:
        match = pattern.search(message)
        if match:
            return kind, match.group(0)
    for pattern, kind in _RETRYABLE_PATTERNS:
        match = pattern.search(message)
        if match:
            return kind, match.group(0)

    name = type(error).__name__
    if name in RETRYABLE_ERROR_NAMES:
        kind = ErrorKind.TIMEOUT if "Timeout" in name or name == "AbortError" else (
            ErrorKind.NETWORK
        )
        return kind, f"error type {name}"
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT, "timeout"
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK, "connection error"

    return ErrorKind.UNKNOWN, "unrecognized error"


def classify_error(
    error: BaseException,
    *,
    attempt: int = 0,
    policy: RetryPolicy | None = None,
) -> RetryDecision:
    """Classify an error into a retry decision.

    ``attempt`` is the 0-based index of the attempt that failed and only
    affects ``wait_seconds``.
    """
    kind, reason = _classify_kind(error)
    retryable = kind not in _FATAL_KINDS
    wait = (policy or RetryPolicy()).wait_seconds(attempt) if retryable else 0.0
    return RetryDecision(
        retryable=retryable,
        wait_seconds=wait,
        error_kind=kind,
        reason=reason,
    )


def is_retryable(error: BaseException) -> bool:
    return classify_error(error).retryable


async def call_with_retry(
    invoke: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation_name: str = "Operation",
    classify: Callable[..., RetryDecision] = classify_error,
    on_failure: Callable[[int, int, BaseException, RetryDecision], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Invoke an async model call with exponential backoff.

    Makes at most ``policy.max_retries + 1`` attempts. Fatal errors and the
    final retryable error are re-raised as the original exception object.
    """
    attempts = deque(range(policy.max_attempts))

    while attempts:
        attempt = attempts.popleft()
        try:
            return await invoke()
        except Exception as error:
            decision = classify(error, attempt=attempt, policy=policy)
            if on_failure is not None:
                on_failure(attempt + 1, policy.max_attempts, error, decision)
            if not decision.retryable:
                logger.info(
                    "%s failed with non-retryable %s error: %s",
                    operation_name, decision.error_kind.value, error,
                )
                raise
            if not attempts:
                logger.warning(
                    "%s exhausted all %d retries. Final error: %s",
                    operation_name, policy.max_retries, error,
                )
                raise
            if decision.error_kind is ErrorKind.UNKNOWN:
                logger.info(
                    "%s raised an unrecognized error, retrying: %.100s",
                    operation_name, error,
                )
            logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
                operation_name, attempt + 1, policy.max_attempts, error,
                decision.wait_seconds,
            )
            if decision.wait_seconds > 0:
                await sleep(decision.wait_seconds)

    raise RuntimeError(f"{operation_name} retry queue exhausted without attempts")
