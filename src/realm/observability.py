"""Observability hook for model calls.

The loop calls ``start_span`` before and ``end_span`` after every model
call. Hooks are optional: a missing or failing hook never affects a run.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from realm.models.base import TokenUsage

logger = logging.getLogger(__name__)


class ObservabilityHook(Protocol):
    def start_span(self, span_id: str, meta: dict[str, Any]) -> None: ...

    def end_span(
        self,
        span_id: str,
        *,
        usage: TokenUsage | None = None,
        error: BaseException | None = None,
    ) -> None: ...


class NoopObservability:
    """Silent hook used when tracing is disabled."""

    def start_span(self, span_id: str, meta: dict[str, Any]) -> None:
        return None

    def end_span(
        self,
        span_id: str,
        *,
        usage: TokenUsage | None = None,
        error: BaseException | None = None,
    ) -> None:
        return None


class LoggingObservability:
    """Hook that records span latency and usage through ``logging``."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger
        self._started: dict[str, tuple[float, dict[str, Any]]] = {}

    def start_span(self, span_id: str, meta: dict[str, Any]) -> None:
        self._started[span_id] = (time.monotonic(), dict(meta))

    def end_span(
        self,
        span_id: str,
        *,
        usage: TokenUsage | None = None,
        error: BaseException | None = None,
    ) -> None:
        started_at, meta = self._started.pop(span_id, (time.monotonic(), {}))
        latency_ms = int((time.monotonic() - started_at) * 1000)
        if error is not None:
            self._log.warning(
                "span %s failed after %dms (%s): %s",
                span_id, latency_ms, meta.get("model", "?"), error,
            )
            return
        usage = usage or TokenUsage()
        self._log.info(
            "span %s done in %dms (%s): prompt=%d output=%d total=%d",
            span_id, latency_ms, meta.get("model", "?"),
            usage.input_tokens, usage.output_tokens, usage.total_tokens,
        )


def safe_start_span(
    hook: ObservabilityHook | None, span_id: str, meta: dict[str, Any],
) -> None:
    if hook is None:
        return
    try:
        hook.start_span(span_id, meta)
    except Exception as e:
        logger.debug("Observability start_span failed for %s: %s", span_id, e)


def safe_end_span(
    hook: ObservabilityHook | None,
    span_id: str,
    *,
    usage: TokenUsage | None = None,
    error: BaseException | None = None,
) -> None:
    if hook is None:
        return
    try:
        hook.end_span(span_id, usage=usage, error=error)
    except Exception as e:
        logger.debug("Observability end_span failed for %s: %s", span_id, e)
