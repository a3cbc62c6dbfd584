"""Tests for observability hooks."""

from __future__ import annotations

import logging

from realm.models.base import TokenUsage
from realm.observability import (
    LoggingObservability,
    NoopObservability,
    safe_end_span,
    safe_start_span,
)


class ExplodingHook:
    def start_span(self, span_id, meta):
        raise RuntimeError("start")

    def end_span(self, span_id, *, usage=None, error=None):
        raise RuntimeError("end")


class TestSafeSpans:
    def test_none_hook(self):
        safe_start_span(None, "s1", {})
        safe_end_span(None, "s1")

    def test_exceptions_are_swallowed(self):
        hook = ExplodingHook()
        safe_start_span(hook, "s1", {"model": "m"})
        safe_end_span(hook, "s1", error=ValueError("x"))

    def test_noop(self):
        hook = NoopObservability()
        assert hook.start_span("s1", {}) is None
        assert hook.end_span("s1", usage=TokenUsage()) is None


class TestLoggingObservability:
    def test_logs_usage(self, caplog):
        hook = LoggingObservability()
        with caplog.at_level(logging.INFO, logger="realm.observability"):
            hook.start_span("s1", {"model": "gemini-2.5-pro"})
            hook.end_span("s1", usage=TokenUsage(120, 30, 150))
        assert "prompt=120 output=30 total=150" in caplog.text
        assert "gemini-2.5-pro" in caplog.text

    def test_logs_error(self, caplog):
        hook = LoggingObservability()
        with caplog.at_level(logging.WARNING, logger="realm.observability"):
            hook.start_span("s2", {"model": "m"})
            hook.end_span("s2", error=RuntimeError("429 rate limit"))
        assert "span s2 failed" in caplog.text
        assert "429 rate limit" in caplog.text

    def test_end_without_start(self, caplog):
        hook = LoggingObservability()
        with caplog.at_level(logging.INFO, logger="realm.observability"):
            hook.end_span("unknown")
        assert "span unknown done" in caplog.text
