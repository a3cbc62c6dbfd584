"""Agentic tool-use loop.

Owns one run's conversation: compresses it when needed, calls the model
under a bounded retry budget, dispatches tool calls to the role's
executor and feeds the results back until the completion gate passes or
a budget runs out.

Progress goes to the event bus. The terminal ``RunResult`` is returned.
Only a fatal model error escapes ``run()``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from realm.config import CompressionConfig, LoopConfig
from realm.engine.compression import ConversationCompressor
from realm.events.bus import Event, EventBus
from realm.events.types import (
    COMPLETION_BLOCKED,
    CYCLE_FAILED,
    CYCLE_STARTED,
    MODEL_INVOCATION,
    MODEL_RETRYING,
    MODEL_TEXT,
    NUDGE_APPENDED,
    RUN_COMPLETED,
    RUN_EXHAUSTED,
    RUN_FAILED,
    RUN_STARTED,
    TOOL_CALL_COMPLETED,
    TOOL_CALL_STARTED,
)
from realm.exceptions import FatalModelError
from realm.models.base import (
    Conversation,
    ConversationEntry,
    ModelProvider,
    ModelResponse,
    TokenUsage,
    ToolCall,
    ToolResultPart,
)
from realm.models.retry import RetryDecision, RetryPolicy, call_with_retry
from realm.observability import ObservabilityHook, safe_end_span, safe_start_span
from realm.tools.base import ToolExecutor

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "Continuing..."
DEFAULT_NUDGE = "Continue. Use the available tools, or call the completion tool when done."
DEFAULT_ERROR_NUDGE = "There was an error. Continue using the available tools."


class LoopState(StrEnum):
    RUNNING = "running"
    CALLING_MODEL = "calling_model"
    EXECUTING_TOOLS = "executing_tools"
    NUDGING = "nudging"
    DONE = "done"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.FAILED, LoopState.EXHAUSTED})


@dataclass
class RunResult:
    """Terminal outcome of one run.

    Every terminal state carries a payload. Only ``DONE`` is a clean
    success; ``FAILED`` and ``EXHAUSTED`` carry the partial state.
    """

    state: LoopState
    payload: str = ""
    summary: str = ""
    status_tag: str = ""
    iterations: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    compressions: int = 0
    error: str = ""
    run_id: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state is LoopState.DONE


class AgenticLoop:
    """Drives one executor to completion against a model provider.

    A loop instance may be run more than once; each ``run()`` gets a
    fresh conversation and compressor. The executor's external state is
    reused, so build a new executor per run.
    """

    def __init__(
        self,
        provider: ModelProvider,
        executor: ToolExecutor,
        *,
        config: LoopConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        compression: CompressionConfig | None = None,
        nudge: str = DEFAULT_NUDGE,
        error_nudge: str = DEFAULT_ERROR_NUDGE,
        compression_prompt: str = "",
        acknowledgement: str = "",
        model: str | None = None,
        summary_model: str | None = None,
        event_bus: EventBus | None = None,
        observability: ObservabilityHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._provider = provider
        self._executor = executor
        self._config = config or LoopConfig()
        self._retry_policy = retry_policy or RetryPolicy()
        self._compression = compression or CompressionConfig()
        self._nudge = nudge
        self._error_nudge = error_nudge
        self._compression_prompt = compression_prompt
        self._acknowledgement = acknowledgement
        self._model = model
        self._summary_model = summary_model
        self._event_bus = event_bus
        self._observability = observability
        self._sleep = sleep
        self._run_id = ""
        self.state = LoopState.RUNNING
        self.conversation: Conversation = []

    @property
    def role(self) -> str:
        return self._executor.role or type(self._executor).__name__

    async def run(self, seed: str, *, run_id: str = "") -> RunResult:
        """Run until completion, failure ceiling or iteration budget.

        Raises ``FatalModelError`` when the model call fails in a way
        retrying cannot fix. Every other outcome is a ``RunResult``.
        """
        self._run_id = run_id or uuid.uuid4().hex[:12]
        self.state = LoopState.RUNNING
        self.conversation = [ConversationEntry.user_text(seed)]
        compressor = ConversationCompressor(
            self._provider,
            self._compression,
            system_prompt=self._compression_prompt,
            acknowledgement=self._acknowledgement,
            model=self._summary_model,
            event_bus=self._event_bus,
            run_id=self._run_id,
            label=self.role,
            observability=self._observability,
        )
        max_iterations = self._config.max_iterations
        max_failures = self._config.max_consecutive_failures
        usage = TokenUsage()
        consecutive_failures = 0
        last_error = ""
        iteration = 0

        logger.info(
            "Starting %s run %s (max %d iterations)", self.role, self._run_id, max_iterations,
        )
        self._emit(RUN_STARTED, {
            "role": self.role,
            "max_iterations": max_iterations,
            "tools": self._executor.tool_names,
        })

        while iteration < max_iterations:
            iteration += 1
            self.state = LoopState.RUNNING

            if iteration > 1 and self._config.inter_call_delay_seconds > 0:
                await self._sleep(self._config.inter_call_delay_seconds)

            self._emit(CYCLE_STARTED, {
                "iteration": iteration,
                "max_iterations": max_iterations,
                "entries": len(self.conversation),
            })

            compression = await compressor.compress_if_needed(
                self.conversation, self._executor.external_state_summary(),
            )
            if compression.compressed:
                self.conversation = compression.conversation

            self.state = LoopState.CALLING_MODEL
            decisions: list[RetryDecision] = []
            try:
                response = await self._call_model(iteration, decisions)
            except Exception as e:
                if decisions and not decisions[-1].retryable:
                    self.state = LoopState.FAILED
                    logger.error(
                        "%s run %s hit a fatal %s error: %s",
                        self.role, self._run_id, decisions[-1].error_kind.value, e,
                    )
                    self._emit(RUN_FAILED, {
                        "iteration": iteration,
                        "fatal": True,
                        "error": str(e),
                        "error_kind": decisions[-1].error_kind.value,
                    })
                    raise FatalModelError(
                        str(e), e, partial_payload=self._executor.finalize(),
                    ) from e

                consecutive_failures += 1
                last_error = str(e)
                logger.warning(
                    "%s cycle %d failed (%d/%d consecutive): %s",
                    self.role, iteration, consecutive_failures, max_failures, e,
                )
                self._emit(CYCLE_FAILED, {
                    "iteration": iteration,
                    "consecutive_failures": consecutive_failures,
                    "error": last_error,
                })
                if consecutive_failures >= max_failures:
                    logger.warning(
                        "Too many consecutive failures for %s, finalizing with partial state",
                        self.role,
                    )
                    return self._finish(
                        LoopState.FAILED, iteration, usage, compressor, error=last_error,
                    )
                self.conversation.append(ConversationEntry.user_text(self._error_nudge))
                continue

            consecutive_failures = 0
            usage = usage + response.usage

            if response.has_tool_calls():
                self.state = LoopState.EXECUTING_TOOLS
                if self._dispatch(response.tool_calls or [], iteration):
                    return self._finish(LoopState.DONE, iteration, usage, compressor)
            else:
                self.state = LoopState.NUDGING
                text = response.text.strip() or EMPTY_RESPONSE_TEXT
                self.conversation.append(ConversationEntry.model_text(text))
                self._emit(MODEL_TEXT, {"iteration": iteration, "text": text[:300]})
                self.conversation.append(ConversationEntry.user_text(self._nudge))
                self._emit(NUDGE_APPENDED, {"iteration": iteration})

        logger.info(
            "%s reached max iterations (%d), finalizing with partial state",
            self.role, max_iterations,
        )
        return self._finish(
            LoopState.EXHAUSTED, iteration, usage, compressor, error=last_error,
        )

    async def _call_model(
        self, iteration: int, decisions: list[RetryDecision],
    ) -> ModelResponse:
        tools = self._executor.tool_definitions()
        conversation = list(self.conversation)

        def on_failure(
            attempt: int, max_attempts: int, error: BaseException, decision: RetryDecision,
        ) -> None:
            decisions.append(decision)
            if decision.retryable and attempt < max_attempts:
                self._emit(MODEL_RETRYING, {
                    "iteration": iteration,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": str(error),
                    "error_kind": decision.error_kind.value,
                    "wait_seconds": decision.wait_seconds,
                })

        async def invoke() -> ModelResponse:
            span_id = f"{self.role}-cycle-{iteration}-{uuid.uuid4().hex[:6]}"
            safe_start_span(self._observability, span_id, {
                "run_id": self._run_id,
                "role": self.role,
                "iteration": iteration,
                "model": self._model or self._provider.name,
                "entries": len(conversation),
            })
            self._emit(MODEL_INVOCATION, {"iteration": iteration, "phase": "start"})
            try:
                response = await self._provider.generate(
                    conversation, tools=tools, model=self._model,
                )
            except Exception as e:
                safe_end_span(self._observability, span_id, error=e)
                raise
            safe_end_span(self._observability, span_id, usage=response.usage)
            self._emit(MODEL_INVOCATION, {
                "iteration": iteration,
                "phase": "done",
                "tool_calls": len(response.tool_calls or []),
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            })
            return response

        return await call_with_retry(
            invoke,
            policy=self._retry_policy,
            operation_name=f"{self.role}.generate",
            on_failure=on_failure,
            sleep=self._sleep,
        )

    def _dispatch(self, tool_calls: list[ToolCall], iteration: int) -> bool:
        """Execute calls in order. Returns True when the gate accepted completion."""
        call_parts = []
        result_parts = []
        for index, call in enumerate(tool_calls):
            self._emit(TOOL_CALL_STARTED, {
                "iteration": iteration,
                "tool": call.name,
                "args": call.arguments,
            })
            result = self._executor.execute(call.name, call.arguments)

            if (
                self._executor.completion is not None
                and self._executor.is_completion_signal(result)
            ):
                skipped = len(tool_calls) - index - 1
                if skipped:
                    logger.info(
                        "%s completed; skipping %d tool call(s) after %s",
                        self.role, skipped, call.name,
                    )
                return True

            if call.name == self._executor.completion_tool:
                self._emit(COMPLETION_BLOCKED, {
                    "iteration": iteration,
                    "reasons": result[:500],
                })
            self._emit(TOOL_CALL_COMPLETED, {
                "iteration": iteration,
                "tool": call.name,
                "result": result[:500] + ("..." if len(result) > 500 else ""),
            })
            call_parts.append(call.to_part())
            result_parts.append(ToolResultPart(
                name=call.name,
                result=result,
                continuation_token=call.continuation_token,
                id=call.id,
            ))

        self.conversation.append(ConversationEntry(role="model", parts=call_parts))
        self.conversation.append(ConversationEntry(role="user", parts=result_parts))
        return False

    def _finish(
        self,
        state: LoopState,
        iterations: int,
        usage: TokenUsage,
        compressor: ConversationCompressor,
        *,
        error: str = "",
    ) -> RunResult:
        self.state = state
        if state is LoopState.DONE and self._executor.completion is not None:
            gate = self._executor.completion
            result = RunResult(
                state=state,
                payload=gate.payload,
                summary=gate.summary,
                status_tag=gate.status,
            )
        else:
            result = RunResult(
                state=state,
                payload=self._executor.finalize(),
                summary=f"{self.role} stopped after {iterations} iteration(s): {state.value}",
                status_tag="partial",
                error=error,
            )
        result.iterations = iterations
        result.usage = usage
        result.compressions = compressor.compressions
        result.run_id = self._run_id

        event_type = {
            LoopState.DONE: RUN_COMPLETED,
            LoopState.FAILED: RUN_FAILED,
            LoopState.EXHAUSTED: RUN_EXHAUSTED,
        }[state]
        self._emit(event_type, {
            "state": state.value,
            "iterations": iterations,
            "payload_chars": len(result.payload),
            "status": result.status_tag,
            "summary": result.summary[:300],
            "error": error,
        })
        logger.info(
            "%s run %s finished: %s after %d iteration(s), %d chars",
            self.role, self._run_id, state.value, iterations, len(result.payload),
        )
        return result

    def _emit(self, event_type: str, data: dict) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(Event(
            event_type=event_type,
            run_id=self._run_id,
            data={"role": self.role, **data},
        ))
