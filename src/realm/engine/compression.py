"""Conversation compression.

When a conversation's estimated size crosses ``threshold * token_limit``,
the oldest part is replaced by a dense model-written snapshot. The newest
``preserve_fraction`` of the conversation is kept verbatim.

Compression is an optimization, not a correctness requirement. A failed
or non-shrinking attempt leaves the original conversation in place and
latches a per-instance flag so later cycles do not retry it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from realm.config import CompressionConfig
from realm.events.bus import Event, EventBus
from realm.events.types import COMPRESSION_APPLIED, COMPRESSION_SKIPPED
from realm.models.base import Conversation, ConversationEntry, ModelProvider
from realm.observability import ObservabilityHook, safe_end_span, safe_start_span
from realm.utils.tokens import estimate_tokens, serialize_entry

logger = logging.getLogger(__name__)

SNAPSHOT_INSTRUCTION = "First, reason in your scratchpad. Then, generate the <state_snapshot>."
DEFAULT_ACKNOWLEDGEMENT = (
    "Understood. I have the full context of the work so far. "
    "Continuing with the available tools."
)


def _is_safe_split(entry: ConversationEntry) -> bool:
    # Cutting before a user turn that answers tool calls would orphan them.
    return entry.role == "user" and not entry.has_tool_results()


def find_split_point(conversation: Conversation, compress_fraction: float) -> int:
    """Index ``i`` such that ``conversation[:i]`` may be compressed.

    Returns 0 when there is no safe place to cut, and
    ``len(conversation)`` when the whole conversation can go.
    """
    if not 0.0 < compress_fraction < 1.0:
        raise ValueError(f"compress_fraction must be within (0, 1), got {compress_fraction}")
    if not conversation:
        return 0

    lengths = [len(serialize_entry(entry)) for entry in conversation]
    target = sum(lengths) * compress_fraction

    last_safe = 0
    cumulative = 0
    for index, entry in enumerate(conversation):
        if _is_safe_split(entry):
            if cumulative >= target:
                return index
            last_safe = index
        cumulative += lengths[index]

    last = conversation[-1]
    if last.role == "model" and not last.has_tool_calls():
        return len(conversation)
    return last_safe


def build_instruction(state_summary: str) -> ConversationEntry:
    """The user turn appended after the prefix being summarized."""
    text = SNAPSHOT_INSTRUCTION
    if state_summary.strip():
        text = (
            "[EXTERNAL STATE - stored outside conversation history, "
            f"preserved automatically:\n{state_summary.strip()}]\n\n{SNAPSHOT_INSTRUCTION}"
        )
    return ConversationEntry.user_text(text)


@dataclass
class CompressionResult:
    """Outcome of one compression check.

    When ``compressed`` is true, ``new_tokens < original_tokens`` and
    ``conversation`` is the replacement. Otherwise ``conversation`` is
    the caller's original list.
    """

    compressed: bool
    conversation: Conversation = field(default_factory=list)
    original_tokens: int = 0
    new_tokens: int = 0
    split_index: int = 0
    reason: str = ""


class ConversationCompressor:
    """Summarizes old conversation prefixes for one agent run.

    Each run builds its own compressor; the sticky failure flag is never
    shared between runs.
    """

    def __init__(
        self,
        provider: ModelProvider,
        config: CompressionConfig | None = None,
        *,
        system_prompt: str = "",
        acknowledgement: str = DEFAULT_ACKNOWLEDGEMENT,
        model: str | None = None,
        event_bus: EventBus | None = None,
        run_id: str = "",
        label: str = "agent",
        observability: ObservabilityHook | None = None,
    ):
        self._provider = provider
        self._config = config or CompressionConfig()
        self._system_prompt = system_prompt
        self._acknowledgement = acknowledgement or DEFAULT_ACKNOWLEDGEMENT
        self._model = model
        self._event_bus = event_bus
        self._run_id = run_id
        self._label = label
        self._observability = observability
        self._failed = False
        self.compressions = 0

    @property
    def failed(self) -> bool:
        """True once an attempt has errored or failed to shrink."""
        return self._failed

    @property
    def trigger_tokens(self) -> float:
        return self._config.token_limit * self._config.threshold

    def needs_compression(self, conversation: Conversation) -> bool:
        return estimate_tokens(conversation) >= self.trigger_tokens

    async def compress_if_needed(
        self,
        conversation: Conversation,
        state_summary: str = "",
    ) -> CompressionResult:
        """Compress ``conversation`` when it is over the threshold.

        Never raises for summarizer failures; the original conversation
        comes back with ``compressed=False``.
        """
        original_tokens = estimate_tokens(conversation)

        if not self._config.enabled:
            return self._unchanged(conversation, original_tokens, "disabled", emit=False)
        if original_tokens < self.trigger_tokens:
            return self._unchanged(conversation, original_tokens, "under threshold", emit=False)
        if self._failed:
            return self._unchanged(conversation, original_tokens, "previous attempt failed")

        logger.info(
            "Compression triggered for %s: ~%d tokens >= %d threshold (%d entries)",
            self._label, original_tokens, int(self.trigger_tokens), len(conversation),
        )

        split_index = find_split_point(conversation, 1.0 - self._config.preserve_fraction)
        if split_index == 0:
            logger.info("No safe split point found for %s, skipping compression", self._label)
            return self._unchanged(conversation, original_tokens, "no safe split point")

        to_compress = conversation[:split_index]
        to_keep = conversation[split_index:]
        request = [*to_compress, build_instruction(state_summary)]

        span_id = f"compress-{uuid.uuid4().hex[:8]}"
        safe_start_span(self._observability, span_id, {
            "purpose": "compression",
            "label": self._label,
            "model": self._model or "",
            "entries": len(request),
        })
        try:
            response = await self._provider.generate(
                request,
                tools=None,
                system_instruction=self._system_prompt or None,
                model=self._model,
            )
        except Exception as e:
            safe_end_span(self._observability, span_id, error=e)
            self._failed = True
            logger.warning(
                "Compression failed for %s, continuing with full history: %s",
                self._label, e,
            )
            return self._unchanged(conversation, original_tokens, f"summarizer error: {e}")
        safe_end_span(self._observability, span_id, usage=response.usage)

        summary = (response.text or "").strip()
        if not summary:
            logger.warning("Empty compression response for %s, skipping", self._label)
            return self._unchanged(conversation, original_tokens, "empty summary")

        new_conversation: Conversation = [
            ConversationEntry.user_text(summary),
            ConversationEntry.model_text(self._acknowledgement),
            *to_keep,
        ]
        new_tokens = estimate_tokens(new_conversation)

        if new_tokens >= original_tokens:
            self._failed = True
            logger.warning(
                "Compressed history for %s is not smaller (%d >= %d), discarding",
                self._label, new_tokens, original_tokens,
            )
            result = self._unchanged(conversation, original_tokens, "did not shrink")
            result.new_tokens = new_tokens
            return result

        self.compressions += 1
        logger.info(
            "Compression for %s: %d -> %d tokens (%d entries compressed, %d kept)",
            self._label, original_tokens, new_tokens, len(to_compress), len(to_keep),
        )
        self._emit(COMPRESSION_APPLIED, {
            "original_tokens": original_tokens,
            "new_tokens": new_tokens,
            "entries_compressed": len(to_compress),
            "entries_kept": len(to_keep),
        })
        return CompressionResult(
            compressed=True,
            conversation=new_conversation,
            original_tokens=original_tokens,
            new_tokens=new_tokens,
            split_index=split_index,
        )

    def _unchanged(
        self,
        conversation: Conversation,
        tokens: int,
        reason: str,
        *,
        emit: bool = True,
    ) -> CompressionResult:
        if emit:
            self._emit(COMPRESSION_SKIPPED, {"reason": reason, "tokens": tokens})
        return CompressionResult(
            compressed=False,
            conversation=conversation,
            original_tokens=tokens,
            new_tokens=tokens,
            reason=reason,
        )

    def _emit(self, event_type: str, data: dict) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(Event(
            event_type=event_type,
            run_id=self._run_id,
            data={"label": self._label, **data},
        ))
