"""Abstract model interface and conversation data model.

All model providers implement this interface, providing a unified
API for tool-calling completions over a linear conversation of
``ConversationEntry`` turns.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from realm.exceptions import ModelError

Role = Literal["user", "model"]


@dataclass
class TextPart:
    """Plain text content of a turn."""

    text: str

    def to_dict(self) -> dict:
        return {"text": self.text}


@dataclass
class ToolCallPart:
    """A tool invocation requested by the model.

    ``continuation_token`` is opaque provider data (a thought signature)
    that must travel unmodified to the paired ``ToolResultPart``.
    """

    name: str
    args: dict = field(default_factory=dict)
    continuation_token: str | None = None
    id: str = ""

    def to_dict(self) -> dict:
        call: dict[str, Any] = {"name": self.name, "args": self.args}
        if self.id:
            call["id"] = self.id
        payload: dict[str, Any] = {"functionCall": call}
        if self.continuation_token:
            payload["thoughtSignature"] = self.continuation_token
        return payload


@dataclass
class ToolResultPart:
    """The result of executing one ``ToolCallPart``."""

    name: str
    result: str
    continuation_token: str | None = None
    id: str = ""

    def to_dict(self) -> dict:
        response: dict[str, Any] = {
            "name": self.name,
            "response": {"result": self.result},
        }
        if self.id:
            response["id"] = self.id
        payload: dict[str, Any] = {"functionResponse": response}
        if self.continuation_token:
            payload["thoughtSignature"] = self.continuation_token
        return payload


Part = TextPart | ToolCallPart | ToolResultPart


def part_from_dict(data: dict) -> Part:
    """Rebuild a part from its canonical dict form."""
    token = data.get("thoughtSignature")
    if "functionCall" in data:
        call = data["functionCall"] or {}
        return ToolCallPart(
            name=str(call.get("name", "")),
            args=dict(call.get("args") or {}),
            continuation_token=token,
            id=str(call.get("id", "") or ""),
        )
    if "functionResponse" in data:
        response = data["functionResponse"] or {}
        body = response.get("response") or {}
        result = body.get("result", "") if isinstance(body, dict) else body
        return ToolResultPart(
            name=str(response.get("name", "")),
            result=str(result),
            continuation_token=token,
            id=str(response.get("id", "") or ""),
        )
    return TextPart(text=str(data.get("text", "")))


@dataclass
class ConversationEntry:
    """One turn of the conversation."""

    role: Role
    parts: list[Part] = field(default_factory=list)

    @classmethod
    def user_text(cls, text: str) -> ConversationEntry:
        return cls(role="user", parts=[TextPart(text)])

    @classmethod
    def model_text(cls, text: str) -> ConversationEntry:
        return cls(role="model", parts=[TextPart(text)])

    def has_tool_calls(self) -> bool:
        return any(isinstance(p, ToolCallPart) for p in self.parts)

    def has_tool_results(self) -> bool:
        return any(isinstance(p, ToolResultPart) for p in self.parts)

    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    def to_dict(self) -> dict:
        return {"role": self.role, "parts": [p.to_dict() for p in self.parts]}

    @classmethod
    def from_dict(cls, data: dict) -> ConversationEntry:
        role = data.get("role", "user")
        if role not in ("user", "model"):
            raise ValueError(f"Unknown conversation role: {role!r}")
        return cls(
            role=role,
            parts=[part_from_dict(p) for p in data.get("parts", []) if isinstance(p, dict)],
        )


Conversation = list[ConversationEntry]


@dataclass
class ToolCall:
    """A parsed tool call from a model response."""

    id: str
    name: str
    arguments: dict
    continuation_token: str | None = None

    def to_part(self) -> ToolCallPart:
        return ToolCallPart(
            name=self.name,
            args=self.arguments,
            continuation_token=self.continuation_token,
            id=self.id,
        )


@dataclass
class TokenUsage:
    """Token usage statistics for a model response."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass
class ModelResponse:
    """Structured response from a model call."""

    text: str = ""
    tool_calls: list[ToolCall] | None = None
    raw: str | dict = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    latency_ms: int = 0

    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass(frozen=True)
class ToolDefinition:
    """Declarative tool description consumed by the provider."""

    name: str
    description: str
    parameters: dict

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ModelProvider(ABC):
    """Abstract base class for all model providers."""

    @abstractmethod
    async def generate(
        self,
        conversation: Conversation,
        *,
        tools: list[ToolDefinition] | None = None,
        system_instruction: str | None = None,
        model: str | None = None,
    ) -> ModelResponse:
        """Send the conversation and return the model's next turn.

        Continuation tokens on tool calls must be returned untouched.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the model is available and responding."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Default model name used when a call does not specify one."""
        ...


class ModelConnectionError(ModelError):
    """Raised when a model API call fails due to network or server issues.

    Wraps the underlying httpx/transport error and keeps the structured
    ``status_code`` and vendor ``code`` so the retry classifier can read them.
    """

    def __init__(
        self,
        message: str,
        original: BaseException | None = None,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message, original)
        self.status_code = status_code
        self.code = code
