"""Tool executor framework and completion gate.

Each agent role owns one ``ToolExecutor``. It declares its tools as
``ToolSpec`` entries, validates the model's arguments against each
tool's JSON schema, and dispatches to a synchronous handler that reads
source data or writes to the executor's ``ExternalState``.

One tool per role is the completion tool. It runs the role's
``check_completion()`` checklist, which returns a ``GateResult``:
``complete`` renders the role's success sentinel, ``blocked`` renders
guidance telling the model exactly what is missing. The checklist only
reads state, so a blocked attempt never commits anything.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from realm.exceptions import StateError, ToolError
from realm.models.base import ToolDefinition
from realm.state.external import ExternalState, InMemoryState

logger = logging.getLogger(__name__)


class ToolArgumentError(ToolError):
    """Arguments did not match the tool's parameter schema."""


def object_schema(properties: dict[str, dict] | None = None, required: list[str] | None = None) -> dict:
    return {
        "type": "object",
        "properties": properties or {},
        "required": required or [],
    }


def string_param(description: str) -> dict:
    return {"type": "string", "description": description}


def _coerce(name: str, expected: str | None, value: Any) -> Any:
    if expected is None:
        return value
    if expected == "string":
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    elif expected == "boolean":
        if isinstance(value, bool):
            return value
    elif expected == "integer":
        if isinstance(value, bool):
            pass
        elif isinstance(value, int):
            return value
        elif isinstance(value, float) and value.is_integer():
            return int(value)
    elif expected == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    elif expected == "array":
        if isinstance(value, list):
            return value
    elif expected == "object":
        if isinstance(value, dict):
            return value
    raise ToolArgumentError(
        f"'{name}' must be {expected}, got {type(value).__name__}"
    )


def validate_arguments(schema: dict, args: dict | None) -> dict:
    """Check ``args`` against an object schema and return the accepted subset.

    Required keys must be present and non-null. Declared primitive types
    are enforced, with lossless coercions (a whole float for an integer, a
    number for a string). Keys the schema does not declare are dropped.
    """
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise ToolArgumentError(f"arguments must be an object, got {type(args).__name__}")

    properties: dict[str, dict] = schema.get("properties", {}) or {}
    missing = [
        key for key in schema.get("required", []) or []
        if args.get(key) is None
    ]
    if missing:
        raise ToolArgumentError(f"missing required argument(s): {', '.join(missing)}")

    accepted: dict[str, Any] = {}
    for key, prop in properties.items():
        if key not in args or args[key] is None:
            continue
        value = _coerce(key, prop.get("type"), args[key])
        item_type = (prop.get("items") or {}).get("type")
        if prop.get("type") == "array" and item_type:
            value = [_coerce(f"{key}[{i}]", item_type, v) for i, v in enumerate(value)]
        accepted[key] = value
    return accepted


@dataclass(frozen=True)
class ToolSpec:
    """A tool the model may call: declaration plus handler."""

    name: str
    description: str
    handler: Callable[..., str]
    parameters: dict = field(default_factory=object_schema)

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


@dataclass(frozen=True)
class GateResult:
    """Outcome of a completion check. Either complete or blocked, never both."""

    completed: bool
    summary: str = ""
    payload: str = ""
    status: str = ""
    signal: str = ""
    reasons: tuple[str, ...] = ()

    @classmethod
    def complete(
        cls,
        summary: str,
        payload: str,
        status: str = "",
        *,
        signal: str,
    ) -> GateResult:
        return cls(
            completed=True,
            summary=summary,
            payload=payload,
            status=status,
            signal=signal,
        )

    @classmethod
    def blocked(cls, reasons: list[str]) -> GateResult:
        if not reasons:
            raise ValueError("A blocked gate needs at least one reason")
        return cls(completed=False, reasons=tuple(reasons))

    def render_guidance(self, heading: str = "Cannot complete yet", footer: str = "") -> str:
        lines = [f"# {heading}", "", "The following requirements are not met:", ""]
        lines.extend(f"{i}. {reason}" for i, reason in enumerate(self.reasons, 1))
        if footer:
            lines.extend(["", footer])
        return "\n".join(lines)


class ToolExecutor(ABC):
    """Dispatches one role's tools against its external state.

    Subclasses declare ``role``, ``completion_tool`` and
    ``sentinel_prefix``, list their tools in ``tool_specs()`` and
    implement the gate and the payload builder.
    """

    role: ClassVar[str] = ""
    completion_tool: ClassVar[str] = ""
    sentinel_prefix: ClassVar[str] = ""

    def __init__(self, state: ExternalState | None = None) -> None:
        self.state: ExternalState = state if state is not None else InMemoryState()
        self._completion: GateResult | None = None
        self._tools: dict[str, ToolSpec] = {}
        for spec in self.tool_specs():
            if spec.name in self._tools:
                raise ValueError(f"Tool already registered: {spec.name}")
            self._tools[spec.name] = spec
        if self.completion_tool not in self._tools:
            raise ValueError(
                f"{type(self).__name__} does not register its completion tool "
                f"{self.completion_tool!r}"
            )

    @abstractmethod
    def tool_specs(self) -> list[ToolSpec]:
        ...

    @abstractmethod
    def check_completion(self, args: dict) -> GateResult:
        """Evaluate the role's checklist. Must not write to state."""
        ...

    @abstractmethod
    def finalize(self) -> str:
        """Serialize whatever state exists into the role's payload."""
        ...

    def external_state_summary(self) -> str:
        """Text shown to the summarizer so it need not re-derive stored work."""
        return self.state.summarize()

    def render_blocked(self, gate: GateResult) -> str:
        return gate.render_guidance(
            footer=f"Address these issues before calling {self.completion_tool}() again.",
        )

    # --- Dispatch ---

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[ToolDefinition]:
        return [spec.definition() for spec in self._tools.values()]

    @property
    def completion(self) -> GateResult | None:
        """The accepted completion, once the gate has passed."""
        return self._completion

    def is_completion_signal(self, result: str) -> bool:
        return bool(self.sentinel_prefix) and result.startswith(self.sentinel_prefix)

    def execute(self, name: str, args: dict | None = None) -> str:
        """Run one tool and return its result text. Never raises."""
        spec = self._tools.get(name)
        if spec is None:
            logger.warning("%s: model requested unknown tool %s", self.role, name)
            return f"Unknown tool: {name}"
        try:
            accepted = validate_arguments(spec.parameters, args)
        except ToolArgumentError as e:
            return f"Error: {e}"
        try:
            return spec.handler(**accepted)
        except (ToolError, StateError) as e:
            return f"Error: {e}"
        except Exception as e:
            logger.warning(
                "%s: tool %s raised %s: %s", self.role, name, type(e).__name__, e,
                exc_info=True,
            )
            return f"Tool error: {type(e).__name__}: {e}"

    def complete(self, **args: Any) -> str:
        """Handler for the completion tool."""
        gate = self.check_completion(args)
        if not gate.completed:
            logger.info(
                "%s: completion blocked (%d unmet requirement(s))",
                self.role, len(gate.reasons),
            )
            return self.render_blocked(gate)
        self._completion = gate
        logger.info("%s: completion accepted: %s", self.role, gate.summary[:200])
        return gate.signal
