"""Role wiring: build an executor, its seed prompt and a loop for one role.

Hosts call ``run_role`` with the role's inputs. Each call gets a fresh
executor, conversation and compressor.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from realm.config import ROLE_NAMES, Config
from realm.engine.loop import AgenticLoop, RunResult
from realm.events.bus import EventBus
from realm.exceptions import ConfigError, ValidationError
from realm.models.base import ModelProvider
from realm.models.retry import RetryPolicy
from realm.observability import ObservabilityHook
from realm.prompts.library import PromptLibrary
from realm.state.external import ExternalState
from realm.tools.analyst import AnalystToolExecutor
from realm.tools.base import ToolExecutor
from realm.tools.renderer import RendererToolExecutor
from realm.tools.structurer import StructurerToolExecutor
from realm.tools.validator import ValidatorToolExecutor

logger = logging.getLogger(__name__)

DEFAULT_HTML_TEMPLATE = Path(__file__).parent / "prompts" / "templates" / "report.html"


@dataclass
class RoleInputs:
    """Everything a role may read. Each role uses a subset.

    analyst: ``source_text``. validator: ``source_text`` and
    ``structured_json``. structurer: ``source_text``, ``analysis`` and
    ``research``. renderer: ``structured_json`` and ``html_template``.
    """

    source_text: str = ""
    analysis: str = ""
    research: str = ""
    structured_json: str = ""
    html_template: str = ""
    organ_insights: str = ""
    patient_question: str | None = None
    feedback: str = ""
    report_date: str | None = None


def _parse_document(text: str) -> dict:
    try:
        data = json.loads(text) if text.strip() else {}
    except json.JSONDecodeError as e:
        raise ValidationError(f"Structured JSON does not parse: {e}", e) from e
    if not isinstance(data, dict):
        raise ValidationError("Structured JSON must be an object at the top level")
    return data


def build_executor(
    role: str,
    inputs: RoleInputs,
    state: ExternalState | None = None,
) -> ToolExecutor:
    if role == "analyst":
        return AnalystToolExecutor(inputs.source_text, state=state)
    if role == "validator":
        return ValidatorToolExecutor(inputs.source_text, inputs.structured_json, state=state)
    if role == "structurer":
        return StructurerToolExecutor(inputs.source_text, state=state)
    if role == "renderer":
        template = inputs.html_template or DEFAULT_HTML_TEMPLATE.read_text(encoding="utf-8")
        return RendererToolExecutor(
            _parse_document(inputs.structured_json),
            template,
            organ_insights=inputs.organ_insights,
            report_date=inputs.report_date,
            state=state,
        )
    raise ConfigError(f"Unknown role {role!r}; expected one of {', '.join(ROLE_NAMES)}")


def seed_values(role: str, executor: ToolExecutor, inputs: RoleInputs) -> dict[str, str]:
    """Placeholder values for the role's seed template."""
    if isinstance(executor, AnalystToolExecutor):
        return {
            "document_count": str(len(executor.source.document_names)),
            "section_count": str(executor.source.total_sections),
        }
    if isinstance(executor, ValidatorToolExecutor):
        return {
            "document_count": str(len(executor.source.document_names)),
            "json_sections": ", ".join(executor.document) or "(none)",
        }
    if isinstance(executor, StructurerToolExecutor):
        return {
            "analysis": inputs.analysis or "(no analysis provided)",
            "research": inputs.research or "(no research findings)",
        }
    if isinstance(executor, RendererToolExecutor):
        return {"section_summary": executor.section_summary()}
    return {}


def build_loop(
    role: str,
    executor: ToolExecutor,
    *,
    provider: ModelProvider,
    config: Config,
    prompts: PromptLibrary,
    event_bus: EventBus | None = None,
    observability: ObservabilityHook | None = None,
) -> AgenticLoop:
    return AgenticLoop(
        provider,
        executor,
        config=config.loop_for(role),
        retry_policy=RetryPolicy.from_config(config.retry),
        compression=config.compression,
        nudge=prompts.nudge(role),
        error_nudge=prompts.error_nudge(role),
        compression_prompt=prompts.compression(role),
        acknowledgement=prompts.acknowledgement(role),
        model=config.model_for(role),
        summary_model=config.model.summary_model,
        event_bus=event_bus,
        observability=observability,
    )


async def run_role(
    role: str,
    inputs: RoleInputs,
    *,
    provider: ModelProvider,
    config: Config,
    prompts: PromptLibrary | None = None,
    event_bus: EventBus | None = None,
    observability: ObservabilityHook | None = None,
    state: ExternalState | None = None,
    run_id: str = "",
) -> RunResult:
    """Run one role end to end and return its terminal result."""
    prompts = prompts or PromptLibrary()
    executor = build_executor(role, inputs, state)
    seed = prompts.seed(
        role,
        values=seed_values(role, executor, inputs),
        patient_question=inputs.patient_question,
        feedback=inputs.feedback,
    )
    loop = build_loop(
        role,
        executor,
        provider=provider,
        config=config,
        prompts=prompts,
        event_bus=event_bus,
        observability=observability,
    )
    logger.info("Running %s with %d tools", role, len(executor.tool_names))
    return await loop.run(seed, run_id=run_id)
