"""Per-role prompt templates.

Each role has a YAML file under ``templates/`` with the keys ``system``,
``seed``, ``nudge``, ``error_nudge``, ``compression`` and
``acknowledgement``. Values are filled by plain ``{{name}}`` string
substitution; ``{{#if patient_question}}...{{/if}}`` blocks are kept
only when a patient question is supplied.
"""

from __future__ import annotations

import re
from pathlib import Path

import yaml

from realm.exceptions import ConfigError

TEMPLATE_KEYS = ("system", "seed", "nudge", "error_nudge", "compression", "acknowledgement")

_PATIENT_BLOCK = re.compile(r"\{\{#if patient_question\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{([a-z_]+)\}\}")


def apply_patient_context(prompt: str, patient_question: str | None = None) -> str:
    """Keep or drop ``{{#if patient_question}}`` blocks and fill the question."""
    if patient_question:
        prompt = _PATIENT_BLOCK.sub(lambda m: m.group(1), prompt)
        return prompt.replace("{{patient_question}}", patient_question)
    return _PATIENT_BLOCK.sub("", prompt)


def fill(template: str, values: dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""
    return _PLACEHOLDER.sub(
        lambda m: str(values[m.group(1)]) if m.group(1) in values else m.group(0),
        template,
    )


class PromptLibrary:
    """Loads role templates from YAML and renders them."""

    SECTION_SEPARATOR = "\n\n---\n\n"

    def __init__(self, templates_dir: Path | None = None):
        if templates_dir is None:
            templates_dir = Path(__file__).parent / "templates"
        self._templates_dir = templates_dir
        self._templates: dict[str, dict] = {}
        self._load_templates()

    def _load_templates(self) -> None:
        if not self._templates_dir.exists():
            return
        for yaml_file in sorted(self._templates_dir.glob("*.yaml")):
            try:
                with open(yaml_file, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid prompt template {yaml_file}: {e}") from e
            missing = [key for key in TEMPLATE_KEYS if key not in data]
            if missing:
                raise ConfigError(
                    f"Prompt template {yaml_file.name} is missing: {', '.join(missing)}"
                )
            self._templates[yaml_file.stem] = data

    @property
    def roles(self) -> list[str]:
        return sorted(self._templates)

    def get_template(self, role: str) -> dict:
        if role not in self._templates:
            raise KeyError(f"Template not found: {role}")
        return self._templates[role]

    def _text(self, role: str, key: str) -> str:
        return str(self.get_template(role).get(key, "")).strip()

    def seed(
        self,
        role: str,
        *,
        values: dict[str, str] | None = None,
        patient_question: str | None = None,
        feedback: str = "",
    ) -> str:
        """First user turn: role instructions, optional feedback, then the task."""
        parts = [self._text(role, "system")]
        if feedback.strip():
            parts.append(
                "## IMPORTANT - Previous Attempt Was Incomplete. Address These Issues:\n"
                + feedback.strip()
            )
        parts.append(self._text(role, "seed"))
        prompt = self.SECTION_SEPARATOR.join(p for p in parts if p)
        prompt = apply_patient_context(prompt, patient_question)
        return fill(prompt, values or {})

    def nudge(self, role: str) -> str:
        return self._text(role, "nudge")

    def error_nudge(self, role: str) -> str:
        return self._text(role, "error_nudge")

    def compression(self, role: str) -> str:
        return self._text(role, "compression")

    def acknowledgement(self, role: str) -> str:
        return self._text(role, "acknowledgement")
