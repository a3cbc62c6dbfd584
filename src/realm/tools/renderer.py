"""Renderer tools: render the structured JSON into an HTML template.

The template carries ``{{SECTION:NAME}}`` placeholders plus
``{{CHARTS_INIT}}``, ``{{REPORT_DATE}}`` and ``{{ADDITIONAL_CSS}}``.
Rendered HTML is held in external state (``section:<NAME>`` for object
sections, ``items:<NAME>`` for array sections, ``chart_js`` for chart
blocks) and only assembled into the template by ``finalize()``.

For the enforced array sections the gate requires exactly one rendered
item per source item.
"""

from __future__ import annotations

import json
import re
from datetime import date

from realm.state.external import ExternalState
from realm.tools.base import GateResult, ToolExecutor, ToolSpec, object_schema, string_param

# Template placeholder -> JSON field.
ENFORCED_ARRAY_SECTIONS = {
    "CRITICAL_FINDINGS": "criticalFindings",
    "TIMELINE": "timeline",
    "DIAGNOSES": "diagnoses",
    "TRENDS": "trends",
}

OTHER_ARRAY_SECTIONS = (
    "CONNECTIONS", "PATTERNS", "LIFESTYLE", "DOCTOR_QUESTIONS",
    "MONITORING", "POSITIVE_FINDINGS", "DATA_GAPS", "REFERENCES",
)

OBJECT_SECTIONS = (
    "EXECUTIVE_SUMMARY", "INTEGRATIVE_REASONING", "SYSTEMS_HEALTH",
    "ORGAN_HEALTH", "ACTION_PLAN", "SUPPLEMENT_SCHEDULE", "PROGNOSIS",
)

_LEFTOVER_PLACEHOLDER = re.compile(r"\{\{SECTION:[A-Z_]+\}\}")


class RendererToolExecutor(ToolExecutor):
    role = "renderer"
    completion_tool = "complete_rendering"
    sentinel_prefix = "RENDERING_COMPLETE|"

    def __init__(
        self,
        structured_data: dict,
        html_template: str,
        *,
        organ_insights: str = "",
        report_date: str | None = None,
        state: ExternalState | None = None,
    ) -> None:
        self.data = structured_data
        self.template = html_template
        self.organ_insights = organ_insights
        self.report_date = report_date or date.today().isoformat()
        super().__init__(state)

    def tool_specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                "get_render_progress",
                "See which sections are rendered and how many items per array section.",
                self.get_render_progress,
            ),
            ToolSpec(
                "get_section_data",
                'Get the JSON data for one field (e.g. "criticalFindings", "executiveSummary").',
                self.get_section_data,
                object_schema({"section": string_param("JSON field name")}, ["section"]),
            ),
            ToolSpec(
                "render_section",
                "Store rendered HTML for an object section, replacing any earlier version. "
                'The name matches the placeholder (e.g. "EXECUTIVE_SUMMARY").',
                self.render_section,
                object_schema(
                    {
                        "section": string_param("Template placeholder name"),
                        "html": string_param("Complete HTML for this section"),
                    },
                    ["section", "html"],
                ),
            ),
            ToolSpec(
                "render_items",
                "Append rendered HTML items to an array section, one string per JSON item. "
                "Batch 3-5 items per call and do not skip any.",
                self.render_items,
                object_schema(
                    {
                        "section": string_param('Array placeholder name (e.g. "TIMELINE")'),
                        "items": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Rendered HTML strings, one per JSON array item",
                        },
                    },
                    ["section", "items"],
                ),
            ),
            ToolSpec(
                "add_chart_js",
                "Add chart initialization JavaScript (no <script> tags). Blocks are concatenated.",
                self.add_chart_js,
                object_schema({"js": string_param("JavaScript code block")}, ["js"]),
            ),
            ToolSpec(
                "complete_rendering",
                "Signal that all sections are rendered. Blocked while any enforced array "
                "section has a rendered item count different from its JSON item count.",
                self.complete,
            ),
        ]

    # --- State accessors ---

    def rendered_items(self, section: str) -> list[str]:
        return list(self.state.get(f"items:{section}", []))

    def rendered_sections(self) -> dict[str, str]:
        return {
            key[len("section:"):]: value
            for key, value in self.state.items()
            if key.startswith("section:")
        }

    @property
    def chart_blocks(self) -> list[str]:
        return list(self.state.get("chart_js", []))

    def source_count(self, section: str) -> int:
        field = ENFORCED_ARRAY_SECTIONS.get(section)
        value = self.data.get(field) if field else None
        return len(value) if isinstance(value, list) else 0

    def section_summary(self) -> str:
        """Outline of the JSON fields for the seed prompt."""
        lines = ["Available JSON sections:"]
        for key, value in self.data.items():
            if isinstance(value, list):
                lines.append(f"- {key}: array with {len(value)} items")
            elif isinstance(value, dict):
                lines.append(f"- {key}: object")
            elif value is not None:
                lines.append(f"- {key}: {str(value)[:60]}")
        if self.organ_insights:
            lines.append('- organ_insights: markdown text (render as "ORGAN_HEALTH")')
        return "\n".join(lines)

    # --- Tools ---

    def get_render_progress(self) -> str:
        sections = self.rendered_sections()
        lines = ["# Render Progress", "", f"## Static Sections ({len(sections)} rendered)"]
        lines.extend(f"- {name}: done ({len(html) / 1024:.1f}KB)" for name, html in sections.items())

        lines.extend(["", "## Array Sections (enforced completeness)"])
        for placeholder, field in ENFORCED_ARRAY_SECTIONS.items():
            total = self.source_count(placeholder)
            rendered = len(self.rendered_items(placeholder))
            if total == 0:
                status = "- (no data)"
            elif rendered == total:
                status = "COMPLETE"
            elif rendered < total:
                status = f"{rendered}/{total} - {total - rendered} missing"
            else:
                status = f"{rendered}/{total} - {rendered - total} too many"
            lines.append(f"- {placeholder} ({field}): {status}")

        lines.extend(["", "## Other Array Sections (use render_items)"])
        lines.extend(
            f"- {p}: {len(self.rendered_items(p))} items rendered" for p in OTHER_ARRAY_SECTIONS
        )
        lines.extend(["", "## Object Sections (use render_section)"])
        lines.extend(
            f"- {p}: {'done' if p in sections else 'pending'}" for p in OBJECT_SECTIONS
        )
        lines.extend(["", f"## Chart JS: {len(self.chart_blocks)} block(s)"])
        return "\n".join(lines)

    def get_section_data(self, section: str) -> str:
        if not section.strip():
            return "Error: section is required."
        if section not in self.data:
            if section == "organ_insights" and self.organ_insights:
                return f"# organ_insights (markdown)\n\n{self.organ_insights}"
            return f'Field "{section}" not found in JSON.\nAvailable fields: {", ".join(self.data)}'
        return f"# {section}\n\n" + json.dumps(self.data[section], ensure_ascii=False, indent=2)

    def render_section(self, section: str, html: str) -> str:
        if not section.strip():
            return "Error: section is required."
        if not html:
            return "Error: html is required."
        self.state.put(f"section:{section}", html)
        return f"Stored {section} ({len(html) / 1024:.1f}KB)"

    def render_items(self, section: str, items: list[str]) -> str:
        if not section.strip():
            return "Error: section is required."
        total = self.state.append_to_array(f"items:{section}", items)
        if section in ENFORCED_ARRAY_SECTIONS:
            return (
                f"Stored {len(items)} item(s) for {section} "
                f"({total}/{self.source_count(section)} total)"
            )
        return f"Stored {len(items)} item(s) for {section} ({total} total)"

    def add_chart_js(self, js: str) -> str:
        if not js.strip():
            return "Error: js is required."
        count = self.state.append_to_array("chart_js", [js])
        return f"Added chart JS block {count}"

    # --- Gate ---

    def check_completion(self, args: dict) -> GateResult:
        reasons: list[str] = []
        for placeholder in ENFORCED_ARRAY_SECTIONS:
            total = self.source_count(placeholder)
            if total == 0:
                continue
            rendered = len(self.rendered_items(placeholder))
            if rendered < total:
                reasons.append(
                    f"{placeholder}: {rendered}/{total} items rendered "
                    f"({total - rendered} still missing)"
                )
            elif rendered > total:
                reasons.append(
                    f"{placeholder}: {rendered}/{total} items rendered "
                    f"({rendered - total} more than the JSON holds)"
                )
        if reasons:
            return GateResult.blocked(reasons)

        item_count = sum(len(self.rendered_items(p)) for p in (*ENFORCED_ARRAY_SECTIONS, *OTHER_ARRAY_SECTIONS))
        summary = (
            f"Rendered {len(self.rendered_sections())} sections and {item_count} array items"
        )
        return GateResult.complete(
            summary=summary,
            payload=self.finalize(),
            status="complete",
            signal=f"{self.sentinel_prefix}{summary}",
        )

    def render_blocked(self, gate: GateResult) -> str:
        return (
            "RENDERING BLOCKED - these array sections do not match the JSON:\n"
            + "\n".join(f"  - {reason}" for reason in gate.reasons)
            + "\n\nUse render_items() to render all missing items, then call "
            "complete_rendering() again."
        )

    # --- Payload ---

    def finalize(self) -> str:
        html = self.template
        for name, content in self.rendered_sections().items():
            html = html.replace(f"{{{{SECTION:{name}}}}}", content)
        for placeholder in (*ENFORCED_ARRAY_SECTIONS, *OTHER_ARRAY_SECTIONS):
            html = html.replace(
                f"{{{{SECTION:{placeholder}}}}}", "\n".join(self.rendered_items(placeholder)),
            )
        html = _LEFTOVER_PLACEHOLDER.sub("", html)

        chart_script = ""
        if self.chart_blocks:
            chart_script = (
                "<script>\ndocument.addEventListener('DOMContentLoaded', function() {\n"
                + "\n\n".join(self.chart_blocks)
                + "\n});\n</script>"
            )
        html = html.replace("{{CHARTS_INIT}}", chart_script)
        html = html.replace("{{REPORT_DATE}}", self.report_date)
        return html.replace("{{ADDITIONAL_CSS}}", "")

    def external_state_summary(self) -> str:
        return self.get_render_progress()
