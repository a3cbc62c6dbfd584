"""Structurer tools: build the structured JSON document section by section.

Each JSON section lives in external state under ``json:<section>``;
source lookups are recorded under ``searches``.
"""

from __future__ import annotations

import json

from realm.state.external import ExternalState
from realm.tools.base import GateResult, ToolExecutor, ToolSpec, object_schema, string_param
from realm.tools.source import SourceData

REQUIRED_SECTIONS = (
    "executiveSummary",
    "criticalFindings",
    "timeline",
    "diagnoses",
    "systemsHealth",
)

_PREFIX = "json:"


def _kb(value) -> int:
    return round(len(json.dumps(value, ensure_ascii=False)) / 1024)


class StructurerToolExecutor(ToolExecutor):
    role = "structurer"
    completion_tool = "complete_structuring"
    sentinel_prefix = "STRUCTURING_COMPLETE|"

    def __init__(self, source_text: str, state: ExternalState | None = None) -> None:
        self.source = SourceData.parse(source_text)
        super().__init__(state)

    def tool_specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                "search_source",
                "Search the raw source documents to verify an exact value, date, unit or range.",
                self.search_source,
                object_schema({"query": string_param("Marker, condition or phrase")}, ["query"]),
            ),
            ToolSpec(
                "get_value_history",
                "Get every reading of a lab marker across the source documents.",
                self.get_value_history,
                object_schema({"marker": string_param('Marker name (e.g. "TSH")')}, ["marker"]),
            ),
            ToolSpec(
                "get_date_range",
                "Get the source date range. Use it to populate meta.dataSpan.",
                self.get_date_range,
            ),
            ToolSpec(
                "list_source_documents",
                "List all source documents with their sizes.",
                self.list_source_documents,
            ),
            ToolSpec(
                "update_json_section",
                "Set a top-level OBJECT section (executiveSummary, meta, integrativeReasoning, "
                "prognosis). For array sections use append_to_section.",
                self.update_json_section,
                object_schema(
                    {
                        "section": string_param("Top-level JSON key"),
                        "data": string_param("The JSON value as a string. Must be valid JSON."),
                    },
                    ["section", "data"],
                ),
            ),
            ToolSpec(
                "append_to_section",
                "Append a small batch (1-5) of items to an array section such as "
                "criticalFindings, timeline, diagnoses or trends.",
                self.append_to_section,
                object_schema(
                    {
                        "section": string_param("Array section name"),
                        "items": string_param('A JSON array of items, e.g. "[{...}, {...}]"'),
                    },
                    ["section", "items"],
                ),
            ),
            ToolSpec(
                "get_json_draft",
                "Review which sections are populated and their sizes.",
                self.get_json_draft,
            ),
            ToolSpec(
                "complete_structuring",
                "Signal that structuring is complete. Required sections: "
                + ", ".join(REQUIRED_SECTIONS) + ".",
                self.complete,
                object_schema(
                    {"summary": string_param("Brief summary of what was structured")},
                    ["summary"],
                ),
            ),
        ]

    # --- State accessors ---

    @property
    def draft(self) -> dict:
        return {
            key[len(_PREFIX):]: value
            for key, value in self.state.items()
            if key.startswith(_PREFIX)
        }

    @property
    def searches(self) -> list[str]:
        return list(self.state.get("searches", []))

    def missing_sections(self) -> list[str]:
        return [s for s in REQUIRED_SECTIONS if not self.state.has(_PREFIX + s)]

    # --- Read tools ---

    def search_source(self, query: str) -> str:
        if not query.strip():
            return "Error: query is required"
        normalized = query.lower()
        if normalized not in self.searches:
            self.state.append_to_array("searches", [normalized])
        hits = self.source.search(query)
        if not hits:
            return f'No matches found for "{query}" in source documents.'
        body = "\n\n---\n\n".join(
            f"### {hit.section}\n\n" + "\n\n---\n\n".join(hit.matches) for hit in hits
        )
        return f'# Source Search: "{query}"\n\nFound in {len(hits)} section(s):\n\n{body}'

    def get_value_history(self, marker: str) -> str:
        if not marker.strip():
            return "Error: marker is required"
        readings = self.source.value_history(marker)
        if not readings:
            return f'No values found for "{marker}". Try search_source("{marker}") to see raw mentions.'
        documents = {r.document for r in readings}
        body = "\n\n".join(
            f"- **{r.date}**: {r.value} {r.unit} ({r.document})\n  Context: {r.context}"
            for r in readings
        )
        return (
            f'# Value History: "{marker}"\n\n'
            f"**{len(readings)} value(s) across {len(documents)} document(s)**\n\n{body}"
        )

    def get_date_range(self) -> str:
        date_range = self.source.date_range
        if date_range is None:
            return "No dates found in source documents."
        return (
            "# Source Date Range\n\n"
            f"**Earliest:** {date_range.earliest}\n"
            f"**Latest:** {date_range.latest}\n"
            f"**Span:** {date_range.years} years\n"
            f"**Timeline Events Found:** {len(self.source.timeline_events)}\n"
            f"**Years with Data:** {', '.join(map(str, self.source.years_with_data))}\n\n"
            "Use this to populate meta.dataSpan accurately."
        )

    def list_source_documents(self) -> str:
        lines = []
        for name in self.source.document_names:
            sections = self.source.sections_of(name)
            chars = sum(len(s.content) for s in sections)
            lines.append(f"- {name} ({len(sections)} section(s), ~{round(chars / 1024)}KB)")
        return (
            f"# Source Documents\n\n{len(self.source.document_names)} documents, "
            f"{self.source.total_sections} total sections:\n\n" + "\n".join(lines)
        )

    # --- Write tools ---

    def update_json_section(self, section: str, data: str) -> str:
        if not section.strip():
            return "Error: section name is required"
        if not data.strip():
            return "Error: data is required"
        try:
            value = json.loads(data)
        except json.JSONDecodeError:
            return f'Error: data for section "{section}" is not valid JSON. Fix the JSON and try again.'
        self.state.put(_PREFIX + section, value)
        return f'Updated section "{section}" (~{round(len(data) / 1024)}KB)'

    def append_to_section(self, section: str, items: str) -> str:
        if not section.strip():
            return "Error: section name is required"
        if not items.strip():
            return "Error: items is required"
        try:
            parsed = json.loads(items)
        except json.JSONDecodeError:
            return (
                f'Error: items for "{section}" is not valid JSON. '
                "Must be a JSON array, e.g. [{...}, {...}]"
            )
        if not isinstance(parsed, list):
            return (
                f"Error: items must be a JSON array. Got {type(parsed).__name__}. "
                "Wrap single items in an array: [{...}]"
            )
        existing = self.state.get(_PREFIX + section)
        if existing is not None and not isinstance(existing, list):
            return (
                f'Error: "{section}" already exists as a non-array object. '
                "Use update_json_section to replace it."
            )
        total = self.state.append_to_array(_PREFIX + section, parsed)
        return f'Appended {len(parsed)} item(s) to "{section}" ({total} items total)'

    def get_json_draft(self) -> str:
        draft = self.draft
        if not draft:
            return "No sections written yet. Use update_json_section to start building the JSON."
        lines = [f"# JSON Draft Status\n\n**Sections written: {len(draft)}**\n"]
        for section, value in draft.items():
            if isinstance(value, list):
                lines.append(f"- **{section}**: {len(value)} items (~{_kb(value)}KB)")
            elif isinstance(value, dict):
                lines.append(f"- **{section}**: object (~{_kb(value)}KB)")
            else:
                lines.append(f"- **{section}**: {str(value)[:50]}")
        missing = self.missing_sections()
        if missing:
            lines.append(f"\n**Still required:** {', '.join(missing)}")
        else:
            lines.append("\n**All required sections present. Ready to call complete_structuring.**")
        return "\n".join(lines)

    # --- Gate ---

    def check_completion(self, args: dict) -> GateResult:
        missing = self.missing_sections()
        if missing:
            return GateResult.blocked(missing)
        summary = str(args.get("summary", ""))
        count = len(self.draft)
        return GateResult.complete(
            summary=summary,
            payload=self.finalize(),
            status=str(count),
            signal=f"{self.sentinel_prefix}{count}|{summary}",
        )

    def render_blocked(self, gate: GateResult) -> str:
        return (
            f"Cannot complete: missing required sections: {', '.join(gate.reasons)}. "
            "Use update_json_section or append_to_section to add them."
        )

    # --- Payload ---

    def finalize(self) -> str:
        return json.dumps(self.draft, ensure_ascii=False, indent=2)

    def external_state_summary(self) -> str:
        lines = ["## JSON Sections Built (stored externally)"]
        draft = self.draft
        if not draft:
            lines.append("No sections written yet.")
        for section, value in draft.items():
            if isinstance(value, list):
                detail = f"{len(value)} items"
            elif isinstance(value, dict):
                detail = "object"
            else:
                detail = str(value)[:30]
            lines.append(f"- WRITTEN: {section} ({detail}, ~{_kb(value)}KB)")
        missing = self.missing_sections()
        if missing:
            lines.append(f"\nPENDING required: {', '.join(missing)}")
        searches = self.searches
        lines.extend(["", "## Source Lookups Performed", f"Searches: {len(searches)}"])
        lines.extend(f'  - "{s}"' for s in searches)
        return "\n".join(lines)
