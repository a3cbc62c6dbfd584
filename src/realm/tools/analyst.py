"""Analyst tools: explore source documents and write the analysis.

External state:

- ``analysis_sections``: section title -> markdown
- ``documents_read``: document names opened with ``read_document``
- ``searches``: distinct lower-cased search queries
- ``date_range_checked`` / ``timeline_extracted``: exploration flags
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from realm.state.external import ExternalState
from realm.tools.base import GateResult, ToolExecutor, ToolSpec, object_schema, string_param
from realm.tools.source import SourceData

MIN_DOCUMENT_COVERAGE = 50
MIN_SEARCHES = 3
MIN_EXPECTED_SECTIONS = 3


@dataclass(frozen=True)
class SectionRequirement:
    key: str
    label: str
    alternatives: tuple[str, ...] = ()

    def matches(self, title: str) -> bool:
        lower = title.lower()
        return any(k in lower for k in (self.key, *self.alternatives))


REQUIRED_SECTIONS = (
    SectionRequirement("executive summary", "Executive Summary"),
    SectionRequirement("system", "System-by-System Analysis"),
    SectionRequirement("timeline", "Medical History Timeline"),
    SectionRequirement("root cause", "Unified Root Cause Hypothesis", ("unified",)),
    SectionRequirement("causal chain", "Causal Chain"),
    SectionRequirement("keystone", "Keystone Findings"),
    SectionRequirement("recommendations", "Recommendations"),
    SectionRequirement("missing data", "Missing Data", ("data gaps", "blind spots")),
)

EXPECTED_SECTIONS = (
    SectionRequirement("competing", "Competing Hypotheses", ("hypotheses",)),
    SectionRequirement("diagnoses", "Identified Diagnoses"),
    SectionRequirement("supplement", "Supplement Schedule", ("schedule",)),
    SectionRequirement("prognosis", "Prognosis / Future Outlook", ("outlook",)),
    SectionRequirement("questions for doctor", "Questions for Doctor", ("doctor questions",)),
)

# Preferred order of sections in the final document, by title substring.
SECTION_ORDER = (
    "Executive Summary", "At a Glance", "The Big Picture", "Patient Context",
    "Key Metrics", "Critical Findings", "Urgent Findings", "Key Patterns",
    "Primary Clinical Frames", "System", "Diagnoses", "Timeline", "Root Cause",
    "Unified", "Causal Chain", "Keystone", "Cross-System", "Competing",
    "Integrative", "Prognosis", "Outlook", "Supplement", "Lifestyle",
    "Recommendations", "Questions for Doctor", "Missing Data", "Data Gaps",
)


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return math.floor(part * 100 / whole + 0.5)


class AnalystToolExecutor(ToolExecutor):
    role = "analyst"
    completion_tool = "complete_analysis"
    sentinel_prefix = "ANALYSIS_COMPLETE|"

    def __init__(self, source_text: str, state: ExternalState | None = None) -> None:
        self.source = SourceData.parse(source_text)
        super().__init__(state)

    def tool_specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                "list_documents",
                "List all documents available in the extracted medical data. "
                "Use this first to understand what data you have to work with.",
                self.list_documents,
            ),
            ToolSpec(
                "read_document",
                "Read the full content of a document. Use the exact name from list_documents.",
                self.read_document,
                object_schema(
                    {"document_name": string_param("The name of the document to read")},
                    ["document_name"],
                ),
            ),
            ToolSpec(
                "search_data",
                "Search across ALL documents for medical terms, markers, or patterns. "
                "Returns matching sections with context.",
                self.search_data,
                object_schema(
                    {
                        "query": string_param(
                            'A lab marker (e.g. "TSH"), condition (e.g. "diabetes") '
                            'or pattern (e.g. "elevated")'
                        ),
                        "include_context": {
                            "type": "boolean",
                            "description": "Include surrounding lines (default: true)",
                        },
                    },
                    ["query"],
                ),
            ),
            ToolSpec(
                "get_analysis",
                "Get the current state of your analysis. Review it before adding more.",
                self.get_analysis,
            ),
            ToolSpec(
                "update_analysis",
                "Add or update a section of your analysis. Lab values must include the "
                'value, unit, reference range and flag, e.g. "HbA1c: 5.7 % (ref 4.0-5.6) *H".',
                self.update_analysis,
                object_schema(
                    {
                        "section": string_param(
                            'Section name (e.g. "Executive Summary"). Use "append" for a new '
                            "auto-named section."
                        ),
                        "content": string_param("The markdown content to add or update"),
                        "replace": {
                            "type": "boolean",
                            "description": "Replace the whole section instead of appending (default: false)",
                        },
                    },
                    ["section", "content"],
                ),
            ),
            ToolSpec(
                "complete_analysis",
                "Signal that your analysis is complete. All required sections must be written: "
                + ", ".join(r.label for r in REQUIRED_SECTIONS)
                + f". Also at least {MIN_EXPECTED_SECTIONS} of: "
                + ", ".join(r.label for r in EXPECTED_SECTIONS) + ".",
                self.complete,
                object_schema(
                    {
                        "summary": string_param("A brief summary of what the analysis covers"),
                        "confidence": string_param('Confidence level: "high", "medium", or "low"'),
                    },
                    ["summary", "confidence"],
                ),
            ),
            ToolSpec(
                "get_date_range",
                "Get the date range of all data. Your timeline should have entries "
                "proportional to this range.",
                self.get_date_range,
            ),
            ToolSpec(
                "list_documents_by_year",
                "List documents grouped by year to see the temporal distribution of data.",
                self.list_documents_by_year,
            ),
            ToolSpec(
                "extract_timeline_events",
                "Get all dated events extracted from the documents, optionally for one year.",
                self.extract_timeline_events,
                object_schema({
                    "year": {"type": "integer", "description": "Optional: only this year"},
                }),
            ),
            ToolSpec(
                "get_value_history",
                "Get the history of a lab marker across all documents and time points.",
                self.get_value_history,
                object_schema(
                    {"marker": string_param('The lab marker to track (e.g. "TSH")')},
                    ["marker"],
                ),
            ),
        ]

    # --- State accessors ---

    @property
    def sections(self) -> dict[str, str]:
        return dict(self.state.get("analysis_sections", {}))

    @property
    def documents_read(self) -> list[str]:
        return list(self.state.get("documents_read", []))

    @property
    def searches(self) -> list[str]:
        return list(self.state.get("searches", []))

    def coverage_stats(self) -> dict:
        total = len(self.source.document_names)
        read = len(self.documents_read)
        return {
            "documents_read": read,
            "total_documents": total,
            "document_coverage": _percent(read, total),
            "searches_performed": len(self.searches),
            "analysis_sections": len(self.sections),
            "date_range_checked": bool(self.state.get("date_range_checked", False)),
            "timeline_extracted": bool(self.state.get("timeline_extracted", False)),
        }

    def _has_section(self, requirement: SectionRequirement) -> bool:
        return any(requirement.matches(title) for title in self.sections)

    # --- Read tools ---

    def list_documents(self) -> str:
        lines = []
        for name in self.source.document_names:
            sections = self.source.sections_of(name)
            chars = sum(len(s.content) for s in sections)
            pages = [str(s.page_number) for s in sections if s.page_number is not None]
            page_note = f", pages {', '.join(pages)}" if pages else ""
            lines.append(
                f"- {name} ({len(sections)} section(s), ~{round(chars / 1000)}K chars{page_note})"
            )
        return (
            f"# Available Documents\n\nTotal: {self.source.total_sections} sections from "
            f"{len(self.source.document_names)} documents\n\n" + "\n".join(lines)
            + "\n\nUse read_document(document_name) to read a document, or "
            "search_data(query) to search across all documents."
        )

    def read_document(self, document_name: str) -> str:
        sections = self.source.sections_named(document_name)
        if not sections:
            return (
                f'Document not found: "{document_name}". '
                "Use list_documents() to see available documents."
            )
        already = set(self.documents_read)
        new_names = []
        for section in sections:
            if section.name not in already and section.name not in new_names:
                new_names.append(section.name)
        if new_names:
            self.state.append_to_array("documents_read", new_names)
        return "\n\n---\n\n".join(
            f"## {s.label}\n\n{s.content}" for s in sections
        )

    def search_data(self, query: str, include_context: bool = True) -> str:
        normalized = query.lower()
        if normalized not in self.searches:
            self.state.append_to_array("searches", [normalized])
        hits = self.source.search(query, include_context=include_context, max_matches=10)
        if not hits:
            return (
                f'No matches found for "{query}". Try different terms or use '
                "list_documents() to see available data."
            )
        body = "\n\n---\n\n".join(
            f"### {hit.section}\n\n" + "\n\n---\n\n".join(hit.matches)
            for hit in hits[:15]
        )
        return (
            f'# Search Results for "{query}"\n\nFound matches in {len(hits)} section(s):\n\n{body}'
        )

    def get_date_range(self) -> str:
        self.state.put("date_range_checked", True)
        date_range = self.source.date_range
        if date_range is None:
            return (
                "# Date Range\n\nNo dates found in the extracted documents. "
                "The documents may lack explicit date markers."
            )
        missing = self.source.missing_years()
        coverage = (
            f"**Years with No Data:** {', '.join(map(str, missing))}"
            if missing else "**Coverage:** Complete - data found for all years"
        )
        return (
            "# Date Range Summary\n\n"
            f"**Earliest Date:** {date_range.earliest}\n"
            f"**Latest Date:** {date_range.latest}\n"
            f"**Span:** {date_range.years} years\n\n"
            f"**Total Timeline Events Found:** {len(self.source.timeline_events)}\n"
            f"**Years with Data:** {', '.join(map(str, self.source.years_with_data))}\n"
            f"{coverage}\n\n---\n\n"
            f"Your Medical History Timeline should include entries proportional to this "
            f"{date_range.years}-year span. Use list_documents_by_year() or "
            "extract_timeline_events() for detail."
        )

    def list_documents_by_year(self) -> str:
        by_year = self.source.documents_by_year
        if not by_year:
            return "# Documents by Year\n\nNo dated documents found."
        blocks = [
            f"## {year}\n" + "\n".join(f"- {doc}" for doc in docs)
            for year, docs in by_year.items()
        ]
        date_range = self.source.date_range
        return (
            "# Documents by Year\n\n"
            f"**Date Range:** {date_range.earliest} to {date_range.latest}\n"
            f"**Years with Data:** {len(by_year)}\n\n" + "\n\n".join(blocks)
            + "\n\n---\n\nUse extract_timeline_events(year) for the events of one year."
        )

    def extract_timeline_events(self, year: int | None = None) -> str:
        self.state.put("timeline_extracted", True)
        events = self.source.timeline_events
        if year:
            events = [e for e in events if e.year == year]
        if not events:
            if year:
                return f"# Timeline Events for {year}\n\nNo events found for year {year}."
            return "# Timeline Events\n\nNo dated events found in the documents."

        by_year: dict[int, list] = {}
        for event in events:
            by_year.setdefault(event.year, []).append(event)

        blocks = []
        for y in sorted(by_year):
            year_events = by_year[y]
            lines = []
            for e in year_events[:20]:
                snippet = e.snippet[:80] + ("..." if len(e.snippet) > 80 else "")
                lines.append(f"- **{e.date}** - {e.document}: {snippet}")
            more = f"\n... and {len(year_events) - 20} more" if len(year_events) > 20 else ""
            blocks.append(f"## {y} ({len(year_events)} events)\n" + "\n".join(lines) + more)

        header = f"# Timeline Events{f' for {year}' if year else ''}\n\n**Total Events:** {len(events)}\n"
        if not year and self.source.date_range:
            header += (
                f"**Date Range:** {self.source.date_range.earliest} to "
                f"{self.source.date_range.latest}\n"
            )
        return (
            header + "\n" + "\n\n".join(blocks)
            + "\n\n---\n\nUse these events to build a Medical History Timeline that spans "
            "the entire date range, not just recent years."
        )

    def get_value_history(self, marker: str) -> str:
        if not marker.strip():
            return 'Error: Please provide a marker name (e.g. "TSH", "Homocysteine")'
        readings = self.source.value_history(marker)
        if not readings:
            return (
                f'# Value History for "{marker}"\n\nNo values found for marker "{marker}". '
                f'Try a different spelling, or search_data("{marker}").'
            )
        documents = {r.document for r in readings}
        body = "\n\n".join(
            f"- **{r.date}**: {r.value} {r.unit} ({r.document})\n  Context: {r.context}"
            for r in readings
        )
        return (
            f'# Value History for "{marker}"\n\n'
            f"**Found {len(readings)} value(s) across {len(documents)} document(s)**\n\n"
            f"{body}\n\n---\n\nUse this history to identify trends in your analysis."
        )

    # --- Write tools ---

    def get_analysis(self) -> str:
        sections = self.sections
        if not sections:
            return "Analysis is empty. Use update_analysis() to start building your analysis."
        body = "\n\n---\n\n".join(f"## {title}\n\n{content}" for title, content in sections.items())
        return f"# Current Analysis\n\n{body}"

    def update_analysis(self, section: str, content: str, replace: bool = False) -> str:
        if not section.strip():
            return "Error: section name is required"
        sections = self.sections
        if section.lower() == "append":
            title = f"Section {len(sections) + 1}"
            sections[title] = content
            self.state.put("analysis_sections", sections)
            return f'Added new section: "{title}"'
        if replace or section not in sections:
            sections[section] = content
            self.state.put("analysis_sections", sections)
            return f'Updated section: "{section}"'
        sections[section] = sections[section] + "\n\n" + content
        self.state.put("analysis_sections", sections)
        return f'Appended to section: "{section}"'

    # --- Gate ---

    def check_completion(self, args: dict) -> GateResult:
        stats = self.coverage_stats()
        reasons: list[str] = []

        if (
            stats["total_documents"] > 2
            and stats["document_coverage"] < MIN_DOCUMENT_COVERAGE
        ):
            reasons.append(
                f"Only {stats['document_coverage']}% of documents read "
                f"({stats['documents_read']}/{stats['total_documents']}). "
                "Read more documents before completing."
            )
        if stats["searches_performed"] < MIN_SEARCHES:
            reasons.append(
                f"Only {stats['searches_performed']} searches performed. "
                "Use search_data() to cross-reference findings."
            )
        if not stats["date_range_checked"]:
            reasons.append(
                "Date range not checked. Call get_date_range() to understand "
                "the temporal scope of the data."
            )
        if not stats["timeline_extracted"] and self.source.timeline_events:
            reasons.append(
                "Timeline events not extracted. Call extract_timeline_events() "
                "to build the Medical History Timeline."
            )

        missing_required = [r.label for r in REQUIRED_SECTIONS if not self._has_section(r)]
        if missing_required:
            reasons.append(
                f"Missing REQUIRED sections ({len(missing_required)}): "
                f"{', '.join(missing_required)}. Use update_analysis() to write each of these."
            )

        missing_expected = [r.label for r in EXPECTED_SECTIONS if not self._has_section(r)]
        present = len(EXPECTED_SECTIONS) - len(missing_expected)
        if present < MIN_EXPECTED_SECTIONS:
            reasons.append(
                f"Only {present}/{len(EXPECTED_SECTIONS)} expected sections written "
                f"(need at least {MIN_EXPECTED_SECTIONS}). "
                f"Missing: {', '.join(missing_expected)}. "
                f"Write at least {MIN_EXPECTED_SECTIONS - present} more."
            )

        if reasons:
            return GateResult.blocked(reasons)

        summary = str(args.get("summary", ""))
        confidence = str(args.get("confidence", ""))
        return GateResult.complete(
            summary=summary,
            payload=self.finalize(),
            status=confidence,
            signal=f"{self.sentinel_prefix}{confidence}|{summary}",
        )

    def render_blocked(self, gate: GateResult) -> str:
        stats = self.coverage_stats()
        footer = (
            "## Current Coverage Stats\n"
            f"- Documents read: {stats['documents_read']}/{stats['total_documents']} "
            f"({stats['document_coverage']}%)\n"
            f"- Searches performed: {stats['searches_performed']}\n"
            f"- Analysis sections: {stats['analysis_sections']}\n"
            f"- Date range checked: {'Yes' if stats['date_range_checked'] else 'No'}\n"
            f"- Timeline extracted: {'Yes' if stats['timeline_extracted'] else 'No'}\n\n"
            "Please address these issues before calling complete_analysis() again."
        )
        return gate.render_guidance("Cannot Complete Analysis Yet", footer)

    # --- Payload ---

    def finalize(self) -> str:
        sections = self.sections
        if not sections:
            return ""
        ordered: list[str] = []
        used: set[str] = set()
        for preferred in SECTION_ORDER:
            needle = preferred.lower()
            for title, content in sections.items():
                if title not in used and needle in title.lower():
                    ordered.append(f"## {title}\n\n{content}")
                    used.add(title)
        for title, content in sections.items():
            if title not in used:
                ordered.append(f"## {title}\n\n{content}")
        return "# Comprehensive Medical Analysis\n\n" + "\n\n---\n\n".join(ordered)

    def external_state_summary(self) -> str:
        lines = ["## Analysis Sections (stored externally)"]
        sections = self.sections
        if not sections:
            lines.append("No sections written yet.")
        for title, content in sections.items():
            lines.append(f"- WRITTEN: {title} (~{round(len(content) / 1024)}KB)")

        read = self.documents_read
        unread = [d for d in self.source.document_names if d not in read]
        lines.extend(["", "## Exploration Progress"])
        lines.append(f"Documents read: {len(read)}/{len(self.source.document_names)}")
        lines.extend(f"  - READ: {d}" for d in read)
        lines.extend(f"  - UNREAD: {d}" for d in unread)
        searches = self.searches
        lines.append(f"Searches performed: {len(searches)}")
        lines.extend(f'  - "{s}"' for s in searches)
        stats = self.coverage_stats()
        lines.append(f"Date range checked: {'Yes' if stats['date_range_checked'] else 'No'}")
        lines.append(f"Timeline extracted: {'Yes' if stats['timeline_extracted'] else 'No'}")
        return "\n".join(lines)
