"""Validator tools: cross-check a structured JSON document against its source.

External state:

- ``issues``: reported problems, each ``{category, severity, description, ...}``
- ``verified_markers``: markers confirmed in both source and JSON
- ``checks``: distinct verification and search keys performed
- ``date_ranges_compared``: whether the timeline range check ran
"""

from __future__ import annotations

import json
import logging
import re

from realm.state.external import ExternalState
from realm.tools.base import GateResult, ToolExecutor, ToolSpec, object_schema, string_param
from realm.tools.source import SourceData

logger = logging.getLogger(__name__)

MIN_CHECKS = 3
VALID_STATUSES = ("pass", "pass_with_warnings", "needs_revision")
ISSUE_CATEGORIES = (
    "missing_data", "missing_timeline", "wrong_value", "missing_context", "inconsistency",
)
ISSUE_SEVERITIES = ("critical", "warning", "info")
VALUE_SECTIONS = ("criticalFindings", "trends")
MARKER_LOCATIONS = ("criticalFindings", "trends", "keyBiomarkers", "timeline", "diagnoses")

_RANGE = re.compile(r"([\d,.]+)\s*[-–]\s*([\d,.]+)")
_KEY_VALUE = re.compile(
    r"(?:^|\s)([A-Za-z][A-Za-z\s]{2,30})[\s:]+(\d+\.?\d*)\s*"
    r"(mg/dL|mmol/L|%|g/dL|U/L|ng/mL|pg/mL|mIU/L|fL|K/uL|M/uL)?",
    re.IGNORECASE,
)
_FLAG = re.compile(r"\s*\*?([HL])\s*$")


def _normalize_unit(unit: str) -> str:
    return re.sub(r"\s+", "", unit.strip().lower().replace("µ", "u").replace("μ", "u"))


def _parse_lab_line(line: str) -> dict | None:
    """Read a pipe table row ``| Marker | Value *H | Range | Unit |``."""
    cells = [c.strip() for c in line.split("|") if c.strip()]
    if len(cells) < 2:
        return None
    value = cells[1]
    status = ""
    flag = _FLAG.search(value)
    if flag:
        status = "high" if flag.group(1).upper() == "H" else "low"
        value = value[:flag.start()].strip()
    ref_range = cells[2] if len(cells) > 2 else ""
    unit = cells[3] if len(cells) > 3 else ""
    if ref_range and not _RANGE.search(ref_range) and not unit:
        ref_range, unit = "", ref_range
    return {
        "marker": cells[0],
        "value": value,
        "unit": unit,
        "ref_range": ref_range,
        "status": status,
    }


class ValidatorToolExecutor(ToolExecutor):
    role = "validator"
    completion_tool = "complete_validation"
    sentinel_prefix = "VALIDATION_COMPLETE|"

    def __init__(
        self,
        source_text: str,
        structured_json: str | dict,
        state: ExternalState | None = None,
    ) -> None:
        self.source = SourceData.parse(source_text)
        if isinstance(structured_json, dict):
            self.document = structured_json
        else:
            try:
                parsed = json.loads(structured_json)
            except json.JSONDecodeError as e:
                logger.warning("Structured JSON does not parse, validating an empty document: %s", e)
                parsed = {}
            self.document = parsed if isinstance(parsed, dict) else {}
        super().__init__(state)

    def tool_specs(self) -> list[ToolSpec]:
        marker = string_param('The marker or test name (e.g. "Glucose", "HbA1c")')
        return [
            ToolSpec(
                "list_documents",
                "List the source documents with their sizes.",
                self.list_documents,
            ),
            ToolSpec(
                "search_data",
                "Search the source documents for an exact phrase.",
                self.search_data,
                object_schema(
                    {"query": string_param('Be specific (e.g. "glucose 105", "HbA1c")')},
                    ["query"],
                ),
            ),
            ToolSpec(
                "verify_value_exists",
                "Primary verification tool. Checks a marker in BOTH source and JSON, then "
                "compares unit, reference range and status.",
                self.verify_value_exists,
                object_schema(
                    {
                        "marker": marker,
                        "expected_value": string_param("Optional expected value"),
                    },
                    ["marker"],
                ),
            ),
            ToolSpec(
                "get_date_range",
                "Get the date range of the source data.",
                self.get_date_range,
            ),
            ToolSpec(
                "get_json_overview",
                "Overview of the structured JSON: which sections exist and their sizes.",
                self.get_json_overview,
            ),
            ToolSpec(
                "get_json_section_summary",
                "Summary of one JSON section (counts and a short preview, not full content).",
                self.get_json_section_summary,
                object_schema(
                    {"section": string_param('Section key (e.g. "timeline", "diagnoses")')},
                    ["section"],
                ),
            ),
            ToolSpec(
                "check_value_in_json",
                "Check whether a marker (and optionally a value) appears anywhere in the JSON.",
                self.check_value_in_json,
                object_schema(
                    {"marker": marker, "value": string_param("Optional value to find")},
                    ["marker"],
                ),
            ),
            ToolSpec(
                "compare_date_ranges",
                "Compare the source date range with the JSON timeline. Key timeline completeness check.",
                self.compare_date_ranges,
            ),
            ToolSpec(
                "find_missing_timeline_years",
                "List years present in the source but missing from the JSON timeline.",
                self.find_missing_timeline_years,
            ),
            ToolSpec(
                "report_issue",
                "Log a validation issue that needs fixing.",
                self.report_issue,
                object_schema(
                    {
                        "category": string_param("One of: " + ", ".join(ISSUE_CATEGORIES)),
                        "severity": string_param("One of: " + ", ".join(ISSUE_SEVERITIES)),
                        "description": string_param("Detailed description of the issue"),
                        "source_location": string_param("Where the correct data is in the source"),
                        "json_location": string_param("Where the problem is in the JSON"),
                    },
                    ["category", "severity", "description"],
                ),
            ),
            ToolSpec(
                "get_validation_summary",
                "Summary of all issues reported so far.",
                self.get_validation_summary,
            ),
            ToolSpec(
                "complete_validation",
                "Signal that validation is complete.",
                self.complete,
                object_schema(
                    {
                        "status": string_param("One of: " + ", ".join(VALID_STATUSES)),
                        "summary": string_param("Brief summary of validation results"),
                    },
                    ["status", "summary"],
                ),
            ),
        ]

    # --- State accessors ---

    @property
    def issues(self) -> list[dict]:
        return list(self.state.get("issues", []))

    @property
    def verified_markers(self) -> list[str]:
        return list(self.state.get("verified_markers", []))

    @property
    def checks(self) -> list[str]:
        return list(self.state.get("checks", []))

    def _record_check(self, key: str) -> None:
        key = key.lower()
        if key not in self.checks:
            self.state.append_to_array("checks", [key])

    def _count(self, severity: str) -> int:
        return sum(1 for issue in self.issues if issue.get("severity") == severity)

    def _timeline_years(self) -> set[int]:
        timeline = self.document.get("timeline")
        years: set[int] = set()
        if not isinstance(timeline, list):
            return years
        for entry in timeline:
            date = entry.get("date") if isinstance(entry, dict) else None
            if isinstance(date, str) and date[:4].isdigit():
                years.add(int(date[:4]))
        return years

    # --- Source tools ---

    def list_documents(self) -> str:
        lines = []
        for name in self.source.document_names:
            sections = self.source.sections_of(name)
            chars = sum(len(s.content) for s in sections)
            lines.append(f"- {name} ({len(sections)} section(s), ~{round(chars / 1000)}K chars)")
        return (
            f"# Source Documents\n\nTotal: {self.source.total_sections} sections from "
            f"{len(self.source.document_names)} documents\n\n" + "\n".join(lines)
        )

    def search_data(self, query: str) -> str:
        self._record_check(f"search:{query}")
        needle = query.lower()
        blocks = []
        for section in self.source.sections:
            found = [line for line in section.content.split("\n") if needle in line.lower()]
            if found:
                blocks.append(f"### {section.name}\n" + "\n".join(found))
        if not blocks:
            return f'No matches found for "{query}"'
        return f'# Search Results for "{query}"\n\n' + "\n\n".join(blocks)

    def get_date_range(self) -> str:
        date_range = self.source.date_range
        if date_range is None:
            return "No dates found in source documents."
        return (
            "# Source Data Date Range\n\n"
            f"**Earliest:** {date_range.earliest}\n"
            f"**Latest:** {date_range.latest}\n"
            f"**Span:** {date_range.years} years\n"
            f"**Timeline Events:** {len(self.source.timeline_events)}\n"
            f"**Years with Data:** {', '.join(map(str, self.source.years_with_data))}"
        )

    # --- Verification ---

    def _json_matches(self, marker: str, expected_value: str | None) -> list[str]:
        needle = marker.lower()
        found: list[str] = []

        def walk(node, path: str) -> None:
            if isinstance(node, str):
                if needle in node.lower():
                    found.append(f'{path}: "{node[:100]}"')
            elif isinstance(node, bool) or node is None:
                return
            elif isinstance(node, (int, float)):
                if expected_value and str(node) == expected_value:
                    found.append(f"{path}: {node}")
            elif isinstance(node, list):
                for i, item in enumerate(node):
                    walk(item, f"{path}[{i}]")
            elif isinstance(node, dict):
                for key, value in node.items():
                    child = f"{path}.{key}" if path else key
                    if needle in str(key).lower():
                        found.append(f"{child}: {json.dumps(value, ensure_ascii=False)[:100]}")
                    else:
                        walk(value, child)

        walk(self.document, "")
        return found

    def _json_value_details(self, marker: str) -> dict | None:
        needle = marker.lower()
        for section in VALUE_SECTIONS:
            items = self.document.get(section)
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                item_marker = item.get("marker")
                if not isinstance(item_marker, str):
                    continue
                lower = item_marker.lower()
                if needle not in lower and lower not in needle:
                    continue
                ref = item.get("referenceRange")
                ref_min = ref_max = ""
                if isinstance(ref, dict):
                    ref_min = str(ref.get("min", ref.get("low", "")))
                    ref_max = str(ref.get("max", ref.get("high", "")))
                elif isinstance(ref, str):
                    m = _RANGE.search(ref)
                    if m:
                        ref_min, ref_max = m.group(1), m.group(2)
                return {
                    "value": str(item.get("value", "")),
                    "unit": str(item.get("unit", "")),
                    "ref_min": ref_min,
                    "ref_max": ref_max,
                    "status": str(item.get("status", "")),
                    "location": section,
                }
        return None

    def _accuracy_checks(self, marker: str) -> str:
        rows = []
        for _, line in self.source.marker_lines(marker):
            if "|" not in line:
                continue
            parsed = _parse_lab_line(line)
            if parsed is not None:
                rows.append(parsed)
        details = self._json_value_details(marker)
        if not rows or details is None:
            return ""
        src = rows[0]
        checks: list[str] = []
        mismatch = False

        if src["unit"] and details["unit"]:
            if _normalize_unit(src["unit"]) == _normalize_unit(details["unit"]):
                checks.append(f"- Unit: MATCH ({src['unit']})")
            else:
                checks.append(
                    f'- Unit: MISMATCH - Source: "{src["unit"]}", JSON: "{details["unit"]}"'
                )
                mismatch = True
        elif src["unit"] or details["unit"]:
            checks.append(
                f'- Unit: Source="{src["unit"] or "(none)"}", JSON="{details["unit"] or "(none)"}"'
            )

        if src["ref_range"] and (details["ref_min"] or details["ref_max"]):
            m = _RANGE.search(src["ref_range"])
            if m:
                try:
                    matched = (
                        abs(float(m.group(1).replace(",", "")) - float(details["ref_min"])) < 0.1
                        and abs(float(m.group(2).replace(",", "")) - float(details["ref_max"])) < 0.1
                    )
                except ValueError:
                    matched = False
                if matched:
                    checks.append(f"- Reference Range: MATCH ({src['ref_range']})")
                else:
                    checks.append(
                        f"- Reference Range: MISMATCH - Source: {m.group(1)}-{m.group(2)}, "
                        f"JSON: {details['ref_min']}-{details['ref_max']}"
                    )
                    mismatch = True

        if src["status"] and details["status"]:
            json_status = details["status"].lower()
            normalized = "high" if json_status == "critical" else json_status
            if src["status"] in (json_status, normalized):
                checks.append(f'- Status: MATCH (source="{src["status"]}", json="{details["status"]}")')
            else:
                checks.append(
                    f'- Status: MISMATCH - Source: "{src["status"]}", JSON: "{details["status"]}"'
                )
                mismatch = True

        if not checks:
            return ""
        text = f"\n\n## Field Accuracy ({details['location']})\n" + "\n".join(checks)
        if mismatch:
            text += (
                "\n\nACTION REQUIRED: Unit, reference range, or status in JSON does not "
                "match source. Use report_issue() to flag accuracy errors."
            )
        return text

    def verify_value_exists(self, marker: str, expected_value: str | None = None) -> str:
        self._record_check(f"verify:{marker}")
        source_matches = [
            f"[{doc}] {line[:150]}" for doc, line in self.source.marker_lines(marker)
        ]
        json_matches = self._json_matches(marker, expected_value)
        in_source, in_json = bool(source_matches), bool(json_matches)

        if in_source and in_json:
            status = "VERIFIED - Value exists in both source and JSON"
            if marker not in self.verified_markers:
                self.state.append_to_array("verified_markers", [marker])
        elif in_source:
            status = "MISSING FROM JSON - Value in source but NOT in JSON (potential data loss)"
        elif in_json:
            status = "NOT IN SOURCE - Value in JSON but NOT in source (potential fabrication)"
        else:
            status = "NOT FOUND - Value not found in either source or JSON"

        accuracy = self._accuracy_checks(marker) if in_source and in_json else ""
        heading = f'# Verification: "{marker}"' + (f" = {expected_value}" if expected_value else "")
        return (
            f"{heading}\n\n**Status:** {status}\n\n"
            f"## Source Data ({len(source_matches)} matches)\n"
            + ("\n".join(f"- {m}" for m in source_matches) or "No matches found")
            + f"\n\n## JSON Data ({len(json_matches)} matches)\n"
            + ("\n".join(f"- {m}" for m in json_matches) or "No matches found")
            + accuracy
        )

    # --- JSON inspection ---

    def get_json_overview(self) -> str:
        lines = []
        for key, value in self.document.items():
            if isinstance(value, list):
                info = f"array[{len(value)} items]"
            elif value is None:
                info = "null"
            elif isinstance(value, dict):
                keys = list(value)
                info = "object{" + ", ".join(keys[:3]) + ("..." if len(keys) > 3 else "") + "}"
            else:
                info = type(value).__name__
            lines.append(f"- **{key}**: {info}")

        def flag(key: str) -> str:
            return "Yes" if key in self.document else "NO - potential issue"

        return (
            "# JSON Structure Overview\n\n"
            f"**Total Sections:** {len(self.document)}\n"
            f"**Has Timeline:** {flag('timeline')}\n"
            f"**Has Critical Findings:** {flag('criticalFindings')}\n"
            f"**Has Executive Summary:** {flag('executiveSummary')}\n\n"
            "## Sections\n" + "\n".join(lines)
        )

    def get_json_section_summary(self, section: str) -> str:
        if section not in self.document:
            return f'Section "{section}" not found. Available: {", ".join(self.document)}'
        value = self.document[section]
        if isinstance(value, list):
            preview = json.dumps(value[:2], ensure_ascii=False, indent=2)
            if len(preview) > 2000:
                preview = preview[:2000] + "..."
            return (
                f"# JSON Section: {section}\n\n**Type:** Array\n**Count:** {len(value)} items\n\n"
                f"## Preview (first {min(2, len(value))} items)\n```json\n{preview}\n```"
            )
        if isinstance(value, dict):
            lines = []
            for key, child in value.items():
                if isinstance(child, list):
                    lines.append(f"- {key}: array[{len(child)}]")
                elif isinstance(child, dict):
                    lines.append(f"- {key}: object")
                else:
                    lines.append(f"- {key}: {str(child)[:50]}")
            more = "\n... and more" if len(lines) > 15 else ""
            return (
                f"# JSON Section: {section}\n\n**Type:** Object\n**Keys:** {len(value)}\n\n"
                "## Structure\n" + "\n".join(lines[:15]) + more
            )
        return f"# JSON Section: {section}\n\n**Type:** {type(value).__name__}\n**Value:** {str(value)[:500]}"

    def check_value_in_json(self, marker: str, value: str | None = None) -> str:
        self._record_check(f"json:{marker}")
        blob = json.dumps(self.document, ensure_ascii=False).lower()
        needle = marker.lower()
        marker_found = needle in blob
        locations = [
            loc for loc in MARKER_LOCATIONS
            if loc in self.document
            and needle in json.dumps(self.document[loc], ensure_ascii=False).lower()
        ]
        lines = [
            "# Check Value in JSON", "",
            f"**Marker:** {marker}",
            f"**Value:** {value or '(not specified)'}", "",
            f"**Marker Found:** {'YES' if marker_found else 'NO'}",
        ]
        if value:
            lines.append(f"**Value Found:** {'YES' if value.lower() in blob else 'NO'}")
        lines.append(
            f"**Locations:** {', '.join(locations) if locations else 'Not found in standard locations'}"
        )
        if not marker_found:
            lines.append(
                f'\n**ACTION:** Marker "{marker}" not found in JSON. '
                "Use report_issue() if it should be present."
            )
        return "\n".join(lines)

    def compare_date_ranges(self) -> str:
        self.state.put("date_ranges_compared", True)
        date_range = self.source.date_range
        if date_range is None:
            return "Cannot compare: No dates found in source documents."

        timeline = self.document.get("timeline")
        timeline = timeline if isinstance(timeline, list) else []
        json_dates = sorted(
            e["date"] for e in timeline
            if isinstance(e, dict) and isinstance(e.get("date"), str) and e["date"]
        )
        json_years = self._timeline_years()
        source_years = self.source.years_with_data
        missing = [y for y in source_years if y not in json_years]

        if len(missing) > len(source_years) * 0.5:
            status = "CRITICAL - More than 50% of years missing"
        elif missing:
            status = "WARNING - Some years missing"
        else:
            status = "PASS"
        coverage = round((len(source_years) - len(missing)) / len(source_years) * 100)

        text = (
            "# Date Range Comparison\n\n## Source Data\n"
            f"- **Range:** {date_range.earliest} to {date_range.latest}\n"
            f"- **Span:** {date_range.years} years\n"
            f"- **Years with data:** {', '.join(map(str, source_years))}\n"
            f"- **Total events:** {len(self.source.timeline_events)}\n\n"
            "## JSON Timeline\n"
            f"- **Range:** {json_dates[0] if json_dates else 'N/A'} to "
            f"{json_dates[-1] if json_dates else 'N/A'}\n"
            f"- **Entries:** {len(timeline)}\n"
            f"- **Years covered:** {', '.join(map(str, sorted(json_years))) or 'None'}\n\n"
            "## Comparison\n"
            f"- **Status:** {status}\n"
            f"- **Missing Years:** {', '.join(map(str, missing)) if missing else 'None'}\n"
            f"- **Coverage:** {coverage}%"
        )
        if missing:
            text += (
                f"\n\n**ACTION REQUIRED:** JSON timeline is missing {len(missing)} years of data. "
                "Use report_issue() to flag this."
            )
        return text

    def find_missing_timeline_years(self) -> str:
        source_years = self.source.years_with_data
        json_years = self._timeline_years()
        missing = [y for y in source_years if y not in json_years]
        covered = [y for y in source_years if y in json_years]
        if not missing:
            return (
                "# Timeline Year Coverage\n\n**Status:** COMPLETE - All "
                f"{len(source_years)} years with source data are represented in the JSON timeline."
            )
        details = []
        for year in missing:
            docs = self.source.documents_by_year.get(year, [])
            events = sum(1 for e in self.source.timeline_events if e.year == year)
            more = "..." if len(docs) > 3 else ""
            details.append(
                f"- **{year}**: {len(docs)} document(s), {events} event(s) - "
                f"Documents: {', '.join(docs[:3])}{more}"
            )
        gap = round(len(missing) / len(source_years) * 100)
        return (
            "# Missing Timeline Years\n\n"
            f"**Source has {len(source_years)} years of data.**\n"
            f"**JSON timeline covers {len(covered)} years.**\n"
            f"**Missing {len(missing)} years ({gap}% gap).**\n\n"
            "## Missing Years Detail\n" + "\n".join(details)
            + f"\n\n## Covered Years\n{', '.join(map(str, covered))}\n\n---\n\n"
            "**ACTION REQUIRED:** Use report_issue() to flag this timeline incompleteness."
        )

    # --- Issue tracking ---

    def report_issue(
        self,
        category: str,
        severity: str,
        description: str,
        source_location: str | None = None,
        json_location: str | None = None,
    ) -> str:
        severity = severity.lower()
        if severity not in ISSUE_SEVERITIES:
            return f"Error: severity must be one of {', '.join(ISSUE_SEVERITIES)}, got {severity!r}"
        issue = {"category": category, "severity": severity, "description": description}
        if source_location:
            issue["source_location"] = source_location
        if json_location:
            issue["json_location"] = json_location
        total = self.state.append_to_array("issues", [issue])
        return (
            f"Issue logged: [{severity.upper()}] {category} - {description}\n\n"
            f"Total issues: {total} ({self._count('critical')} critical, "
            f"{self._count('warning')} warnings)"
        )

    def get_validation_summary(self) -> str:
        issues = self.issues
        if not issues:
            return "# Validation Summary\n\nNo issues found yet. Continue validation checks."
        listing = "\n".join(
            f"{i}. [{issue['severity'].upper()}] **{issue['category']}**: {issue['description']}"
            for i, issue in enumerate(issues, 1)
        )
        return (
            "# Validation Summary\n\n"
            f"**Total Issues:** {len(issues)}\n"
            f"- Critical: {self._count('critical')}\n"
            f"- Warnings: {self._count('warning')}\n"
            f"- Info: {self._count('info')}\n\n"
            f"## All Issues\n{listing}"
        )

    # --- Gate ---

    def check_completion(self, args: dict) -> GateResult:
        reasons: list[str] = []
        status = str(args.get("status", "")).strip().lower()
        if status not in VALID_STATUSES:
            reasons.append(
                f"Invalid status {args.get('status')!r}. Use one of: {', '.join(VALID_STATUSES)}."
            )
        checks = len(self.checks)
        if checks < MIN_CHECKS:
            reasons.append(
                f"Only {checks} verification(s) performed (need at least {MIN_CHECKS}). "
                "Use verify_value_exists(), check_value_in_json() or search_data() "
                "to check specific values."
            )
        if not self.state.get("date_ranges_compared", False):
            reasons.append(
                "Timeline coverage not checked. Call compare_date_ranges() before completing."
            )
        if reasons:
            return GateResult.blocked(reasons)

        summary = str(args.get("summary", ""))
        critical, warnings = self._count("critical"), self._count("warning")
        return GateResult.complete(
            summary=summary,
            payload=self._report(status, summary),
            status=status,
            signal=f"{self.sentinel_prefix}{status}|{critical}|{warnings}|{summary}",
        )

    def render_blocked(self, gate: GateResult) -> str:
        return gate.render_guidance(
            "Cannot Complete Validation Yet",
            "Please address these issues before calling complete_validation() again.",
        )

    # --- Payload ---

    def _report(self, status: str, summary: str) -> str:
        return json.dumps(
            {
                "status": status,
                "summary": summary,
                "critical_count": self._count("critical"),
                "warning_count": self._count("warning"),
                "info_count": self._count("info"),
                "issues": self.issues,
                "verified_markers": self.verified_markers,
            },
            ensure_ascii=False,
            indent=2,
        )

    def finalize(self) -> str:
        if self.completion is not None:
            return self.completion.payload
        status = "needs_revision" if self._count("critical") else "incomplete"
        return self._report(status, "Validation did not complete; report reflects partial checks.")

    def external_state_summary(self) -> str:
        lines = [f"## Validation Issues (stored externally): {len(self.issues)}"]
        for issue in self.issues:
            lines.append(
                f"- ISSUE [{issue['severity']}]: {issue['category']} - {issue['description'][:120]}"
            )
        lines.extend(["", f"## Verified Markers: {len(self.verified_markers)}"])
        lines.extend(f"  - {m}" for m in self.verified_markers)
        lines.extend(["", f"## Checks Performed: {len(self.checks)}"])
        lines.extend(f'  - "{c}"' for c in self.checks)
        compared = self.state.get("date_ranges_compared", False)
        lines.append(f"Date ranges compared: {'Yes' if compared else 'No'}")
        return "\n".join(lines)
