"""Source document parsing for the read tools.

Extracted source text arrives as one markdown blob whose documents are
introduced by ``## [name]`` or ``## [name] - Page N`` headers. This module
splits it into sections and derives the temporal index (dated events,
documents per year, overall date range) that the analyst, validator and
structurer tools read from.

The heuristics here are deliberately lightweight. They feed tool output
the model reads, never a decision the engine makes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SECTION_HEADER = re.compile(r"^## \[([^\]]+)\](?:\s*-\s*Page\s*(\d+))?")

MIN_YEAR = 1990
MAX_YEAR = 2030

_MONTH = (
    r"(Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|Jun(?:e)?|Jul(?:y)?"
    r"|Aug(?:ust)?|Sep(?:tember)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
_ISO_DATE = re.compile(r"(\d{4})[-/](\d{1,2})(?:[-/](\d{1,2}))?")
_US_DATE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4})")
_WRITTEN_DATE = re.compile(_MONTH + r"\s+(\d{1,2})?,?\s*(\d{4})", re.IGNORECASE)
_DAY_FIRST_DATE = re.compile(r"(\d{1,2})\s+" + _MONTH + r"\s+(\d{4})", re.IGNORECASE)

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_UNIT_VALUE = re.compile(
    r"(\d+\.?\d*)\s*(mg/dL|g/dL|mmol/L|μmol/L|umol/L|ng/mL|pg/mL|mIU/L|IU/mL|%|x10\^9/L|cells/μL)?",
    re.IGNORECASE,
)


@dataclass
class DocumentSection:
    name: str
    content: str
    page_number: int | None = None
    start_line: int = 0
    end_line: int = 0

    @property
    def label(self) -> str:
        if self.page_number is not None:
            return f"{self.name} - Page {self.page_number}"
        return self.name


@dataclass(frozen=True)
class ExtractedDate:
    date: str
    year: int
    month: int | None
    day: int | None
    context: str


@dataclass(frozen=True)
class TimelineEvent:
    date: str
    year: int
    month: int | None
    day: int | None
    document: str
    snippet: str


@dataclass(frozen=True)
class DateRange:
    earliest: str
    latest: str
    years: int


@dataclass(frozen=True)
class ValueReading:
    date: str
    value: str
    unit: str
    document: str
    context: str


@dataclass(frozen=True)
class SearchHit:
    section: str
    matches: list[str]


def _format_date(year: int, month: int | None, day: int | None) -> str:
    if month is None:
        return f"{year}"
    if day is None:
        return f"{year}-{month:02d}"
    return f"{year}-{month:02d}-{day:02d}"


def _valid(year: int, month: int | None, day: int | None) -> bool:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return False
    if month is not None and not 1 <= month <= 12:
        return False
    if day is not None and not 1 <= day <= 31:
        return False
    return True


def extract_dates(text: str) -> list[ExtractedDate]:
    """Find ISO, US and written dates in text, one result per date and line.

    Years outside 1990-2030 are ignored. Two-digit US years are read as 20xx.
    """
    found: list[ExtractedDate] = []
    seen: set[tuple[str, str]] = set()

    def add(year: int, month: int | None, day: int | None, context: str) -> None:
        if not _valid(year, month, day):
            return
        date = _format_date(year, month, day)
        if (date, context) in seen:
            return
        seen.add((date, context))
        found.append(ExtractedDate(date, year, month, day, context))

    for line in text.split("\n"):
        context = line.strip()[:100]

        for m in _ISO_DATE.finditer(line):
            day = int(m.group(3)) if m.group(3) else None
            add(int(m.group(1)), int(m.group(2)), day, context)

        for m in _US_DATE.finditer(line):
            year = int(m.group(3))
            if year < 100:
                year += 2000
            add(year, int(m.group(1)), int(m.group(2)), context)

        day_first_spans = []
        for m in _DAY_FIRST_DATE.finditer(line):
            day_first_spans.append(m.span())
            month = _MONTHS[m.group(2)[:3].lower()]
            add(int(m.group(3)), month, int(m.group(1)), context)

        for m in _WRITTEN_DATE.finditer(line):
            if any(start <= m.start() and m.end() <= end for start, end in day_first_spans):
                continue
            month = _MONTHS[m.group(1)[:3].lower()]
            day = int(m.group(2)) if m.group(2) else None
            add(int(m.group(3)), month, day, context)

    return found


def split_sections(text: str) -> list[DocumentSection]:
    """Split extracted text on ``## [name]`` headers.

    Text before the first header is not part of any document.
    """
    sections: list[DocumentSection] = []
    lines = text.split("\n")
    current: DocumentSection | None = None
    buffer: list[str] = []

    for i, line in enumerate(lines):
        match = SECTION_HEADER.match(line)
        if match:
            if current is not None:
                current.content = "\n".join(buffer).strip()
                current.end_line = i - 1
                sections.append(current)
            current = DocumentSection(
                name=match.group(1),
                content="",
                page_number=int(match.group(2)) if match.group(2) else None,
                start_line=i,
                end_line=i,
            )
            buffer = []
        elif current is not None:
            buffer.append(line)

    if current is not None:
        current.content = "\n".join(buffer).strip()
        current.end_line = len(lines) - 1
        sections.append(current)
    return sections


@dataclass
class SourceData:
    """Parsed source documents plus their temporal index."""

    sections: list[DocumentSection] = field(default_factory=list)
    document_names: list[str] = field(default_factory=list)
    total_characters: int = 0
    date_range: DateRange | None = None
    documents_by_year: dict[int, list[str]] = field(default_factory=dict)
    timeline_events: list[TimelineEvent] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> SourceData:
        sections = split_sections(text)
        names = list(dict.fromkeys(s.name for s in sections))

        events: list[TimelineEvent] = []
        by_year: dict[int, list[str]] = {}
        for section in sections:
            for found in extract_dates(section.content):
                events.append(TimelineEvent(
                    date=found.date,
                    year=found.year,
                    month=found.month,
                    day=found.day,
                    document=section.name,
                    snippet=found.context,
                ))
                docs = by_year.setdefault(found.year, [])
                if section.name not in docs:
                    docs.append(section.name)

        events.sort(key=lambda e: e.date)
        date_range = None
        if events:
            earliest, latest = events[0].date, events[-1].date
            date_range = DateRange(
                earliest=earliest,
                latest=latest,
                years=int(latest[:4]) - int(earliest[:4]) + 1,
            )

        data = cls(
            sections=sections,
            document_names=names,
            total_characters=len(text),
            date_range=date_range,
            documents_by_year=dict(sorted(by_year.items())),
            timeline_events=events,
        )
        logger.debug(
            "Parsed %d sections, %d timeline events, date range %s",
            len(sections), len(events),
            f"{date_range.earliest} to {date_range.latest}" if date_range else "none",
        )
        return data

    @property
    def total_sections(self) -> int:
        return len(self.sections)

    @property
    def years_with_data(self) -> list[int]:
        return sorted(self.documents_by_year)

    def missing_years(self) -> list[int]:
        """Years inside the date range that have no dated document."""
        if self.date_range is None:
            return []
        first = int(self.date_range.earliest[:4])
        last = int(self.date_range.latest[:4])
        return [y for y in range(first, last + 1) if y not in self.documents_by_year]

    def sections_named(self, name: str) -> list[DocumentSection]:
        """Sections whose document name contains ``name`` (case-insensitive)."""
        needle = name.lower()
        return [s for s in self.sections if needle in s.name.lower()]

    def sections_of(self, name: str) -> list[DocumentSection]:
        return [s for s in self.sections if s.name == name]

    def search(
        self,
        query: str,
        *,
        include_context: bool = True,
        max_matches: int | None = None,
    ) -> list[SearchHit]:
        """Match the whole query or any term longer than two characters.

        With ``include_context`` each hit carries two lines either side.
        """
        query_lower = query.lower()
        terms = [t for t in query_lower.split() if len(t) > 2]
        hits: list[SearchHit] = []

        def matches(text: str) -> bool:
            return query_lower in text or any(t in text for t in terms)

        for section in self.sections:
            if not matches(section.content.lower()):
                continue
            lines = section.content.split("\n")
            found: list[str] = []
            for i, line in enumerate(lines):
                if not matches(line.lower()):
                    continue
                if include_context:
                    block = "\n".join(lines[max(0, i - 2):i + 3])
                    if block not in found:
                        found.append(block)
                else:
                    found.append(line)
            if found:
                hits.append(SearchHit(section.label, found[:max_matches] if max_matches else found))
        return hits

    def value_history(self, marker: str) -> list[ValueReading]:
        """Numeric readings of a marker across documents, oldest first.

        Each reading is dated with the first date found in its section.
        Duplicate date and value pairs are collapsed.
        """
        escaped = re.escape(marker)
        patterns = [
            re.compile(escaped + r"[:\s]+([\d.,]+)\s*(\w*/\w*|\w+)?", re.IGNORECASE),
            re.compile(r"([\d.,]+)\s*(\w*/\w*|\w+)?\s*" + escaped, re.IGNORECASE),
            _UNIT_VALUE,
        ]
        marker_lower = marker.lower()
        readings: list[ValueReading] = []

        for section in self.sections:
            section_date: str | None = None
            for line in section.content.split("\n"):
                if marker_lower not in line.lower():
                    continue
                for pattern in patterns:
                    match = pattern.search(line)
                    if match and match.group(1):
                        if section_date is None:
                            dates = extract_dates(section.content)
                            section_date = dates[0].date if dates else "Unknown date"
                        readings.append(ValueReading(
                            date=section_date,
                            value=match.group(1),
                            unit=match.group(2) or "",
                            document=section.name,
                            context=line.strip()[:100],
                        ))
                        break

        readings.sort(key=lambda r: r.date)
        unique: list[ValueReading] = []
        seen: set[tuple[str, str]] = set()
        for reading in readings:
            key = (reading.date, reading.value)
            if key not in seen:
                seen.add(key)
                unique.append(reading)
        return unique

    def marker_lines(self, marker: str) -> list[tuple[str, str]]:
        """``(document, line)`` pairs for every line mentioning the marker."""
        needle = marker.lower()
        return [
            (section.name, line.strip())
            for section in self.sections
            for line in section.content.split("\n")
            if needle in line.lower()
        ]
