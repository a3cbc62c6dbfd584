"""Tests for source document parsing."""

from __future__ import annotations

from realm.tools.source import SourceData, extract_dates, split_sections


class TestSplitSections:
    def test_headers_with_and_without_page(self, source_text):
        sections = split_sections(source_text)
        assert [s.name for s in sections] == [
            "CBC Report 2019", "Thyroid Panel 2021", "Metabolic Panel 2024",
        ]
        assert sections[0].page_number == 1
        assert sections[0].label == "CBC Report 2019 - Page 1"
        assert sections[1].page_number is None
        assert sections[1].label == "Thyroid Panel 2021"

    def test_preamble_is_ignored(self, source_text):
        sections = split_sections(source_text)
        assert all("Extracted record" not in s.content for s in sections)

    def test_no_headers(self):
        assert split_sections("just some text\nwithout headers") == []

    def test_content_is_stripped(self):
        sections = split_sections("## [A]\n\nbody\n\n## [B]\nother")
        assert sections[0].content == "body"
        assert sections[1].content == "other"


class TestExtractDates:
    def test_iso(self):
        dates = extract_dates("Collected: 2019-03-12")
        assert [d.date for d in dates] == ["2019-03-12"]

    def test_us_two_digit_year(self):
        dates = extract_dates("Seen 3/4/21")
        assert [d.date for d in dates] == ["2021-03-04"]

    def test_written(self):
        assert [d.date for d in extract_dates("Date: March 5, 2021")] == ["2021-03-05"]
        assert [d.date for d in extract_dates("Since Jan 2020")] == ["2020-01"]

    def test_day_first(self):
        dates = extract_dates("Reported 12 Feb 2022")
        assert [d.date for d in dates] == ["2022-02-12"]

    def test_out_of_range_year_ignored(self):
        assert extract_dates("Born 1975-06-01") == []

    def test_context_kept(self):
        dates = extract_dates("  Visit on 2020-01-02 for review  ")
        assert dates[0].context == "Visit on 2020-01-02 for review"


class TestSourceData:
    def test_parse_builds_temporal_index(self, source_text):
        data = SourceData.parse(source_text)

        assert data.total_sections == 3
        assert data.document_names == [
            "CBC Report 2019", "Thyroid Panel 2021", "Metabolic Panel 2024",
        ]
        assert data.total_characters == len(source_text)
        assert data.date_range is not None
        assert data.date_range.earliest == "2019-03-12"
        assert data.date_range.latest == "2024-07-15"
        assert data.date_range.years == 6
        assert data.years_with_data == [2019, 2021, 2024]
        assert data.missing_years() == [2020, 2022, 2023]
        assert [e.date for e in data.timeline_events] == sorted(
            e.date for e in data.timeline_events
        )

    def test_empty_source(self):
        data = SourceData.parse("")
        assert data.total_sections == 0
        assert data.date_range is None
        assert data.missing_years() == []

    def test_sections_named_is_substring_match(self, source_text):
        data = SourceData.parse(source_text)
        assert [s.name for s in data.sections_named("thyroid")] == ["Thyroid Panel 2021"]
        assert data.sections_of("Thyroid") == []

    def test_search_whole_query_and_terms(self, source_text):
        data = SourceData.parse(source_text)
        hits = data.search("TSH")
        assert [h.section for h in hits] == ["Thyroid Panel 2021"]

        hits = data.search("hemoglobin glucose")
        assert {h.section for h in hits} == {"CBC Report 2019 - Page 1", "Metabolic Panel 2024"}

    def test_search_without_context(self, source_text):
        data = SourceData.parse(source_text)
        hits = data.search("Glucose", include_context=False)
        assert hits[0].matches == ["Glucose: 105 mg/dL"]

    def test_search_max_matches(self, source_text):
        data = SourceData.parse(source_text)
        hits = data.search("TSH", include_context=False, max_matches=1)
        assert len(hits[0].matches) == 1

    def test_value_history(self, source_text):
        data = SourceData.parse(source_text)
        readings = data.value_history("Glucose")
        assert len(readings) == 1
        assert readings[0].value == "105"
        assert readings[0].unit == "mg/dL"
        assert readings[0].date == "2024-07-15"
        assert readings[0].document == "Metabolic Panel 2024"

    def test_value_history_collapses_duplicates(self, source_text):
        data = SourceData.parse(source_text)
        readings = data.value_history("TSH")
        assert [(r.date, r.value) for r in readings] == [("2021-03-05", "2.3")]

    def test_marker_lines(self, source_text):
        data = SourceData.parse(source_text)
        lines = data.marker_lines("hba1c")
        assert lines == [("Metabolic Panel 2024", "| HbA1c | 5.7 *H | 4.0-5.6 | % |")]
