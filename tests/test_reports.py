"""Tests for compliance reports and audit log export."""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime, timedelta, timezone

import pytest

from src.audit.errors import AuditExportError
from src.audit.reports import (
    CSV_COLUMNS,
    export_filename,
    generate_report,
    serialize_entries,
    to_csv,
)
from src.models.enums import ExportFormat, RiskLevel
from src.schemas.audit import AuditEntry, DateRange

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _entry(minutes_ago: int = 0, **overrides: object) -> AuditEntry:
    data: dict[str, object] = {
        "timestamp": NOW - timedelta(minutes=minutes_ago),
        "action": "DATA_READ",
        "resource_type": "classrooms",
        "user_email": "educator@sunnyday.org",
    }
    data.update(overrides)
    return AuditEntry(**data)


@pytest.fixture
def window() -> DateRange:
    return DateRange(start=NOW - timedelta(hours=1), end=NOW)


class TestGenerateReport:
    def test_summary_counts(self, window: DateRange) -> None:
        entries = [
            _entry(1, ferpa_record_accessed=True),
            _entry(2, phi_accessed=True, risk_level=RiskLevel.HIGH),
            _entry(3, action="AUTH_FAILED_LOGIN", success=False, risk_level=RiskLevel.MEDIUM),
            _entry(4, action="ADMIN_ROLE_CHANGE", risk_level=RiskLevel.HIGH),
            _entry(5, action="DATA_EXPORT", risk_level=RiskLevel.MEDIUM),
            _entry(600),  # outside the window
        ]
        report = generate_report(entries, window)
        summary = report.summary

        assert summary.total_events == 5
        assert summary.ferpa_events == 1
        assert summary.hipaa_events == 1
        assert summary.security_events == 3  # two high, one failure
        assert summary.failed_access == 1
        assert summary.admin_actions == 1
        assert summary.data_exports == 1
        assert len(report.security_events) == 3

    def test_window_is_inclusive(self, window: DateRange) -> None:
        edges = [_entry(0), _entry(60)]
        assert generate_report(edges, window).summary.total_events == 2

    def test_independent_of_input_order(self, window: DateRange) -> None:
        entries = [_entry(i, ferpa_record_accessed=True) for i in range(5)]
        forward = generate_report(entries, window)
        backward = generate_report(list(reversed(entries)), window)
        assert forward.summary == backward.summary
        assert [e.id for e in forward.ferpa_events] == [e.id for e in backward.ferpa_events]

    def test_input_not_mutated(self, window: DateRange) -> None:
        entries = [_entry(3), _entry(1)]
        snapshot = list(entries)
        generate_report(entries, window)
        assert entries == snapshot

    def test_empty(self, window: DateRange) -> None:
        report = generate_report([], window)
        assert report.summary.total_events == 0
        assert report.ferpa_events == []
        assert report.partial is False

    def test_naive_window_taken_as_utc(self) -> None:
        naive = DateRange(start=datetime(2026, 3, 2, 11, 0), end=datetime(2026, 3, 2, 12, 0))
        assert naive.start.tzinfo is not None
        assert naive.end == NOW

        report = generate_report([_entry(1), _entry(600)], naive)
        assert report.summary.total_events == 1

    def test_partial_flag_carried(self, window: DateRange) -> None:
        assert generate_report([_entry(1)], window, partial=True).partial is True


class TestCsvExport:
    def test_header_and_row(self) -> None:
        entry = _entry(
            resource_id="r-1",
            compliance_flags=["FERPA_EDUCATIONAL_RECORD", "HIPAA_PHI_DATA"],
            phi_accessed=True,
        )
        rows = list(csv.reader(io.StringIO(to_csv([entry]))))

        assert rows[0] == CSV_COLUMNS
        assert rows[1] == [
            entry.timestamp.isoformat(),
            "educator@sunnyday.org",
            "DATA_READ",
            "classrooms",
            "r-1",
            "true",
            "low",
            "true",
            "false",
            "FERPA_EDUCATIONAL_RECORD;HIPAA_PHI_DATA",
        ]

    def test_every_cell_quoted(self) -> None:
        content = to_csv([_entry()])
        header = content.splitlines()[0]
        assert header.startswith('"Timestamp","User"')

    def test_formula_cells_neutralized(self) -> None:
        rows = list(csv.reader(io.StringIO(to_csv([_entry(resource_id="=HYPERLINK(\"x\")")]))))
        assert rows[1][4].startswith("'=")


class TestSerializeEntries:
    def test_json(self) -> None:
        entries = [_entry(1), _entry(2)]
        export = serialize_entries(entries, ExportFormat.JSON)

        assert export.media_type == "application/json"
        assert export.record_count == 2
        parsed = json.loads(export.content)
        assert [p["id"] for p in parsed] == [str(e.id) for e in entries]

    def test_csv_from_string_format(self) -> None:
        export = serialize_entries([_entry()], "csv")
        assert export.media_type == "text/csv"
        assert export.filename.endswith(".csv")

    def test_unknown_format(self) -> None:
        with pytest.raises(AuditExportError, match="Unsupported export format"):
            serialize_entries([], "pdf")

    def test_filename(self) -> None:
        assert export_filename(ExportFormat.JSON, date(2026, 3, 2)) == "lumi-audit-logs-2026-03-02.json"
        assert export_filename(ExportFormat.CSV, date(2026, 3, 2)) == "lumi-audit-logs-2026-03-02.csv"
