"""Compliance reporting and audit log export.

`generate_report` is a pure read-side aggregation over a list of entries:
it never mutates its input and does not depend on arrival order, only on
each entry's own timestamp.

Export formats:
- JSON — the entry array, as recorded.
- CSV  — one row per entry, fixed column order, every cell quoted.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable, Sequence
from datetime import date

from src.audit.errors import AuditExportError
from src.models.enums import ExportFormat, RiskLevel
from src.schemas.audit import AuditEntry, AuditExport, ComplianceReport, DateRange, ReportSummary

CSV_COLUMNS: list[str] = [
    "Timestamp",
    "User",
    "Action",
    "Resource Type",
    "Resource ID",
    "Success",
    "Risk Level",
    "PHI Accessed",
    "FERPA Record",
    "Compliance Flags",
]

_MEDIA_TYPES: dict[ExportFormat, str] = {
    ExportFormat.JSON: "application/json",
    ExportFormat.CSV: "text/csv",
}

# Characters that trigger formula execution in spreadsheet applications
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def is_security_event(entry: AuditEntry) -> bool:
    return entry.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL) or not entry.success


def generate_report(
    entries: Iterable[AuditEntry],
    date_range: DateRange,
    *,
    partial: bool = False,
) -> ComplianceReport:
    """Aggregate the entries that fall inside `date_range`.

    `partial` marks a report built from the bounded local buffer instead of
    the system of record.
    """
    in_range = sorted(
        (e for e in entries if date_range.contains(e.timestamp)),
        key=lambda e: e.timestamp,
        reverse=True,
    )

    ferpa_events = [e for e in in_range if e.ferpa_record_accessed]
    hipaa_events = [e for e in in_range if e.phi_accessed]
    security_events = [e for e in in_range if is_security_event(e)]

    summary = ReportSummary(
        total_events=len(in_range),
        ferpa_events=len(ferpa_events),
        hipaa_events=len(hipaa_events),
        security_events=len(security_events),
        failed_access=sum(1 for e in in_range if not e.success),
        admin_actions=sum(1 for e in in_range if e.action.startswith("ADMIN_")),
        data_exports=sum(1 for e in in_range if e.action == "DATA_EXPORT"),
    )
    return ComplianceReport(
        date_range=date_range,
        ferpa_events=ferpa_events,
        hipaa_events=hipaa_events,
        security_events=security_events,
        summary=summary,
        partial=partial,
    )


def _sanitize_cell(value: str) -> str:
    """Prefix formula-triggering values with a single quote."""
    if value and value[0] in _FORMULA_PREFIXES:
        return f"'{value}"
    return value


def _csv_row(entry: AuditEntry) -> list[str]:
    return [
        entry.timestamp.isoformat(),
        _sanitize_cell(entry.user_email),
        _sanitize_cell(entry.action),
        _sanitize_cell(entry.resource_type),
        _sanitize_cell(entry.resource_id or ""),
        str(entry.success).lower(),
        entry.risk_level.value,
        str(entry.phi_accessed).lower(),
        str(entry.ferpa_record_accessed).lower(),
        ";".join(entry.compliance_flags),
    ]


def to_csv(entries: Sequence[AuditEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for entry in entries:
        writer.writerow(_csv_row(entry))
    return buffer.getvalue()


def to_json(entries: Sequence[AuditEntry]) -> str:
    return json.dumps([e.model_dump(mode="json") for e in entries], indent=2)


def export_filename(fmt: ExportFormat, today: date | None = None) -> str:
    day = (today or date.today()).isoformat()
    return f"lumi-audit-logs-{day}.{fmt.value}"


def serialize_entries(entries: Sequence[AuditEntry], fmt: ExportFormat | str) -> AuditExport:
    """Serialize entries for download. Raises AuditExportError on failure."""
    try:
        fmt = ExportFormat(fmt)
    except ValueError as exc:
        msg = f"Unsupported export format: {fmt!r}"
        raise AuditExportError(msg) from exc

    try:
        content = to_csv(entries) if fmt == ExportFormat.CSV else to_json(entries)
    except (TypeError, ValueError, csv.Error) as exc:
        msg = "Audit log export failed"
        raise AuditExportError(msg) from exc

    return AuditExport(
        content=content,
        filename=export_filename(fmt),
        media_type=_MEDIA_TYPES[fmt],
        record_count=len(entries),
    )
