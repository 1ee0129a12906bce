"""Tests for reads against the audit_logs system of record."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.audit.queries import get_audit_records_in_range, get_audit_records_paginated, row_to_entry
from src.models.audit import AuditLog
from src.models.enums import RiskLevel
from src.schemas.audit import AuditFilters, DateRange


def _row() -> AuditLog:
    return AuditLog(
        id=uuid.uuid4(),
        timestamp=datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc),
        user_id="u-1",
        user_email="educator@sunnyday.org",
        user_role="educator",
        action="FERPA_VIEW",
        resource_type="educational_record",
        resource_id="c-1",
        success=True,
        risk_level="high",
        compliance_flags=["FERPA_EDUCATIONAL_RECORD", "PARENT_RIGHTS"],
        phi_accessed=False,
        ferpa_record_accessed=True,
        details=None,
    )


class TestRowToEntry:
    def test_round_trip_fields(self) -> None:
        row = _row()
        entry = row_to_entry(row)
        assert entry.id == row.id
        assert entry.risk_level == RiskLevel.HIGH
        assert entry.compliance_flags == ["FERPA_EDUCATIONAL_RECORD", "PARENT_RIGHTS"]
        assert entry.ip_address == "unknown"
        assert entry.details == {}


class TestPaginatedQuery:
    @pytest.mark.asyncio
    async def test_returns_entries_and_total(self) -> None:
        row = _row()
        count_result = MagicMock()
        count_result.scalar.return_value = 41
        rows_result = MagicMock()
        rows_result.scalars.return_value.all.return_value = [row]
        db = MagicMock()
        db.execute = AsyncMock(side_effect=[count_result, rows_result])

        entries, total = await get_audit_records_paginated(
            db, AuditFilters(risk_level=RiskLevel.HIGH, user_id="u-1"), page=3, per_page=20
        )

        assert total == 41
        assert [e.id for e in entries] == [row.id]
        assert db.execute.await_count == 2
        page_sql = str(db.execute.await_args_list[1].args[0])
        assert "LIMIT" in page_sql
        assert "OFFSET" in page_sql


class TestRangeQuery:
    @pytest.mark.asyncio
    async def test_window_bounds_and_order(self) -> None:
        row = _row()
        rows_result = MagicMock()
        rows_result.scalars.return_value.all.return_value = [row]
        db = MagicMock()
        db.execute = AsyncMock(return_value=rows_result)
        window = DateRange(start=datetime(2026, 3, 2), end=datetime(2026, 3, 3))

        entries = await get_audit_records_in_range(db, window)

        assert [e.id for e in entries] == [row.id]
        sql = str(db.execute.await_args.args[0])
        assert "audit_logs.timestamp >=" in sql
        assert "audit_logs.timestamp <=" in sql
        assert "ORDER BY audit_logs.timestamp DESC" in sql
        assert "LIMIT" not in sql
