"""Read queries against the remote audit tables (the system of record).

The local ring only holds the most recent entries; these queries reach
everything the sink has stored.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.audit import AuditLog
from src.schemas.audit import AuditEntry, AuditFilters, DateRange


def row_to_entry(row: AuditLog) -> AuditEntry:
    """Rebuild the recorded entry from its stored row."""
    return AuditEntry(
        id=row.id,
        timestamp=row.timestamp,
        organization_id=row.organization_id,
        user_id=row.user_id,
        user_email=row.user_email,
        user_role=row.user_role,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        resource_name=row.resource_name,
        old_values=row.old_values,
        new_values=row.new_values,
        ip_address=row.ip_address or "unknown",
        user_agent=row.user_agent or "unknown",
        session_id=row.session_id,
        request_id=row.request_id,
        success=row.success,
        error_message=row.error_message,
        risk_level=row.risk_level,
        compliance_flags=list(row.compliance_flags or []),
        phi_accessed=row.phi_accessed,
        ferpa_record_accessed=row.ferpa_record_accessed,
        details=row.details or {},
    )


async def get_audit_records_paginated(
    db: AsyncSession,
    filters: AuditFilters | None = None,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[AuditEntry], int]:
    """Get stored audit entries, newest first, with the same filters as the ring."""
    query = select(AuditLog)
    count_query = select(func.count(AuditLog.id))

    conditions = []
    if filters is not None:
        if filters.user_id:
            conditions.append(AuditLog.user_id == filters.user_id)
        if filters.resource_type:
            conditions.append(AuditLog.resource_type == filters.resource_type)
        if filters.action:
            conditions.append(AuditLog.action == filters.action)
        if filters.risk_level:
            conditions.append(AuditLog.risk_level == filters.risk_level.value)
        if filters.date_range:
            conditions.append(AuditLog.timestamp >= filters.date_range.start)
            conditions.append(AuditLog.timestamp <= filters.date_range.end)

    if conditions:
        query = query.where(*conditions)
        count_query = count_query.where(*conditions)

    result = await db.execute(count_query)
    total = result.scalar() or 0

    offset = (page - 1) * per_page
    result = await db.execute(
        query.order_by(AuditLog.timestamp.desc()).offset(offset).limit(per_page)
    )
    entries = [row_to_entry(row) for row in result.scalars().all()]

    return entries, total


async def get_audit_records_in_range(db: AsyncSession, date_range: DateRange) -> list[AuditEntry]:
    """Every stored entry inside the inclusive window, newest first."""
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.timestamp >= date_range.start, AuditLog.timestamp <= date_range.end)
        .order_by(AuditLog.timestamp.desc())
    )
    return [row_to_entry(row) for row in result.scalars().all()]
