"""AuditLog model — the remote system of record for audit entries.

Rows are keyed by the entry's own UUID, so re-delivering an entry is a
no-op insert. This table is append-only — no updates or deletes.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, StoredRecordMixin


class AuditLog(StoredRecordMixin, Base):
    """Immutable audit trail entry."""

    __tablename__ = "audit_logs"

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    # Actor (anonymous actions are recorded as "anonymous"/"unknown")
    organization_id: Mapped[str | None] = mapped_column(String(100), index=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[str] = mapped_column(String(50), nullable=False)

    # Action and resource
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(100))
    resource_name: Mapped[str | None] = mapped_column(String(500))

    # Change payload
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    # Request context
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(500))
    session_id: Mapped[str | None] = mapped_column(String(100))
    request_id: Mapped[str | None] = mapped_column(String(100))

    # Outcome
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text)

    # Classification
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False, index=True, comment="RiskLevel enum value")
    compliance_flags: Mapped[list[str]] = mapped_column(ARRAY(String(50)), nullable=False, default=list)
    phi_accessed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ferpa_record_accessed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    def __repr__(self) -> str:
        return f"<AuditLog action={self.action} resource={self.resource_type} risk={self.risk_level}>"


class SecurityAlertRecord(StoredRecordMixin, Base):
    """Alert raised for a high or critical audit entry.

    Append-only; closing updates status, closed_at and closed_by only.
    """

    __tablename__ = "security_alerts"

    audit_entry_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False, comment="AlertType enum value")
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(100))
    user_email: Mapped[str | None] = mapped_column(String(255))
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open", index=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by: Mapped[str | None] = mapped_column(String(100))
    resolution: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<SecurityAlert type={self.alert_type} severity={self.severity} status={self.status}>"
