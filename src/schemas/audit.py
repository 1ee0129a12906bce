"""Audit schemas — the AuditEntry record and everything built around it.

AuditEntry is frozen: once recorded it is never edited. Corrections are new
entries that reference the original id in `details["corrects"]`.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.models.enums import AlertStatus, AlertType, DeliveryState, RiskLevel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Actor(BaseModel):
    """Identity of whoever triggered the audited action."""

    id: str
    email: str | None = None
    role: str | None = None
    organization_id: str | None = None

    model_config = {"frozen": True}

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class RequestContext(BaseModel):
    """Best-effort request metadata; every field may be missing."""

    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    request_id: str | None = None

    model_config = {"frozen": True}


class AuditIntent(BaseModel):
    """What a log_* call wants recorded, before enrichment.

    `risk_level` is only set by the recorder's own regulatory paths
    (PHI, FERPA, admin, auth, export). When it is None the taxonomy
    classifies the entry.
    """

    action: str
    resource_type: str
    resource_id: str | None = None
    resource_name: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    success: bool = True
    error_message: str | None = None
    risk_level: RiskLevel | None = None
    compliance_flags: list[str] = Field(default_factory=list)
    phi_accessed: bool = False
    ferpa_record_accessed: bool = False
    details: dict[str, Any] = Field(default_factory=dict)
    # Raw CRUD verb handed to the taxonomy (e.g. "delete" for DATA_DELETE)
    verb: str | None = None


class AuditEntry(BaseModel):
    """A single immutable audit record."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    timestamp: datetime = Field(default_factory=_utcnow)

    # Actor
    organization_id: str | None = None
    user_id: str = "anonymous"
    user_email: str = "unknown"
    user_role: str = "unknown"

    # Action and resource
    action: str
    resource_type: str
    resource_id: str | None = None
    resource_name: str | None = None

    # Change payload
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None

    # Context
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    session_id: str | None = None
    request_id: str | None = None

    # Outcome
    success: bool = True
    error_message: str | None = None

    # Classification (derived)
    risk_level: RiskLevel = RiskLevel.LOW
    compliance_flags: list[str] = Field(default_factory=list)
    phi_accessed: bool = False
    ferpa_record_accessed: bool = False

    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class SecurityAlert(BaseModel):
    """Alert derived from a high or critical AuditEntry."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    audit_entry_id: uuid.UUID
    alert_type: AlertType
    severity: RiskLevel
    description: str
    triggered_at: datetime = Field(default_factory=_utcnow)
    user_id: str | None = None
    user_email: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    status: AlertStatus = AlertStatus.OPEN
    closed_at: datetime | None = None
    closed_by: str | None = None
    resolution: str | None = None

    model_config = {"frozen": True}


class FailedDelivery(BaseModel):
    """An entry the remote sink rejected, waiting in the retry queue."""

    entry: AuditEntry
    state: DeliveryState = DeliveryState.QUEUED_RETRY
    attempts: int = 1
    first_failed_at: datetime = Field(default_factory=_utcnow)
    last_attempt_at: datetime = Field(default_factory=_utcnow)
    last_error: str | None = None


class DateRange(BaseModel):
    """Inclusive time window. Naive bounds are taken as UTC."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class AuditFilters(BaseModel):
    """Optional filters for get_audit_logs; unset fields match everything."""

    user_id: str | None = None
    resource_type: str | None = None
    action: str | None = None
    risk_level: RiskLevel | None = None
    date_range: DateRange | None = None

    def matches(self, entry: AuditEntry) -> bool:
        if self.user_id and entry.user_id != self.user_id:
            return False
        if self.resource_type and entry.resource_type != self.resource_type:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.risk_level and entry.risk_level != self.risk_level:
            return False
        if self.date_range and not self.date_range.contains(entry.timestamp):
            return False
        return True


class ReportSummary(BaseModel):
    """Event counts for a compliance report."""

    total_events: int = 0
    ferpa_events: int = 0
    hipaa_events: int = 0
    security_events: int = 0
    failed_access: int = 0
    admin_actions: int = 0
    data_exports: int = 0


class ComplianceReport(BaseModel):
    """FERPA/HIPAA-focused summary of the entries in a date range."""

    date_range: DateRange
    generated_at: datetime = Field(default_factory=_utcnow)
    ferpa_events: list[AuditEntry] = Field(default_factory=list)
    hipaa_events: list[AuditEntry] = Field(default_factory=list)
    security_events: list[AuditEntry] = Field(default_factory=list)
    summary: ReportSummary = Field(default_factory=ReportSummary)
    # True when the system of record was unreachable and only the local buffer was counted
    partial: bool = False


class AuditExport(BaseModel):
    """Serialized audit logs ready to hand to the client."""

    content: str
    filename: str
    media_type: str
    record_count: int
