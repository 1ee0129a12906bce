"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization and PostgreSQL text columns.
"""

from __future__ import annotations

from enum import Enum


class RiskLevel(str, Enum):
    """Coarse ordinal driving alerting and retention policy."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]

    def at_least(self, floor: RiskLevel) -> RiskLevel:
        """Return the higher of this level and `floor`."""
        return self if self.rank >= floor.rank else floor

    @property
    def is_alerting(self) -> bool:
        """High and critical entries raise a SecurityAlert."""
        return self.rank >= _RISK_ORDER[RiskLevel.HIGH]


_RISK_ORDER: dict[RiskLevel, int] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class ComplianceFlag(str, Enum):
    """Regulatory tags attached to an audit entry (many per entry)."""

    FERPA_EDUCATIONAL_RECORD = "FERPA_EDUCATIONAL_RECORD"
    HIPAA_PHI_DATA = "HIPAA_PHI_DATA"
    HIPAA_PHI_ACCESS = "HIPAA_PHI_ACCESS"
    AUDIT_REQUIRED = "AUDIT_REQUIRED"
    PARENT_RIGHTS = "PARENT_RIGHTS"
    AUTHENTICATION = "AUTHENTICATION"
    ADMIN_PRIVILEGE = "ADMIN_PRIVILEGE"
    ELEVATED_ACCESS = "ELEVATED_ACCESS"
    DATA_EXPORT = "DATA_EXPORT"
    PHI_EXPORT = "PHI_EXPORT"
    HIPAA_AUDIT_REQUIRED = "HIPAA_AUDIT_REQUIRED"
    FERPA_EXPORT = "FERPA_EXPORT"
    EDUCATIONAL_RECORD_SHARED = "EDUCATIONAL_RECORD_SHARED"


class DataAction(str, Enum):
    """CRUD verbs accepted by log_data_access."""

    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AuthAction(str, Enum):
    """Authentication events accepted by log_auth_event."""

    LOGIN = "login"
    LOGOUT = "logout"
    FAILED_LOGIN = "failed_login"
    PASSWORD_CHANGE = "password_change"
    MFA_CHALLENGE = "mfa_challenge"


class AlertType(str, Enum):
    """Why a SecurityAlert was raised — first matching rule wins."""

    FAILED_AUTHENTICATION = "failed_authentication"
    PHI_ACCESS = "phi_access"
    DATA_EXPORT = "data_export"
    CRITICAL_ACTION = "critical_action"
    SECURITY_EVENT = "security_event"


class AlertStatus(str, Enum):
    """SecurityAlert lifecycle — closing is a transition, never a delete."""

    OPEN = "open"
    CLOSED = "closed"


class DeliveryState(str, Enum):
    """Remote delivery state of a single audit entry."""

    PENDING_LOCAL = "pending_local"
    QUEUED_RETRY = "queued_retry"
    DELIVERED = "delivered"


class ExportFormat(str, Enum):
    """Serialization formats for audit log export."""

    JSON = "json"
    CSV = "csv"
