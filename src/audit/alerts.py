"""Alert engine — turns high and critical audit entries into SecurityAlerts.

Rules pick the alert type (first match wins); the alert is appended to the
local alert collection, mirrored to the remote sink, and pushed to the
alerting channel. Delivery is delegated to whatever send function is
injected via `set_send_fn()` — typically an email or paging client.

Alerts are append-only. Closing one is a status transition recorded on the
same alert, never a deletion.

Never raises from `on_entry` — failures are logged and swallowed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from src.audit.sink import RemoteSink
from src.audit.store import LocalStore
from src.models.enums import AlertStatus, AlertType, RiskLevel
from src.schemas.audit import AuditEntry, SecurityAlert

logger = logging.getLogger(__name__)

SendFn = Callable[[str, str], Coroutine[Any, Any, None]]

_CLOSE_ATTEMPTS = 5


@dataclass(frozen=True)
class AlertRule:
    """Maps an entry condition to an alert type."""

    name: str
    alert_type: AlertType
    condition: Callable[[AuditEntry], bool]


ALERT_RULES: list[AlertRule] = [
    AlertRule(
        name="Failed authentication",
        alert_type=AlertType.FAILED_AUTHENTICATION,
        condition=lambda e: not e.success and "AUTH" in e.action,
    ),
    AlertRule(
        name="PHI accessed",
        alert_type=AlertType.PHI_ACCESS,
        condition=lambda e: e.phi_accessed,
    ),
    AlertRule(
        name="Data export",
        alert_type=AlertType.DATA_EXPORT,
        condition=lambda e: e.action == "DATA_EXPORT",
    ),
    AlertRule(
        name="Critical action",
        alert_type=AlertType.CRITICAL_ACTION,
        condition=lambda e: e.risk_level == RiskLevel.CRITICAL,
    ),
]

_SEVERITY_ICON: dict[RiskLevel, str] = {
    RiskLevel.HIGH: "⚠️",
    RiskLevel.CRITICAL: "\U0001f6a8",
}

ALERT_TEMPLATE = (
    "{icon} Security alert ({severity}): {alert_type}\n"
    "{description}\n"
    "User: {user}\n"
    "Audit entry: {audit_entry_id}\n"
    "Triggered: {triggered_at}"
)


def alert_type_for(entry: AuditEntry) -> AlertType:
    """Pick the alert type for an entry. Falls back to security_event."""
    for rule in ALERT_RULES:
        if rule.condition(entry):
            return rule.alert_type
    return AlertType.SECURITY_EVENT


def build_alert(entry: AuditEntry) -> SecurityAlert:
    """Construct the SecurityAlert for a high or critical entry."""
    return SecurityAlert(
        audit_entry_id=entry.id,
        alert_type=alert_type_for(entry),
        severity=entry.risk_level,
        description=f"{entry.action} on {entry.resource_type}",
        user_id=entry.user_id,
        user_email=entry.user_email,
        details={
            "audit_log_id": str(entry.id),
            "action": entry.action,
            "resource_type": entry.resource_type,
            "success": entry.success,
        },
    )


def format_alert(alert: SecurityAlert) -> str:
    return ALERT_TEMPLATE.format(
        icon=_SEVERITY_ICON.get(alert.severity, ""),
        severity=alert.severity.value,
        alert_type=alert.alert_type.value,
        description=alert.description,
        user=alert.user_email or alert.user_id or "unknown",
        audit_entry_id=alert.audit_entry_id,
        triggered_at=alert.triggered_at.isoformat(),
    )


class AlertEngine:
    """Raises, stores, notifies and closes SecurityAlerts."""

    def __init__(
        self,
        store: LocalStore,
        key: str,
        sink: RemoteSink | None = None,
        recipients: list[str] | None = None,
    ) -> None:
        self._store = store
        self._key = key
        self._sink = sink
        self._recipients = list(recipients or [])
        self._send_fn: SendFn | None = None

    def set_send_fn(self, fn: SendFn) -> None:
        """Inject the alerting channel (recipient, message) -> None."""
        self._send_fn = fn

    async def on_entry(self, entry: AuditEntry) -> SecurityAlert | None:
        """Raise an alert for a high or critical entry.

        Never raises — failures are logged and swallowed.
        """
        if not entry.risk_level.is_alerting:
            return None

        try:
            alert = build_alert(entry)
            await self._store.push(self._key, alert.model_dump_json())
        except Exception:
            logger.exception("Failed to record security alert for audit entry %s", entry.id)
            return None

        logger.warning(
            "Security alert raised: %s %s (entry=%s)",
            alert.severity.value,
            alert.alert_type.value,
            entry.id,
        )

        if self._sink is not None:
            try:
                await self._sink.save_alert(alert)
            except Exception:
                logger.exception("Failed to mirror security alert %s", alert.id)

        await self._push_alert(alert)
        return alert

    async def list_alerts(self, status: AlertStatus | None = None) -> list[SecurityAlert]:
        """Stored alerts, newest first, optionally filtered by status."""
        alerts = [alert for _, alert in await self._parsed()]
        if status is not None:
            alerts = [a for a in alerts if a.status == status]
        return alerts

    async def open_count(self) -> int:
        return len(await self.list_alerts(AlertStatus.OPEN))

    async def close_alert(
        self,
        alert_id: uuid.UUID,
        closed_by: str,
        resolution: str | None = None,
    ) -> SecurityAlert | None:
        """Mark an alert closed. Unknown ids return None; closed alerts are unchanged.

        The stored alert is swapped by value, so alerts raised while this runs
        are never overwritten. If the alert changed underneath (closed by
        someone else), the collection is re-read and the check repeated.
        """
        for _ in range(_CLOSE_ATTEMPTS):
            found = await self._find(alert_id)
            if found is None:
                return None
            raw, alert = found
            if alert.status == AlertStatus.CLOSED:
                return alert
            closed = alert.model_copy(update={
                "status": AlertStatus.CLOSED,
                "closed_at": datetime.now(timezone.utc),
                "closed_by": closed_by,
                "resolution": resolution,
            })
            if not await self._store.replace_item(self._key, raw, closed.model_dump_json()):
                continue
            if self._sink is not None:
                await self._sink.save_alert(closed)
            logger.info("Security alert %s closed by %s", alert_id, closed_by)
            return closed

        logger.error("Security alert %s kept changing — close abandoned", alert_id)
        return None

    async def _find(self, alert_id: uuid.UUID) -> tuple[str, SecurityAlert] | None:
        for raw, alert in await self._parsed():
            if alert.id == alert_id:
                return raw, alert
        return None

    async def _parsed(self) -> list[tuple[str, SecurityAlert]]:
        result: list[tuple[str, SecurityAlert]] = []
        for raw in await self._store.items(self._key):
            try:
                result.append((raw, SecurityAlert.model_validate_json(raw)))
            except ValidationError:
                logger.error("Unreadable security alert in %s", self._key)
        return result

    async def _push_alert(self, alert: SecurityAlert) -> None:
        """Send the alert message to every configured recipient."""
        if self._send_fn is None:
            return

        message = format_alert(alert)
        for recipient in self._recipients:
            try:
                await self._send_fn(recipient, message)
            except Exception:
                logger.exception("Failed to send security alert to %s", recipient)
