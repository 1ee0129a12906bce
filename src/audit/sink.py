"""Remote sinks — the system of record for audit entries and alerts.

Every sink write is an idempotent upsert keyed by the entry's UUID:
delivering the same entry twice (a retry racing a late success, or two
instances draining the same queue) stores exactly one row.

`send()` never raises. It returns False on any failure so the caller can
queue the entry for retry. `fetch_range()` reads stored entries back for
compliance reports; sinks that can't be read (HttpSink) return None.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable
from typing import Any

import httpx
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.audit.queries import get_audit_records_in_range
from src.models.audit import AuditLog, SecurityAlertRecord
from src.schemas.audit import AuditEntry, DateRange, SecurityAlert

logger = logging.getLogger(__name__)


class RemoteSink(abc.ABC):
    """Destination for audit entries beyond the local buffer."""

    @abc.abstractmethod
    async def send(self, entry: AuditEntry) -> bool:
        """Deliver one entry. True only on confirmed storage."""

    async def save_alert(self, alert: SecurityAlert) -> bool:
        """Mirror an alert remotely. Sinks without alert storage skip it."""
        return False

    async def fetch_range(self, date_range: DateRange) -> list[AuditEntry] | None:
        """Stored entries inside the window, or None if this sink can't be read back.

        Unlike `send`, read failures propagate.
        """
        return None

    async def close(self) -> None:
        return None


def entry_to_row(entry: AuditEntry) -> dict[str, Any]:
    """Column values for the audit_logs table."""
    payload = entry.model_dump(mode="json")
    return {
        "id": entry.id,
        "timestamp": entry.timestamp,
        "organization_id": entry.organization_id,
        "user_id": entry.user_id,
        "user_email": entry.user_email,
        "user_role": entry.user_role,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "resource_name": entry.resource_name,
        "old_values": payload["old_values"],
        "new_values": payload["new_values"],
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "session_id": entry.session_id,
        "request_id": entry.request_id,
        "success": entry.success,
        "error_message": entry.error_message,
        "risk_level": entry.risk_level.value,
        "compliance_flags": list(entry.compliance_flags),
        "phi_accessed": entry.phi_accessed,
        "ferpa_record_accessed": entry.ferpa_record_accessed,
        "details": payload["details"] or None,
    }


def alert_to_row(alert: SecurityAlert) -> dict[str, Any]:
    """Column values for the security_alerts table."""
    return {
        "id": alert.id,
        "audit_entry_id": alert.audit_entry_id,
        "alert_type": alert.alert_type.value,
        "severity": alert.severity.value,
        "description": alert.description,
        "triggered_at": alert.triggered_at,
        "user_id": alert.user_id,
        "user_email": alert.user_email,
        "details": alert.model_dump(mode="json")["details"] or None,
        "status": alert.status.value,
        "closed_at": alert.closed_at,
        "closed_by": alert.closed_by,
        "resolution": alert.resolution,
    }


def upsert_entry_statement(entry: AuditEntry) -> Any:
    """INSERT ... ON CONFLICT (id) DO NOTHING for one entry."""
    return (
        pg_insert(AuditLog)
        .values(**entry_to_row(entry))
        .on_conflict_do_nothing(index_elements=["id"])
    )


def upsert_alert_statement(alert: SecurityAlert) -> Any:
    """Insert an alert, or move an existing one to its latest status."""
    row = alert_to_row(alert)
    stmt = pg_insert(SecurityAlertRecord).values(**row)
    return stmt.on_conflict_do_update(
        index_elements=["id"],
        set_={
            "status": stmt.excluded.status,
            "closed_at": stmt.excluded.closed_at,
            "closed_by": stmt.excluded.closed_by,
            "resolution": stmt.excluded.resolution,
        },
    )


async def store_entry(db: AsyncSession, entry: AuditEntry) -> bool:
    """Persist an entry. Returns False when the id was already stored."""
    result = await db.execute(upsert_entry_statement(entry))
    await db.commit()
    return bool(result.rowcount)  # type: ignore[attr-defined]


class DatabaseSink(RemoteSink):
    """Writes straight to PostgreSQL through an async session factory."""

    def __init__(self, session_factory: Callable[[], Any]) -> None:
        self._session_factory = session_factory

    async def send(self, entry: AuditEntry) -> bool:
        try:
            async with self._session_factory() as db:
                stored = await store_entry(db, entry)
        except Exception:
            logger.exception("Database sink rejected audit entry %s", entry.id)
            return False
        if not stored:
            logger.debug("Audit entry %s already stored — duplicate delivery ignored", entry.id)
        return True

    async def save_alert(self, alert: SecurityAlert) -> bool:
        try:
            async with self._session_factory() as db:
                await db.execute(upsert_alert_statement(alert))
                await db.commit()
        except Exception:
            logger.exception("Database sink rejected security alert %s", alert.id)
            return False
        return True

    async def fetch_range(self, date_range: DateRange) -> list[AuditEntry]:
        async with self._session_factory() as db:
            return await get_audit_records_in_range(db, date_range)


class HttpSink(RemoteSink):
    """POSTs entries to the audit ingestion endpoint.

    The endpoint performs the same id-keyed upsert, so retries are safe.
    """

    def __init__(self, url: str, token: str = "", timeout: float = 5.0, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )

    async def send(self, entry: AuditEntry) -> bool:
        try:
            response = await self._client.post(
                self._url, content=entry.model_dump_json(), headers=self._headers
            )
        except httpx.HTTPError as exc:
            logger.warning("Audit sink unreachable for entry %s: %s", entry.id, exc)
            return False
        if response.is_success:
            return True
        logger.warning("Audit sink returned %d for entry %s", response.status_code, entry.id)
        return False

    async def close(self) -> None:
        await self._client.aclose()
