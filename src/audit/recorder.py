"""Audit event recorder — every regulated data touch point calls in here.

Each `log_*` method assembles an AuditIntent and hands it to `record()`,
which:

1. resolves the current actor and request context (falling back to
   anonymous/unknown),
2. classifies the entry with the taxonomy and the PHI detector, unless the
   call site fixed the risk level as a regulatory floor,
3. encrypts the sensitive fields of its old/new value snapshots, then
   appends it to the bounded local ring (awaited),
4. submits it for remote delivery (not awaited; rejected writes go to the
   retry queue),
5. raises a SecurityAlert when the risk is high or critical.

Nothing in the logging path raises. A broken audit pipeline must never break
the feature it is auditing: infrastructure failures are logged, queued or
defaulted. Only `clear_audit_logs` (authorization) and `export_audit_logs`
(serialization) surface errors, because those are caller-initiated.

Usage:
    recorder = AuditRecorder(store, sink)
    await recorder.start()
    await recorder.log_data_access("children", child.id, child.name, "create")
"""

from __future__ import annotations

import functools
import logging
import secrets
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any, TypeVar

from src.audit.alerts import AlertEngine, SendFn
from src.audit.delivery import DeliveryWorker
from src.audit.errors import AuditAuthorizationError, AuditExportError
from src.audit.identity import ContextProvider, IdentityProvider, context_identity, context_request
from src.audit.reports import generate_report, serialize_entries
from src.audit.retry import RetryQueue
from src.audit.sink import RemoteSink
from src.audit.store import LocalStore
from src.models.enums import AuthAction, ComplianceFlag, DataAction, ExportFormat, RiskLevel
from src.schemas.audit import (
    Actor,
    AuditEntry,
    AuditExport,
    AuditFilters,
    AuditIntent,
    ComplianceReport,
    DateRange,
    RequestContext,
)
from src.security import taxonomy
from src.security.encryption import FieldEncryptor, entity_for_resource, field_encryptor
from src.security.phi import detect_phi

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUFFER_SIZE = 1000
REDACTED = "[redacted]"


def _absorb_failures(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T | None]]:
    """Log and swallow any exception so audit logging can't break the caller."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T | None:
        try:
            return await fn(*args, **kwargs)
        except Exception:
            logger.exception("Audit logging failed in %s", fn.__name__)
            return None

    return wrapper


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def _text_values(value: Any) -> Iterable[str]:
    """Every string nested inside a details/values payload."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _text_values(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _text_values(item)


class AuditRecorder:
    """Records audit entries through a local ring plus a remote sink."""

    def __init__(
        self,
        store: LocalStore,
        sink: RemoteSink,
        *,
        identity: IdentityProvider = context_identity,
        request_context: ContextProvider = context_request,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        key_prefix: str = "lumi",
        alert_recipients: list[str] | None = None,
        encryptor: FieldEncryptor | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._encryptor = encryptor or field_encryptor
        self._identity = identity
        self._request_context = request_context
        self._buffer_size = buffer_size
        self._prefix = key_prefix
        self._session_id = _generate_id("sess")

        self.logs_key = f"{key_prefix}:audit_logs"
        self.retry_queue = RetryQueue(store, sink, key=f"{key_prefix}:failed_audit_logs")
        self.delivery = DeliveryWorker(sink, self.retry_queue)
        self.alerts = AlertEngine(
            store,
            key=f"{key_prefix}:security_alerts",
            sink=sink,
            recipients=alert_recipients,
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.delivery.start()

    async def stop(self) -> None:
        await self.delivery.stop()

    async def drain(self) -> None:
        """Wait for every submitted entry to reach the sink or the retry queue."""
        await self.delivery.drain()

    def set_alert_send_fn(self, fn: SendFn) -> None:
        self.alerts.set_send_fn(fn)

    # ── Intent-level logging API ─────────────────────────────────────

    @_absorb_failures
    async def log_data_access(
        self,
        resource_type: str,
        resource_id: str | None,
        resource_name: str | None,
        action: DataAction | str,
        details: dict[str, Any] | None = None,
        *,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> AuditEntry | None:
        """Log a read/create/update/delete on any resource."""
        verb = action.value if isinstance(action, DataAction) else str(action).lower()
        return await self.record(AuditIntent(
            action=f"DATA_{verb.upper()}",
            verb=verb,
            resource_type=resource_type,
            resource_id=_as_id(resource_id),
            resource_name=resource_name,
            old_values=old_values,
            new_values=new_values,
            success=success,
            error_message=error_message,
            details=dict(details or {}),
        ))

    @_absorb_failures
    async def log_phi_access(
        self,
        resource_type: str,
        resource_id: str | None,
        phi_type: str,
        access_granted: bool,
        justification: str | None = None,
    ) -> AuditEntry | None:
        """Log a PHI access attempt. Always critical, granted or denied."""
        return await self.record(AuditIntent(
            action="PHI_ACCESS_GRANTED" if access_granted else "PHI_ACCESS_DENIED",
            resource_type=resource_type,
            resource_id=_as_id(resource_id),
            resource_name=f"PHI: {phi_type}",
            success=access_granted,
            risk_level=RiskLevel.CRITICAL,
            compliance_flags=[ComplianceFlag.HIPAA_PHI_ACCESS.value, ComplianceFlag.AUDIT_REQUIRED.value],
            phi_accessed=access_granted,
            details={
                "phi_type": phi_type,
                "justification": justification,
                "access_granted": access_granted,
            },
        ))

    @_absorb_failures
    async def log_ferpa_access(
        self,
        child_id: str,
        child_name: str,
        action: str,
        parent_requested: bool = False,
    ) -> AuditEntry | None:
        """Log access to a child's educational record. Always high risk."""
        return await self.record(AuditIntent(
            action=f"FERPA_{action.upper()}",
            resource_type="educational_record",
            resource_id=_as_id(child_id),
            resource_name=f"Educational Record: {child_name}",
            risk_level=RiskLevel.HIGH,
            compliance_flags=[ComplianceFlag.FERPA_EDUCATIONAL_RECORD.value, ComplianceFlag.PARENT_RIGHTS.value],
            ferpa_record_accessed=True,
            details={
                "parent_requested": parent_requested,
                "child_name": child_name,
            },
        ))

    @_absorb_failures
    async def log_auth_event(
        self,
        action: AuthAction | str,
        success: bool,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        """Log login/logout/failed_login/password_change/mfa_challenge."""
        name = action.value if isinstance(action, AuthAction) else str(action)
        return await self.record(AuditIntent(
            action=f"AUTH_{name.upper()}",
            resource_type="authentication",
            success=success,
            risk_level=RiskLevel.LOW if success else RiskLevel.MEDIUM,
            compliance_flags=[ComplianceFlag.AUTHENTICATION.value],
            details=dict(details or {}),
        ))

    @_absorb_failures
    async def log_admin_action(
        self,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        """Log an administrative action. Always high risk."""
        return await self.record(AuditIntent(
            action=f"ADMIN_{action.upper()}",
            resource_type=resource_type,
            resource_id=_as_id(resource_id),
            risk_level=RiskLevel.HIGH,
            compliance_flags=[ComplianceFlag.ADMIN_PRIVILEGE.value, ComplianceFlag.ELEVATED_ACCESS.value],
            ferpa_record_accessed=taxonomy.is_ferpa_resource(resource_type),
            details=dict(details or {}),
        ))

    @_absorb_failures
    async def log_data_export(
        self,
        export_type: str,
        record_count: int,
        includes_phi: bool,
        includes_ferpa: bool,
        export_format: str,
    ) -> AuditEntry | None:
        """Log a bulk export. Critical with PHI, high with FERPA, else medium."""
        flags = [ComplianceFlag.DATA_EXPORT.value]
        if includes_phi:
            flags += [ComplianceFlag.PHI_EXPORT.value, ComplianceFlag.HIPAA_AUDIT_REQUIRED.value]
        if includes_ferpa:
            flags += [ComplianceFlag.FERPA_EXPORT.value, ComplianceFlag.EDUCATIONAL_RECORD_SHARED.value]

        if includes_phi:
            level = RiskLevel.CRITICAL
        elif includes_ferpa:
            level = RiskLevel.HIGH
        else:
            level = RiskLevel.MEDIUM

        return await self.record(AuditIntent(
            action="DATA_EXPORT",
            resource_type=export_type,
            resource_name=f"{export_type} export ({record_count} records)",
            risk_level=level,
            compliance_flags=flags,
            phi_accessed=includes_phi,
            ferpa_record_accessed=includes_ferpa,
            details={
                "record_count": record_count,
                "export_format": export_format,
                "includes_phi": includes_phi,
                "includes_ferpa": includes_ferpa,
            },
        ))

    @_absorb_failures
    async def record_correction(
        self,
        original_id: uuid.UUID | str,
        resource_type: str,
        resource_id: str | None = None,
        *,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> AuditEntry | None:
        """Record a correction as a new entry pointing at the original."""
        return await self.record(AuditIntent(
            action="DATA_CORRECTION",
            verb=DataAction.UPDATE.value,
            resource_type=resource_type,
            resource_id=_as_id(resource_id),
            old_values=old_values,
            new_values=new_values,
            details={"corrects": str(original_id), "reason": reason},
        ))

    # ── Core ─────────────────────────────────────────────────────────

    @_absorb_failures
    async def record(self, intent: AuditIntent) -> AuditEntry | None:
        """Build, persist, deliver and alert on one audit entry. Never raises."""
        entry = self._build_entry(intent)

        try:
            await self._store.push(self.logs_key, entry.model_dump_json(), max_len=self._buffer_size)
        except Exception:
            logger.exception("Local audit buffer write failed for entry %s (%s)", entry.id, entry.action)

        try:
            self.delivery.submit(entry)
        except Exception:
            logger.exception("Could not submit audit entry %s for delivery", entry.id)
            await self.retry_queue.enqueue(entry, error="delivery submission failed")

        if entry.risk_level.is_alerting:
            await self.alerts.on_entry(entry)

        return entry

    def _build_entry(self, intent: AuditIntent) -> AuditEntry:
        actor = self._resolve_actor()
        context = self._resolve_context()

        try:
            fields = self._classify(intent)
        except Exception:
            logger.exception("Classification failed for %s on %s", intent.action, intent.resource_type)
            fields = {
                "risk_level": RiskLevel.LOW,
                "compliance_flags": [],
                "phi_accessed": False,
                "ferpa_record_accessed": False,
                "details": {**intent.details, "classification_review": "classification error"},
            }

        return AuditEntry(
            organization_id=actor.organization_id if actor else None,
            user_id=actor.id if actor else "anonymous",
            user_email=(actor.email if actor else None) or "unknown",
            user_role=(actor.role if actor else None) or "unknown",
            action=intent.action or "UNKNOWN_ACTION",
            resource_type=intent.resource_type or "unknown",
            resource_id=intent.resource_id,
            resource_name=intent.resource_name,
            old_values=self._seal(intent.resource_type, intent.old_values),
            new_values=self._seal(intent.resource_type, intent.new_values),
            ip_address=(context.ip_address if context else None) or "unknown",
            user_agent=(context.user_agent if context else None) or "unknown",
            session_id=(context.session_id if context else None) or self._session_id,
            request_id=(context.request_id if context else None) or _generate_id("req"),
            success=intent.success,
            error_message=intent.error_message,
            **fields,
        )

    def _classify(self, intent: AuditIntent) -> dict[str, Any]:
        """Derive risk, flags and the PHI/FERPA markers for an intent."""
        details = dict(intent.details)
        flags = list(intent.compliance_flags)
        phi_accessed = intent.phi_accessed
        ferpa = intent.ferpa_record_accessed

        if intent.risk_level is not None:
            level = intent.risk_level
        else:
            result = taxonomy.classify(intent.resource_type, intent.verb)
            level = result.risk_level
            flags.extend(f for f in result.compliance_flags if f not in flags)
            phi_accessed = phi_accessed or result.is_phi
            ferpa = ferpa or result.is_ferpa
            if result.review_required:
                details["classification_review"] = result.reason

            detection = detect_phi(self._free_text(intent))
            if detection.contains_phi:
                phi_accessed = True
                if ComplianceFlag.HIPAA_PHI_DATA.value not in flags:
                    flags.append(ComplianceFlag.HIPAA_PHI_DATA.value)
                details["phi_detection"] = {
                    "type": detection.phi_type,
                    "confidence": detection.confidence,
                }

        if phi_accessed:
            level = level.at_least(RiskLevel.HIGH)

        return {
            "risk_level": level,
            "compliance_flags": flags,
            "phi_accessed": phi_accessed,
            "ferpa_record_accessed": ferpa,
            "details": details,
        }

    def _seal(self, resource_type: str, values: dict[str, Any] | None) -> dict[str, Any] | None:
        """Encrypt a snapshot's sensitive fields. Runs after PHI detection saw the plaintext."""
        entity = entity_for_resource(resource_type)
        if not values or entity is None:
            return values
        try:
            return self._encryptor.encrypt_record(entity, values)
        except Exception:
            logger.exception("Snapshot encryption failed for %s — sensitive fields redacted", resource_type)
            return {
                k: REDACTED if self._encryptor.should_encrypt(entity, k) else v
                for k, v in values.items()
            }

    @staticmethod
    def _free_text(intent: AuditIntent) -> str:
        parts: list[str] = []
        if intent.resource_name:
            parts.append(intent.resource_name)
        parts.extend(_text_values(intent.details))
        parts.extend(_text_values(intent.new_values))
        return "\n".join(parts)

    def _resolve_actor(self) -> Actor | None:
        try:
            return self._identity()
        except Exception:
            logger.warning("Identity provider failed — recording audit entry as anonymous", exc_info=True)
            return None

    def _resolve_context(self) -> RequestContext | None:
        try:
            return self._request_context()
        except Exception:
            logger.warning("Request context unavailable for audit entry", exc_info=True)
            return None

    # ── Read side and administration ─────────────────────────────────

    async def get_audit_logs(self, filters: AuditFilters | None = None) -> list[AuditEntry]:
        """Buffered entries, newest first, matching every given filter."""
        try:
            entries = await self._load_entries()
        except Exception:
            logger.exception("Failed to read audit logs from %s", self.logs_key)
            return []
        if filters is None:
            return entries
        return [e for e in entries if filters.matches(e)]

    async def generate_compliance_report(self, date_range: DateRange) -> ComplianceReport:
        """Report over the system of record.

        Falls back to the local buffer when the sink can't be read, and marks
        the report partial since the buffer only keeps the newest entries.
        """
        try:
            entries = await self._sink.fetch_range(date_range)
        except Exception:
            logger.exception("System of record unreadable — compliance report limited to the local buffer")
            entries = None

        if entries is None:
            buffered = await self.get_audit_logs(AuditFilters(date_range=date_range))
            return generate_report(buffered, date_range, partial=True)
        return generate_report(entries, date_range)

    async def export_audit_logs(
        self,
        fmt: ExportFormat | str = ExportFormat.JSON,
        filters: AuditFilters | None = None,
    ) -> AuditExport:
        """Serialize buffered entries for download; the export itself is audited.

        Raises AuditExportError when the logs can't be read or serialized.
        """
        try:
            entries = await self._load_entries()
        except Exception as exc:
            msg = "Audit log export failed: store unavailable"
            raise AuditExportError(msg) from exc
        if filters is not None:
            entries = [e for e in entries if filters.matches(e)]

        export = serialize_entries(entries, fmt)
        await self.log_data_export(
            "audit_logs",
            export.record_count,
            includes_phi=any(e.phi_accessed for e in entries),
            includes_ferpa=any(e.ferpa_record_accessed for e in entries),
            export_format=ExportFormat(fmt).value,
        )
        return export

    async def clear_audit_logs(self, reason: str) -> str | None:
        """Archive the local buffer. Admin only; the clear is logged first.

        Returns the archive key, or None if the buffer was already empty.
        Raises AuditAuthorizationError for non-admin actors.
        """
        actor = self._resolve_actor()
        if actor is None or not actor.is_admin:
            msg = "Unauthorized: admin access required to clear audit logs"
            raise AuditAuthorizationError(msg)

        await self.log_admin_action("CLEAR_AUDIT_LOGS", "audit_logs", None, {"reason": reason})

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        archive_key = f"{self._prefix}:audit_archive:{stamp}"
        archived = await self._store.rename(self.logs_key, archive_key)
        logger.warning("Audit logs archived to %s by %s (reason: %s)", archive_key, actor.email or actor.id, reason)
        return archive_key if archived else None

    async def retry_failed(self) -> dict[str, int]:
        return await self.retry_queue.retry_all()

    async def status(self) -> dict[str, int]:
        """Counts for the admin dashboard, including pending retries."""
        return {
            "buffered": await self._store.count(self.logs_key),
            "pending_retry": await self.retry_queue.pending_count(),
            "delivery_backlog": self.delivery.backlog,
            "open_alerts": await self.alerts.open_count(),
        }

    async def _load_entries(self) -> list[AuditEntry]:
        entries: list[AuditEntry] = []
        for raw in await self._store.items(self.logs_key):
            try:
                entries.append(AuditEntry.model_validate_json(raw))
            except ValueError:
                logger.error("Skipping unreadable audit entry in %s", self.logs_key)
        return entries


def _as_id(value: Any) -> str | None:
    return None if value is None else str(value)
