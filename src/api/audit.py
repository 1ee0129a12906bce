"""Audit API — FastAPI router for ingestion, review, reporting and export.

All admin routes require HTTP Basic Auth via verify_admin. The ingestion
route is what HttpSink posts to; it upserts by entry id, so redelivery
is harmless.
"""
# ruff: noqa: B008  — Depends() in function defaults is standard FastAPI

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import verify_admin, verify_sink_token
from src.audit.errors import AuditAuthorizationError, AuditExportError
from src.audit.identity import actor_from_token, bind_request
from src.audit.queries import get_audit_records_paginated
from src.audit.recorder import AuditRecorder
from src.audit.sink import store_entry
from src.config import settings
from src.db.engine import get_session
from src.models.enums import AlertStatus, ExportFormat, RiskLevel
from src.schemas.audit import (
    AuditEntry,
    AuditFilters,
    ComplianceReport,
    DateRange,
    RequestContext,
    SecurityAlert,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audit", tags=["audit"])


class ClearRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class CloseAlertRequest(BaseModel):
    resolution: str | None = Field(default=None, max_length=2000)


def get_recorder(request: Request) -> AuditRecorder:
    """The recorder instance wired at startup."""
    return request.app.state.recorder


def _filters(
    user_id: str | None,
    resource_type: str | None,
    action: str | None,
    risk_level: RiskLevel | None,
    start: datetime | None,
    end: datetime | None,
) -> AuditFilters:
    date_range = None
    if start is not None or end is not None:
        date_range = DateRange(
            start=start or datetime.min,
            end=end or datetime.max,
        )
    return AuditFilters(
        user_id=user_id,
        resource_type=resource_type,
        action=action,
        risk_level=risk_level,
        date_range=date_range,
    )


# ── Request context middleware ───────────────────────────────────────


async def bind_audit_context(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Bind the token actor and request metadata for the recorder.

    The actor token comes from X-Auth-Token, or from a Bearer Authorization
    header (admin routes use Authorization for Basic auth).
    """
    actor = None
    token = request.headers.get("x-auth-token")
    if not token:
        scheme, _, bearer = request.headers.get("authorization", "").partition(" ")
        token = bearer if scheme.lower() == "bearer" else None
    if token:
        actor = actor_from_token(token, settings.security.jwt_secret, settings.security.jwt_algorithm)

    context = RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        session_id=request.headers.get("x-session-id"),
        request_id=request.headers.get("x-request-id") or f"req_{secrets.token_hex(8)}",
    )
    with bind_request(actor, context):
        return await call_next(request)


# ── Ingestion ────────────────────────────────────────────────────────


@router.post("/log", dependencies=[Depends(verify_sink_token)])
async def ingest_entry(
    entry: AuditEntry,
    db: AsyncSession = Depends(get_session),
) -> dict[str, bool]:
    """Store an entry delivered by a remote HttpSink. Idempotent by id."""
    stored = await store_entry(db, entry)
    return {"stored": stored}


# ── Review ───────────────────────────────────────────────────────────


@router.get("/logs", response_model=list[AuditEntry])
async def list_logs(
    user_id: str | None = Query(None),
    resource_type: str | None = Query(None),
    action: str | None = Query(None),
    risk_level: RiskLevel | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> list[AuditEntry]:
    """Recent entries from the local buffer."""
    return await recorder.get_audit_logs(_filters(user_id, resource_type, action, risk_level, start, end))


@router.get("/records")
async def list_records(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    user_id: str | None = Query(None),
    resource_type: str | None = Query(None),
    action: str | None = Query(None),
    risk_level: RiskLevel | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    db: AsyncSession = Depends(get_session),
    admin: str = Depends(verify_admin),
) -> dict[str, Any]:
    """Every stored entry in the system of record, paginated."""
    entries, total = await get_audit_records_paginated(
        db,
        _filters(user_id, resource_type, action, risk_level, start, end),
        page=page,
        per_page=per_page,
    )
    return {
        "entries": [e.model_dump(mode="json") for e in entries],
        "total": total,
        "page": page,
        "total_pages": max(1, (total + per_page - 1) // per_page),
    }


@router.get("/report", response_model=ComplianceReport)
async def compliance_report(
    start: datetime = Query(...),
    end: datetime = Query(...),
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> ComplianceReport:
    """FERPA/HIPAA compliance report for the window."""
    window = DateRange(start=start, end=end)
    if window.end < window.start:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end must not precede start")
    return await recorder.generate_compliance_report(window)


@router.get("/export")
async def export_logs(
    format: ExportFormat = Query(ExportFormat.JSON),
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> Response:
    """Download buffered entries as JSON or CSV."""
    try:
        export = await recorder.export_audit_logs(format)
    except AuditExportError as exc:
        logger.exception("Audit export failed for %s", admin)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return Response(
        content=export.content,
        media_type=export.media_type,
        headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
    )


@router.get("/status")
async def pipeline_status(
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> dict[str, int]:
    """Buffered, pending-retry and open-alert counts."""
    return await recorder.status()


# ── Administration ───────────────────────────────────────────────────


@router.post("/clear")
async def clear_logs(
    body: ClearRequest,
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> dict[str, str | None]:
    """Archive the local buffer. The token actor must have the admin role."""
    try:
        archive_key = await recorder.clear_audit_logs(body.reason)
    except AuditAuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return {"archive_key": archive_key}


@router.post("/retry")
async def retry_failed(
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> dict[str, int]:
    """Resend every entry waiting in the retry queue."""
    return await recorder.retry_failed()


@router.get("/alerts", response_model=list[SecurityAlert])
async def list_alerts(
    status_filter: AlertStatus | None = Query(None, alias="status"),
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> list[SecurityAlert]:
    return await recorder.alerts.list_alerts(status_filter)


@router.post("/alerts/{alert_id}/close", response_model=SecurityAlert)
async def close_alert(
    alert_id: uuid.UUID,
    body: CloseAlertRequest,
    recorder: AuditRecorder = Depends(get_recorder),
    admin: str = Depends(verify_admin),
) -> SecurityAlert:
    """Close an open alert; closed alerts are returned unchanged."""
    alert = await recorder.alerts.close_alert(alert_id, closed_by=admin, resolution=body.resolution)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return alert
