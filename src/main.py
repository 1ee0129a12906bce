"""FastAPI application entry point — wires the audit pipeline together.

Usage:
    python -m src.main

Serves the audit API and runs the background delivery worker.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from src.api.audit import bind_audit_context, router as audit_router
from src.audit.recorder import AuditRecorder
from src.audit.sink import DatabaseSink, HttpSink, RemoteSink
from src.audit.store import LocalStore, MemoryLocalStore, RedisLocalStore
from src.config import settings
from src.db.engine import async_session_factory, db_lifespan, redis_client

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)


def build_recorder() -> AuditRecorder:
    """Assemble the recorder from configured store and sink backends."""
    store: LocalStore
    if settings.audit.local_store == "redis":
        store = RedisLocalStore(redis_client)
    else:
        logger.warning("Audit buffer is in-process memory — entries are lost on restart")
        store = MemoryLocalStore()

    sink: RemoteSink
    if settings.audit.sink == "http":
        sink = HttpSink(settings.audit.sink_url, settings.audit.sink_token, settings.audit.sink_timeout)
    else:
        sink = DatabaseSink(async_session_factory)

    return AuditRecorder(
        store,
        sink,
        buffer_size=settings.audit.local_buffer_size,
        key_prefix=settings.audit.key_prefix,
        alert_recipients=settings.audit.admin_emails,
    )


# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting audit service (env=%s)", settings.environment)

    async with db_lifespan():
        logger.info("Database initialized")

        recorder = build_recorder()
        await recorder.start()
        app.state.recorder = recorder
        logger.info(
            "Audit recorder started (store=%s, sink=%s, buffer=%d)",
            settings.audit.local_store,
            settings.audit.sink,
            settings.audit.local_buffer_size,
        )

        # Deliver whatever a previous run left undelivered
        summary = await recorder.retry_failed()
        if summary["attempted"]:
            logger.info("Startup retry delivered %d of %d queued entries", summary["delivered"], summary["attempted"])

        try:
            yield
        finally:
            logger.info("Shutting down audit service...")
            await recorder.stop()
            logger.info("Audit recorder stopped")

    logger.info("Audit service shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="Lumi Compliance Audit API",
    description="FERPA/HIPAA audit logging, alerting and compliance reporting",
    version="0.1.0",
    lifespan=lifespan,
)
app.middleware("http")(bind_audit_context)
app.include_router(audit_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
