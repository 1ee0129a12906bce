"""SQLAlchemy ORM models for the audit pipeline.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from src.models.audit import AuditLog, SecurityAlertRecord
from src.models.base import Base

__all__ = [
    "AuditLog",
    "Base",
    "SecurityAlertRecord",
]
