"""SQLAlchemy declarative base and the stored-record mixin.

Rows are keyed by the UUID the recorder already assigned (entry id or alert
id), never by a database-generated one, so a redelivered entry hits the
primary key and is dropped by ON CONFLICT.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StoredRecordMixin:
    """Caller-supplied UUID key plus the time the sink first stored the row."""

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    stored_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
