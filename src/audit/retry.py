"""Failed-write retry queue and the per-entry delivery state machine.

Delivery states:

    pending_local --> delivered
    pending_local --> queued_retry --> delivered

An entry enters the queue once, when the sink first rejects it. `retry_all`
resends every queued entry and removes only those the sink confirms;
the rest stay queued with their attempt count bumped. Because sinks upsert
by entry id, re-sending something that already landed is harmless.

Scheduling is the host application's job: call `retry_all()` from a
periodic task, an admin action, or on startup.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from src.audit.sink import RemoteSink
from src.audit.store import LocalStore
from src.models.enums import DeliveryState
from src.schemas.audit import AuditEntry, FailedDelivery

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.PENDING_LOCAL: frozenset({DeliveryState.DELIVERED, DeliveryState.QUEUED_RETRY}),
    DeliveryState.QUEUED_RETRY: frozenset({DeliveryState.DELIVERED, DeliveryState.QUEUED_RETRY}),
    DeliveryState.DELIVERED: frozenset(),
}


def advance(current: DeliveryState, target: DeliveryState) -> DeliveryState:
    """Validate a delivery state transition and return the new state."""
    if target not in _TRANSITIONS[current]:
        msg = f"Illegal delivery transition: {current.value} -> {target.value}"
        raise ValueError(msg)
    return target


class RetryQueue:
    """Unbounded, persistent queue of entries the remote sink rejected."""

    def __init__(self, store: LocalStore, sink: RemoteSink, key: str) -> None:
        self._store = store
        self._sink = sink
        self._key = key
        self._lock = asyncio.Lock()

    async def enqueue(self, entry: AuditEntry, error: str | None = None) -> bool:
        """Queue an entry for redelivery. Returns False if it was already queued."""
        async with self._lock:
            if any(record.entry.id == entry.id for _, record in await self._records()):
                return False
            record = FailedDelivery(
                entry=entry,
                state=advance(DeliveryState.PENDING_LOCAL, DeliveryState.QUEUED_RETRY),
                last_error=error,
            )
            await self._store.push(self._key, record.model_dump_json())
        logger.warning("Audit entry %s queued for retry (%s)", entry.id, error or "sink rejected")
        return True

    async def retry_all(self) -> dict[str, int]:
        """Resend every queued entry. Returns attempted/delivered/remaining counts."""
        summary = {"attempted": 0, "delivered": 0, "remaining": 0}
        async with self._lock:
            for raw, record in await self._records():
                summary["attempted"] += 1
                try:
                    delivered = await self._sink.send(record.entry)
                except Exception:
                    logger.exception("Sink raised while retrying audit entry %s", record.entry.id)
                    delivered = False

                if delivered:
                    advance(record.state, DeliveryState.DELIVERED)
                    await self._store.remove(self._key, raw)
                    summary["delivered"] += 1
                    continue

                updated = record.model_copy(update={
                    "state": advance(record.state, DeliveryState.QUEUED_RETRY),
                    "attempts": record.attempts + 1,
                    "last_attempt_at": datetime.now(timezone.utc),
                    "last_error": "sink rejected on retry",
                })
                # Drained by another instance in the meantime: don't resurrect it
                if await self._store.remove(self._key, raw):
                    await self._store.push(self._key, updated.model_dump_json())

            summary["remaining"] = await self._store.count(self._key)

        logger.info(
            "Audit retry complete: attempted=%d delivered=%d remaining=%d",
            summary["attempted"],
            summary["delivered"],
            summary["remaining"],
        )
        return summary

    async def pending(self) -> list[FailedDelivery]:
        """Queued deliveries, newest first."""
        return [record for _, record in await self._records()]

    async def pending_count(self) -> int:
        return await self._store.count(self._key)

    async def _records(self) -> list[tuple[str, FailedDelivery]]:
        records: list[tuple[str, FailedDelivery]] = []
        for raw in await self._store.items(self._key):
            try:
                records.append((raw, FailedDelivery.model_validate_json(raw)))
            except ValidationError:
                logger.error("Unreadable record in retry queue %s — left in place", self._key)
        return records
