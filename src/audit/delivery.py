"""Background delivery of audit entries to the remote sink.

The recorder awaits only the local buffer write. Remote delivery happens
here: entries go onto an asyncio queue and a worker task sends them, so a
slow or unreachable sink never adds latency to the audited operation.
Rejected entries move to the retry queue.

Usage:
    worker = DeliveryWorker(sink, retry_queue)
    await worker.start()          # FastAPI lifespan startup
    worker.submit(entry)          # from the recorder
    await worker.stop()           # drains the queue, then cancels
"""

from __future__ import annotations

import asyncio
import logging

from src.audit.retry import RetryQueue, advance
from src.audit.sink import RemoteSink
from src.models.enums import DeliveryState
from src.schemas.audit import AuditEntry

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """Single consumer draining an in-process queue into the remote sink."""

    def __init__(self, sink: RemoteSink, retry_queue: RetryQueue) -> None:
        self._sink = sink
        self._retry_queue = retry_queue
        self._queue: asyncio.Queue[AuditEntry] | None = None
        self._worker_task: asyncio.Task[None] | None = None

    @property
    def backlog(self) -> int:
        """Entries accepted but not yet handed to the sink."""
        return self._queue.qsize() if self._queue is not None else 0

    def submit(self, entry: AuditEntry) -> None:
        """Hand an entry over for delivery. Never blocks on the network."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._ensure_worker()
        self._queue.put_nowait(entry)
        logger.debug("Audit entry %s submitted for delivery", entry.id)

    async def deliver(self, entry: AuditEntry) -> DeliveryState:
        """Send one entry now; queue it for retry if the sink rejects it."""
        state = DeliveryState.PENDING_LOCAL
        try:
            delivered = await self._sink.send(entry)
        except Exception:
            logger.exception("Sink raised while delivering audit entry %s", entry.id)
            delivered = False

        if delivered:
            return advance(state, DeliveryState.DELIVERED)

        await self._retry_queue.enqueue(entry, error="remote sink rejected write")
        return advance(state, DeliveryState.QUEUED_RETRY)

    async def drain(self) -> None:
        """Wait until everything submitted so far has been handled."""
        if self._queue is not None:
            await self._queue.join()

    # ── Background worker ────────────────────────────────────────────

    def _ensure_worker(self) -> None:
        """Start the background delivery worker if not already running."""
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._run())
            logger.info("Audit delivery worker started")

    async def _run(self) -> None:
        """Background task that drains the queue into the sink."""
        if self._queue is None:
            return

        while True:
            try:
                entry = await self._queue.get()
            except asyncio.CancelledError:
                logger.info("Audit delivery worker shutting down")
                break
            try:
                await self.deliver(entry)
            except asyncio.CancelledError:
                self._queue.task_done()
                logger.info("Audit delivery worker shutting down")
                break
            except Exception:
                logger.exception("Error in audit delivery worker")
            self._queue.task_done()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize the queue and worker. Call during FastAPI lifespan startup."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._ensure_worker()

    async def stop(self) -> None:
        """Deliver what is queued, then stop the worker."""
        await self.drain()

        if self._worker_task is not None and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass

        self._worker_task = None
        self._queue = None
        await self._sink.close()
        logger.info("Audit delivery worker stopped")
