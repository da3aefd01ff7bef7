"""
Best-effort security audit logging.

record() only enqueues, so a slow or failing audit store never delays a
gate decision. A background worker drains the bounded queue into the audit
store, retrying each write with exponential backoff. Events that cannot be
queued or written are dropped with an error log.
"""

import asyncio
from typing import Optional

import structlog

from core.exceptions import InfrastructureError
from models.audit_event import SecurityAuditEvent
from repositories.provider import AuditEventStore

logger = structlog.get_logger(__name__)


class AuditLogger:
    """Queue-backed writer for SecurityAuditEvents."""

    def __init__(
        self,
        store: AuditEventStore,
        max_queue_size: int = 1000,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        write_timeout: Optional[float] = None,
    ):
        self.store = store
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.write_timeout = write_timeout
        self._queue: asyncio.Queue[SecurityAuditEvent] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        """Events queued but not yet written."""
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def record(self, event: SecurityAuditEvent) -> None:
        """Queue an event for writing. Never raises, never blocks."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._log_dropped(event, reason="queue_full")

    async def start(self) -> None:
        """Start the background writer."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="audit-logger")
        logger.info("audit_logger_started", queue_max_size=self._queue.maxsize)

    async def flush(self) -> None:
        """Wait until every queued event has been written or dropped."""
        if self.running:
            await self._queue.join()
            return

        # No worker (tests, shutdown): drain inline
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        """Drain the queue and stop the background writer."""
        if self._worker is None:
            return

        await self.flush()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("audit_logger_stopped")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._write(event)
            except Exception as e:
                # Keep the worker alive whatever the store throws
                logger.exception("audit_worker_error", event_id=event.id, error=str(e))
            finally:
                self._queue.task_done()

    async def _write(self, event: SecurityAuditEvent) -> None:
        for attempt in range(1, self.max_retries + 1):
            try:
                await asyncio.wait_for(self.store.append(event), timeout=self.write_timeout)
                return
            except (InfrastructureError, asyncio.TimeoutError) as e:
                if attempt == self.max_retries:
                    self._log_dropped(event, reason="retries_exhausted", error=str(e))
                    return

                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "audit_write_retry",
                    event_id=event.id,
                    attempt=attempt,
                    delay_seconds=delay,
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(delay)

    @staticmethod
    def _log_dropped(event: SecurityAuditEvent, reason: str, error: Optional[str] = None) -> None:
        logger.error(
            "audit_event_dropped",
            event_id=event.id,
            action_type=event.action_type.value,
            resource_id=event.resource_id,
            reason=reason,
            error=error,
        )
