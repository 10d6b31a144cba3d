"""Delivery engine: drains the main and retry queues and drives each job
through the attempt / outcome / reschedule protocol.

Queue layout (all lists live in the shared queue store):

* ``main``: producers push new jobs on the head, the engine pulls from the
  tail with an atomic blocking move into ``processing``.
* ``processing``: jobs in flight. A job stays here until its attempt is
  over, so a crashed worker leaves it discoverable.
* ``retry``: :class:`RetryEnvelope` items waiting for ``scheduledAt``.
* ``logs``: bounded ring of :class:`LogEntry` records.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .logger import get_logger
from .models import (
    Attempt,
    DeliveryInfo,
    EmailJob,
    LogEntry,
    QueueStats,
    RetryEnvelope,
    TransportMessage,
    format_timestamp,
    utc_now,
)
from .prometheus import WorkerMetrics
from .queue_store import QueueNames, QueueStore
from .retry import RetryPolicy
from .transport import MailTransport

Clock = Callable[[], datetime]


class WorkerState:
    """Running flag shared by both polling loops.

    Stopping is cooperative: loops check :attr:`running` after each
    suspension point, and :meth:`wait` returns early once stopped.
    """

    def __init__(self) -> None:
        self._running = False
        self._stopped = asyncio.Event()
        self._stopped.set()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True
        self._stopped.clear()

    def stop(self) -> None:
        self._running = False
        self._stopped.set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return ``True`` if stopped meanwhile."""
        if not self._running:
            return True
        try:
            async with asyncio.timeout(max(0.0, float(timeout))):
                await self._stopped.wait()
        except TimeoutError:
            return False
        return True


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _peek_id(raw: str) -> Optional[str]:
    """Best-effort read of the ``id`` of a serialized job."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    return None


class DeliveryEngine:
    """Pull jobs, send them, and retry or dead-letter the failures."""

    def __init__(
        self,
        store: QueueStore,
        transport: MailTransport,
        *,
        queues: QueueNames | None = None,
        policy: RetryPolicy | None = None,
        default_sender: str | None = None,
        metrics: WorkerMetrics | None = None,
        state: WorkerState | None = None,
        clock: Clock | None = None,
        logger=None,
        pull_timeout: float = 5.0,
        error_backoff: float = 5.0,
        retry_poll_interval: float = 30.0,
        send_timeout: float | None = 30.0,
        log_limit: int = 1000,
    ):
        self.store = store
        self.transport = transport
        self.queues = queues or QueueNames()
        self.policy = policy or RetryPolicy()
        self.default_sender = default_sender
        self.metrics = metrics or WorkerMetrics()
        self.state = state or WorkerState()
        self.clock: Clock = clock or utc_now
        self.logger = logger or get_logger()
        self.pull_timeout = pull_timeout
        self.error_backoff = error_backoff
        self.retry_poll_interval = retry_poll_interval
        self.send_timeout = send_timeout
        self.log_limit = max(1, int(log_limit))
        self._tasks: List[asyncio.Task] = []

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the main-queue and retry-queue loops."""
        if self._tasks:
            return
        self.state.start()
        self._tasks = [
            asyncio.create_task(self.process_main_queue(), name="email-main-queue"),
            asyncio.create_task(self.process_retry_queue(), name="email-retry-queue"),
        ]
        self.logger.info("Delivery engine started (main=%s, retry=%s)", self.queues.main, self.queues.retry)

    async def stop(self) -> None:
        """Stop both loops and wait for their current iteration to finish."""
        self.state.stop()
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("Delivery engine stopped")

    # ---------------------------------------------------------------- main loop
    async def process_main_queue(self) -> None:
        """Continuously move jobs from the main queue into processing and send them."""
        while self.state.running:
            try:
                await self.pull_once()
            except Exception as exc:
                self.logger.error("Error processing main queue: %s", exc)
                await self.state.wait(self.error_backoff)

    async def pull_once(self) -> bool:
        """Pull and attempt at most one job; return ``True`` if one was pulled."""
        raw = await self.store.move(self.queues.main, self.queues.processing, self.pull_timeout)
        if raw is None:
            return False
        try:
            job = EmailJob.from_json(raw)
        except ValidationError as exc:
            await self._discard_malformed(raw, exc)
            return True
        await self.process_email_job(job, raw)
        return True

    async def _discard_malformed(self, raw: str, exc: Exception) -> None:
        """Drop a payload that cannot be decoded into a job."""
        job_id = _peek_id(raw) or "unknown"
        self.logger.error("Discarding malformed email job %s: %s", job_id, exc)
        await self.store.remove(self.queues.processing, raw, 1)
        await self.log_email_result(job_id, "failed", {"error": f"invalid job payload: {exc}", "retryCount": 0})
        self.metrics.inc_failed()

    # --------------------------------------------------------------- retry loop
    async def process_retry_queue(self) -> None:
        """Every ``retry_poll_interval`` seconds, attempt the retries that are due."""
        while self.state.running:
            if await self.state.wait(self.retry_poll_interval):
                break
            try:
                await self.scan_retry_queue()
            except Exception as exc:
                self.logger.error("Error processing retry queue: %s", exc)

    async def scan_retry_queue(self) -> int:
        """Attempt every due envelope once; return how many were attempted."""
        entries = await self.store.range(self.queues.retry, 0, -1)
        attempted = 0
        for raw in entries:
            try:
                envelope = RetryEnvelope.from_json(raw)
                due = envelope.is_due(self.clock())
            except (ValidationError, ValueError) as exc:
                self.logger.error("Dropping malformed retry envelope: %s", exc)
                await self.store.remove(self.queues.retry, raw, 1)
                continue
            if not due:
                continue
            # Another instance may have taken it between the scan and now
            if not await self.store.remove(self.queues.retry, raw, 1):
                continue
            job_raw = envelope.job.to_json()
            try:
                await self.store.push(self.queues.processing, job_raw)
            except Exception as exc:
                # the envelope is already gone: attempt anyway rather than lose the job
                self.logger.error("Could not mark retry of %s as in flight: %s", envelope.job.id, exc)
                job_raw = None
            await self.process_email_job(envelope.job, job_raw)
            attempted += 1
        return attempted

    # ------------------------------------------------------------------ attempts
    @staticmethod
    def _summarise_addresses(value: Any) -> str:
        """Return a compact textual representation of the recipients."""
        if not value:
            return "-"
        items = [value] if isinstance(value, str) else [str(item) for item in value if item]
        preview = ", ".join(item.strip() for item in items if item.strip())
        if len(preview) > 200:
            return f"{preview[:197]}..."
        return preview or "-"

    async def _send(self, message: TransportMessage) -> DeliveryInfo:
        """Call the transport, bounded by ``send_timeout`` when set."""
        if self.send_timeout is None:
            return await self.transport.send(message)
        timer = asyncio.timeout(self.send_timeout)
        try:
            async with timer:
                return await self.transport.send(message)
        except TimeoutError as exc:
            if timer.expired():
                raise TimeoutError(f"SMTP send timed out after {self.send_timeout:g}s") from exc
            raise

    async def process_email_job(self, job: EmailJob, raw: str | None = None) -> bool:
        """Attempt delivery of ``job`` exactly once; return ``True`` on success.

        ``raw`` is the serialized form sitting in the processing list, used to
        remove it once the attempt is over.
        """
        attempt = Attempt.from_job(job)
        self.logger.info(
            "Processing email job %s to %s (subject=%r, retries=%d)",
            job.id,
            self._summarise_addresses(job.to),
            job.subject,
            attempt.retry_count,
        )
        message = TransportMessage.from_job(job, self.default_sender)
        try:
            info = await self._send(message)
        except Exception as exc:
            self.logger.error("Failed to send email %s: %s", job.id, _error_message(exc))
            self.metrics.inc_send_error()
            await self.handle_email_failure(job, exc, raw)
            return False

        self.logger.info("Email sent successfully: %s (message_id=%s)", job.id, info.message_id)
        self.metrics.inc_sent()
        try:
            await self._release(job.id, raw)
        except Exception:
            self.logger.exception("Failed to remove delivered job %s from processing", job.id)
        await self.log_email_result(job.id, "success", info.as_details())
        return True

    async def handle_email_failure(self, job: EmailJob, error: BaseException, raw: str | None = None) -> None:
        """Schedule a retry with exponential backoff, or dead-letter the job.

        Errors raised while doing so are logged and swallowed so the calling
        loop keeps running.
        """
        try:
            attempt = Attempt.from_job(job)
            retry_count = self.policy.next_retry_count(attempt.retry_count)
            message = _error_message(error)

            if self.policy.should_retry(retry_count):
                now = self.clock()
                retried = attempt.record_failure(retry_count, message, now)
                scheduled_at = self.policy.scheduled_at(retry_count, now)
                envelope = RetryEnvelope(job=retried, scheduled_at=format_timestamp(scheduled_at))
                self.logger.warning(
                    "Retrying email job %s (attempt %d/%d) in %gs",
                    job.id,
                    retry_count,
                    self.policy.max_retries,
                    self.policy.calculate_delay(retry_count),
                )
                await self.store.push(self.queues.retry, envelope.to_json())
                self.metrics.inc_retried()
            else:
                self.logger.error(
                    "Email job failed permanently: %s after %d retries: %s",
                    job.id,
                    attempt.retry_count,
                    message,
                )
                self.metrics.inc_failed()
                await self.log_email_result(
                    job.id,
                    "failed",
                    {"error": message, "retryCount": attempt.retry_count},
                )

            await self._release(job.id, raw)
        except Exception as exc:
            self.logger.exception("Error handling email failure for %s: %s", job.id, exc)

    async def _release(self, job_id: str, raw: str | None) -> bool:
        """Remove the job from the processing list exactly once.

        The raw value that was pulled is tried first; if it is not found the
        list is scanned for an entry carrying the same ``id``, so a payload
        re-serialized with a different key order cannot leak.
        """
        processing = self.queues.processing
        if raw is not None and await self.store.remove(processing, raw, 1):
            return True
        for entry in await self.store.range(processing, 0, -1):
            if _peek_id(entry) == job_id and await self.store.remove(processing, entry, 1):
                return True
        self.logger.debug("Job %s was not in the processing list", job_id)
        return False

    # ------------------------------------------------------------------ logging
    async def log_email_result(self, job_id: str, status: str, details: Dict[str, Any]) -> LogEntry:
        """Append a terminal record to the bounded log list."""
        entry = LogEntry(job_id=job_id, status=status, timestamp=format_timestamp(self.clock()), details=details)
        try:
            await self.store.push(self.queues.logs, entry.to_json())
            await self.store.trim(self.queues.logs, 0, self.log_limit - 1)
        except Exception as exc:
            self.logger.error("Error logging email result for %s: %s", job_id, exc)
        return entry

    async def recent_logs(self, limit: int = 50) -> List[LogEntry]:
        """Return up to ``limit`` log entries, most recent first."""
        entries: List[LogEntry] = []
        for raw in await self.store.range(self.queues.logs, 0, max(1, limit) - 1):
            try:
                entries.append(LogEntry.from_json(raw))
            except ValidationError:
                self.logger.warning("Skipping malformed log entry")
        return entries

    # -------------------------------------------------------------- statistics
    async def get_queue_stats(self) -> Optional[QueueStats]:
        """Return the current queue lengths, or ``None`` if the store is unreachable."""
        try:
            main = await self.store.length(self.queues.main)
            processing = await self.store.length(self.queues.processing)
            retry = await self.store.length(self.queues.retry)
        except Exception as exc:
            self.logger.error("Error getting queue stats: %s", exc)
            return None
        self.metrics.set_queue_lengths(main, processing, retry)
        return QueueStats(
            main_queue=main,
            processing=processing,
            retry=retry,
            timestamp=format_timestamp(self.clock()),
        )

    # ------------------------------------------------------------------ recovery
    async def recover_processing(self) -> int:
        """Move jobs left in the processing list back to the main queue.

        Only safe when no other instance is running against the same store,
        since their in-flight jobs would be delivered twice.
        """
        entries = await self.store.range(self.queues.processing, 0, -1)
        recovered = 0
        for raw in reversed(entries):
            if await self.store.remove(self.queues.processing, raw, 1):
                await self.store.push(self.queues.main, raw)
                recovered += 1
        if recovered:
            self.logger.warning("Re-queued %d job(s) left in %s", recovered, self.queues.processing)
        return recovered
