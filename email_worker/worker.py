"""Process shell for the email worker: startup, signals, periodic stats."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from .config import WorkerSettings, load_settings
from .engine import DeliveryEngine, WorkerState
from .logger import get_logger
from .prometheus import WorkerMetrics
from .queue_store import QueueStore, RedisQueueStore
from .retry import RetryPolicy
from .transport import MailTransport, SMTPTransport

logger = get_logger()

POOL_CLEANUP_INTERVAL = 150.0


class WorkerStartupError(RuntimeError):
    """Raised when the worker cannot reach the queue store at startup."""


class EmailWorker:
    """Own the engine, its collaborators and the process-level lifecycle."""

    def __init__(
        self,
        settings: WorkerSettings,
        *,
        store: Optional[QueueStore] = None,
        transport: Optional[MailTransport] = None,
        metrics: Optional[WorkerMetrics] = None,
        engine: Optional[DeliveryEngine] = None,
    ):
        self.settings = settings
        self.store = store or RedisQueueStore(settings.redis_url)
        self.transport = transport or SMTPTransport(settings.smtp)
        self.metrics = metrics or WorkerMetrics()
        self.engine = engine or DeliveryEngine(
            self.store,
            self.transport,
            queues=settings.queues,
            policy=RetryPolicy(max_retries=settings.max_retries, base_delay=settings.retry_base_delay),
            default_sender=settings.smtp.sender,
            metrics=self.metrics,
            state=WorkerState(),
            pull_timeout=settings.pull_timeout,
            error_backoff=settings.error_backoff,
            retry_poll_interval=settings.retry_poll_interval,
            send_timeout=settings.send_timeout,
            log_limit=settings.log_limit,
        )
        self.state = self.engine.state
        self._tasks: List[asyncio.Task] = []
        self._stopped = False
        self._done = asyncio.Event()
        self._stop_task: Optional[asyncio.Task] = None
        self.exit_code = 0

    async def start(self) -> None:
        """Connect collaborators and start the delivery loops."""
        logger.info("Email worker starting...")
        try:
            await self.store.ping()
        except Exception as exc:
            raise WorkerStartupError(f"Failed to connect to queue store: {exc}") from exc
        logger.info("Connected to queue store")

        await self.transport.verify()
        if self.settings.recover_on_start:
            await self.engine.recover_processing()
        if self.settings.metrics_port:
            self.metrics.serve(self.settings.metrics_port)
            logger.info("Prometheus metrics exposed on port %d", self.settings.metrics_port)

        await self.engine.start()
        self._tasks = [asyncio.create_task(self._stats_loop(), name="email-stats-loop")]
        if isinstance(self.transport, SMTPTransport):
            self._tasks.append(asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop"))
        logger.info("Email worker is running and listening for jobs...")

    async def stop(self) -> None:
        """Stop accepting new pulls and disconnect; safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping email worker...")
        await self.engine.stop()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self.transport.close()
        finally:
            await self.store.close()
        self._done.set()
        logger.info("Email worker stopped")

    async def report_stats(self) -> Optional[Dict[str, Any]]:
        stats = await self.engine.get_queue_stats()
        if stats is None:
            return None
        data = stats.as_dict()
        logger.info("Queue stats: %s", data)
        return data

    async def _stats_loop(self) -> None:
        """Log queue statistics every ``stats_interval`` seconds."""
        while not await self.state.wait(self.settings.stats_interval):
            await self.report_stats()

    async def _cleanup_loop(self) -> None:
        """Keep pooled SMTP connections healthy."""
        while not await self.state.wait(POOL_CLEANUP_INTERVAL):
            await self.transport.pool.cleanup()

    # ------------------------------------------------------------ process hooks
    def request_shutdown(self, signame: str) -> None:
        logger.info("Received %s, shutting down gracefully...", signame)
        self._schedule_stop(asyncio.get_running_loop())

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """Treat an error no task handled as fatal."""
        exc = context.get("exception")
        logger.critical("Unhandled error: %s", context.get("message"), exc_info=exc)
        self.exit_code = 1
        self._schedule_stop(loop)

    def _schedule_stop(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._stopped or self._stop_task is not None:
            return
        self._stop_task = loop.create_task(self.stop(), name="email-worker-stop")

    def install_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except NotImplementedError:  # pragma: no cover - Windows
                signal.signal(sig, lambda *_args, name=sig.name: loop.call_soon_threadsafe(self.request_shutdown, name))
        loop.set_exception_handler(self._handle_loop_exception)

    async def run(self) -> int:
        """Start, wait until stopped, and return the process exit code."""
        self.install_handlers()
        await self.start()
        await self._done.wait()
        return self.exit_code


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


async def run_worker(settings: WorkerSettings) -> int:
    worker = EmailWorker(settings)
    try:
        return await worker.run()
    except WorkerStartupError as exc:
        logger.error("Failed to start email worker: %s", exc)
        await worker.stop()
        return 1


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    try:
        code = asyncio.run(run_worker(settings))
    except Exception:
        logger.exception("Uncaught exception in email worker")
        code = 1
    sys.exit(code)
