"""Lightweight asyncio-friendly SMTP connection pool."""

import asyncio
import time
from typing import Dict, Tuple

import aiosmtplib

from .config import SMTPSettings
from .logger import get_logger

logger = get_logger("EmailWorker.smtp")


class SMTPPool:
    """Keep one SMTP connection per asyncio task.

    The main-queue loop and the retry loop each run in their own task, so
    they never share a connection mid-conversation.
    """

    def __init__(self, settings: SMTPSettings, ttl: int = 300, connect_timeout: float = 15.0):
        """Create a pool for ``settings`` whose connections live ``ttl`` seconds."""
        self.settings = settings
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if credentials are set."""
        s = self.settings
        # Implicit TLS (port 465) and STARTTLS are mutually exclusive
        smtp = aiosmtplib.SMTP(
            hostname=s.host,
            port=s.port,
            use_tls=s.secure,
            start_tls=None if (s.start_tls and not s.secure) else False,
            timeout=10.0,
        )

        async def _do_connect():
            await smtp.connect()
            if s.user and s.password:
                await smtp.login(s.user, s.password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception as exc:
            logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def get_connection(self) -> aiosmtplib.SMTP:
        """Return a pooled connection bound to the calling task."""
        task_id = id(asyncio.current_task())

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time())
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._quit(smtp)

        smtp = await self._connect()
        async with self.lock:
            self.pool[task_id] = (smtp, time.time())
        return smtp

    def discard(self) -> None:
        """Drop the calling task's connection after an interrupted send.

        The socket is closed without QUIT: the server may still be waiting
        for the rest of a transaction that will never come.
        """
        entry = self.pool.pop(id(asyncio.current_task()), None)
        if entry:
            try:
                entry[0].close()
            except Exception as exc:
                logger.debug("Ignoring error while dropping SMTP connection: %s", exc)

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired = []
        for task_id, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(task_id)

        for task_id in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._quit(entry[0])

    async def close(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in items:
            await self._quit(smtp)
