"""Shared dummy collaborators for the email worker tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from email_worker.engine import DeliveryEngine
from email_worker.models import DeliveryInfo, EmailJob, TransportMessage
from email_worker.prometheus import WorkerMetrics
from email_worker.queue_store import QueueNames


def _bounds(items: List[str], start: int, end: int) -> slice:
    """Translate inclusive Redis-style indexes into a Python slice."""
    size = len(items)
    if start < 0:
        start = max(0, size + start)
    if end < 0:
        end = size + end
    return slice(start, end + 1)


class DummyQueueStore:
    """In-memory list store with the same head/tail semantics as Redis."""

    def __init__(self):
        self.lists: Dict[str, List[str]] = {}
        self.broken: bool = False
        self.fail_push: bool = False
        self.closed: bool = False
        self.move_calls: int = 0

    def items(self, name: str) -> List[str]:
        return self.lists.setdefault(name, [])

    def _check(self):
        if self.broken:
            raise ConnectionError("queue store unreachable")

    async def move(self, source: str, destination: str, timeout: float) -> Optional[str]:
        self.move_calls += 1
        self._check()
        src = self.items(source)
        if not src:
            await asyncio.sleep(min(timeout, 0.01))
            return None
        value = src.pop()
        self.items(destination).insert(0, value)
        return value

    async def push(self, name: str, value: str) -> int:
        self._check()
        if self.fail_push:
            raise ConnectionError("push rejected")
        self.items(name).insert(0, value)
        return len(self.items(name))

    async def remove(self, name: str, value: str, count: int = 1) -> int:
        self._check()
        items = self.items(name)
        removed = 0
        while value in items and removed < count:
            items.remove(value)
            removed += 1
        return removed

    async def range(self, name: str, start: int = 0, end: int = -1) -> List[str]:
        self._check()
        items = self.items(name)
        return list(items[_bounds(items, start, end)])

    async def trim(self, name: str, start: int, end: int) -> None:
        self._check()
        items = self.items(name)
        self.lists[name] = items[_bounds(items, start, end)]

    async def length(self, name: str) -> int:
        self._check()
        return len(self.items(name))

    async def ping(self) -> bool:
        self._check()
        return True

    async def close(self) -> None:
        self.closed = True


class DummyTransport:
    """Transport whose outcomes are scripted per attempt.

    ``outcomes`` holds an exception to raise or ``None`` for success and is
    consumed one item per attempt; ``always_fail`` overrides it.
    """

    def __init__(self):
        self.attempts: List[TransportMessage] = []
        self.sent: List[TransportMessage] = []
        self.outcomes: List[Optional[Exception]] = []
        self.always_fail: Optional[Exception] = None
        self.delay: float = 0.0
        self.closed = False

    async def send(self, message: TransportMessage) -> DeliveryInfo:
        self.attempts.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail is not None:
            raise self.always_fail
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome
        self.sent.append(message)
        return DeliveryInfo(message_id=f"<{len(self.sent)}@test>", accepted=["a@x.com"], response="250 OK")

    async def verify(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


class DummyClock:
    """Controllable clock starting at a fixed UTC instant."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_job(job_id: str = "job-1", **fields: Any) -> EmailJob:
    data: Dict[str, Any] = {"id": job_id, "to": "a@x.com", "subject": "Hi", "text": "Hello"}
    data.update(fields)
    return EmailJob.model_validate(data)


@pytest.fixture
def queues() -> QueueNames:
    return QueueNames()


@pytest.fixture
def store() -> DummyQueueStore:
    return DummyQueueStore()


@pytest.fixture
def transport() -> DummyTransport:
    return DummyTransport()


@pytest.fixture
def clock() -> DummyClock:
    return DummyClock()


@pytest.fixture
def engine(store, transport, clock, queues) -> DeliveryEngine:
    return DeliveryEngine(
        store,
        transport,
        queues=queues,
        default_sender="noreply@example.com",
        metrics=WorkerMetrics(),
        clock=clock,
    )


@pytest.fixture
def job_factory():
    return make_job
