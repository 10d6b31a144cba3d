"""Queue-driven email delivery worker.

Jobs are pulled from a Redis list, sent through SMTP, and retried with
exponential backoff or dead-lettered when they keep failing.
"""

from .client import EmailQueueClient
from .config import SMTPSettings, WorkerSettings, load_settings
from .engine import DeliveryEngine, WorkerState
from .models import (
    Attempt,
    DeliveryInfo,
    EmailAttachment,
    EmailJob,
    LogEntry,
    Priority,
    QueueStats,
    RetryEnvelope,
    TransportMessage,
)
from .queue_store import QueueNames, QueueStore, RedisQueueStore
from .retry import RetryPolicy
from .transport import MailTransport, SMTPTransport
from .worker import EmailWorker, WorkerStartupError

__all__ = [
    "Attempt",
    "DeliveryEngine",
    "DeliveryInfo",
    "EmailAttachment",
    "EmailJob",
    "EmailQueueClient",
    "EmailWorker",
    "LogEntry",
    "MailTransport",
    "Priority",
    "QueueNames",
    "QueueStats",
    "QueueStore",
    "RedisQueueStore",
    "RetryEnvelope",
    "RetryPolicy",
    "SMTPSettings",
    "SMTPTransport",
    "TransportMessage",
    "WorkerSettings",
    "WorkerStartupError",
    "WorkerState",
    "load_settings",
]
