"""Pydantic models for the payloads moving through the email worker.

The wire format is the JSON contract shared with the producers that push
jobs onto the queue, so field aliases keep the producers' camelCase keys.

Models:
    - EmailAttachment: One attachment of a job (content is opaque)
    - EmailJob: A unit of work pulled from the main queue
    - RetryEnvelope: A job waiting in the retry list until ``scheduledAt``
    - LogEntry: Terminal record of an attempt, kept in the bounded log list
    - QueueStats: Snapshot of the three queue lengths
    - Attempt: Retry bookkeeping derived from a job's metadata
    - TransportMessage / DeliveryInfo: What the transport sends and returns
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RETRY_COUNT_KEY = "retryCount"
LAST_ERROR_KEY = "lastError"
LAST_ATTEMPT_KEY = "lastAttempt"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Priority(str, Enum):
    """Priorities the producer helpers set. Dispatch order does not depend on them."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class EmailAttachment(BaseModel):
    """Attachment carried by a job; ``content`` is passed through untouched."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    filename: str
    content: Any = None
    content_type: Annotated[
        str | None,
        Field(default=None, alias="contentType")
    ]


class EmailJob(BaseModel):
    """A unit of work as serialized on the main queue.

    Unknown top-level keys are kept so the payload survives a round trip
    through the retry list unchanged apart from ``metadata``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Annotated[str, Field(min_length=1)]
    to: str | list[str]
    sender: Annotated[
        str | None,
        Field(default=None, alias="from")
    ]
    subject: str | None = ""
    html: str | None = None
    text: str | None = None
    attachments: list[EmailAttachment] = Field(default_factory=list)
    # advisory and free-form; unknown values are carried through untouched
    priority: str | None = None
    scheduled_at: Annotated[
        str | None,
        Field(default=None, alias="scheduledAt")
    ]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def recipients(self) -> list[str]:
        """Recipients as a list, preserving order."""
        if isinstance(self.to, str):
            return [self.to]
        return list(self.to)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "EmailJob":
        return cls.model_validate_json(raw)

    def to_json(self) -> str:
        # keys the producer sent, null ones included, and nothing it did not
        return self.model_dump_json(by_alias=True, exclude_unset=True)


class RetryEnvelope(BaseModel):
    """Wraps a job for delayed redelivery."""

    model_config = ConfigDict(populate_by_name=True)

    job: EmailJob
    scheduled_at: Annotated[str, Field(alias="scheduledAt")]

    def due_at(self) -> datetime:
        return parse_timestamp(self.scheduled_at)

    def is_due(self, now: datetime) -> bool:
        """Return ``True`` once ``now`` has reached the scheduled time."""
        return now >= self.due_at()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "RetryEnvelope":
        return cls.model_validate_json(raw)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_unset=True)


class LogEntry(BaseModel):
    """Terminal record of a delivery attempt."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: Annotated[str, Field(alias="jobId")]
    status: Literal["success", "failed"]
    timestamp: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "LogEntry":
        return cls.model_validate_json(raw)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class QueueStats(BaseModel):
    """Lengths of the main, processing and retry lists at ``timestamp``."""

    model_config = ConfigDict(populate_by_name=True)

    main_queue: Annotated[int, Field(alias="mainQueue")]
    processing: int
    retry: int
    timestamp: str

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class Attempt:
    """Retry state of a job, read from its metadata.

    The job itself is never mutated: :meth:`record_failure` returns a new
    job whose metadata carries the updated counters.
    """

    job: EmailJob
    retry_count: int = 0
    last_error: str | None = None
    last_attempt: str | None = None

    @classmethod
    def from_job(cls, job: EmailJob) -> "Attempt":
        metadata = job.metadata or {}
        try:
            retry_count = int(metadata.get(RETRY_COUNT_KEY) or 0)
        except (TypeError, ValueError):
            retry_count = 0
        return cls(
            job=job,
            retry_count=max(0, retry_count),
            last_error=metadata.get(LAST_ERROR_KEY),
            last_attempt=metadata.get(LAST_ATTEMPT_KEY),
        )

    def record_failure(self, retry_count: int, error: str, at: datetime) -> EmailJob:
        """Return a copy of the job with retry metadata for ``retry_count``."""
        metadata = dict(self.job.metadata or {})
        metadata[RETRY_COUNT_KEY] = retry_count
        metadata[LAST_ERROR_KEY] = error
        metadata[LAST_ATTEMPT_KEY] = format_timestamp(at)
        return self.job.model_copy(update={"metadata": metadata}, deep=True)


@dataclass
class TransportMessage:
    """Message handed to the mail transport."""

    sender: str | None
    to: str | list[str]
    subject: str
    html: str | None = None
    text: str | None = None
    attachments: list[EmailAttachment] = field(default_factory=list)

    @classmethod
    def from_job(cls, job: EmailJob, default_sender: str | None = None) -> "TransportMessage":
        return cls(
            sender=job.sender or default_sender,
            to=job.to,
            subject=job.subject or "",
            html=job.html,
            text=job.text,
            attachments=list(job.attachments),
        )


@dataclass
class DeliveryInfo:
    """What the transport reports back after a successful send."""

    message_id: str | None = None
    accepted: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    response: str | None = None

    def as_details(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "accepted": list(self.accepted),
            "rejected": list(self.rejected),
            "response": self.response,
        }
