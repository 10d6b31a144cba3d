"""Producer-side client that puts email jobs on the worker's main queue.

Usage:
    >>> from email_worker.client import EmailQueueClient
    >>> client = EmailQueueClient.from_url("redis://localhost:6379")
    >>> await client.send_welcome_email("ada@example.com", "Ada")
    >>> await client.get_queue_length()
    1
"""

from __future__ import annotations

import os
import random
import string
import time
from datetime import datetime
from html import escape
from typing import Any, Dict, Optional, Union
from urllib.parse import quote

from .logger import get_logger
from .models import EmailJob, Priority, format_timestamp, parse_timestamp, utc_now
from .queue_store import QueueNames, QueueStore, RedisQueueStore

logger = get_logger("EmailWorker.client")

_LAYOUT = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
    '<h1 style="color: #333;">{title}</h1>{body}'
    "<p>Best regards,<br>{signature}</p></div>"
)


def _millis() -> int:
    return int(time.time() * 1000)


def generate_job_id() -> str:
    """Return an id of the form ``email_<epoch ms>_<9 random chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"email_{_millis()}_{suffix}"


class EmailQueueClient:
    """Enqueue email jobs for the delivery worker.

    Every job goes to the single main queue regardless of ``priority``,
    because the worker drains only that list.
    """

    def __init__(self, store: QueueStore, queues: QueueNames | None = None, signature: str = "ERP System Team"):
        self.store = store
        self.queues = queues or QueueNames()
        self.signature = signature

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "EmailQueueClient":
        return cls(RedisQueueStore(url), **kwargs)

    async def add_email_job(self, job: Union[EmailJob, Dict[str, Any]]) -> EmailJob:
        """Validate, stamp and enqueue ``job``; return what was queued."""
        data = job.model_dump(by_alias=True, exclude_unset=True) if isinstance(job, EmailJob) else dict(job)
        if not data.get("id"):
            data["id"] = generate_job_id()
        metadata = dict(data.get("metadata") or {})
        metadata["createdAt"] = format_timestamp(utc_now())
        data["metadata"] = metadata
        queued = EmailJob.model_validate(data)
        try:
            await self.store.push(self.queues.main, queued.to_json())
        except Exception as exc:
            logger.error("Failed to add email job %s to queue: %s", queued.id, exc)
            raise
        logger.info("Email job added to queue: %s", queued.id)
        return queued

    async def get_queue_length(self) -> int:
        """Number of jobs waiting in the main queue (0 if the store is unreachable)."""
        try:
            return await self.store.length(self.queues.main)
        except Exception as exc:
            logger.error("Failed to get queue length: %s", exc)
            return 0

    async def close(self) -> None:
        await self.store.close()

    # ----------------------------------------------------------- templated jobs
    def _html(self, title: str, body: str) -> str:
        return _LAYOUT.format(title=escape(title), body=body, signature=escape(self.signature))

    async def send_welcome_email(self, user_email: str, user_name: str) -> EmailJob:
        body = (
            f"<p>Dear {escape(user_name)},</p>"
            "<p>Welcome to our ERP system. Your account has been successfully created.</p>"
            "<p>You can now log in and start using the system.</p>"
        )
        return await self.add_email_job(
            {
                "id": f"welcome_{_millis()}",
                "to": user_email,
                "subject": "Welcome to ERP System",
                "html": self._html("Welcome to ERP System!", body),
                "text": f"Welcome to ERP System! Dear {user_name}, your account has been successfully created.",
                "priority": Priority.NORMAL.value,
                "metadata": {"type": "welcome", "userName": user_name},
            }
        )

    async def send_application_status_email(
        self, user_email: str, user_name: str, status: str, application_id: str
    ) -> EmailJob:
        body = (
            f"<p>Dear {escape(user_name)},</p>"
            f"<p>Your application (ID: {escape(application_id)}) status has been updated to: "
            f"<strong>{escape(status)}</strong></p>"
            "<p>Please log in to your account for more details.</p>"
        )
        return await self.add_email_job(
            {
                "id": f"application_status_{application_id}",
                "to": user_email,
                "subject": f"Application Status Update - {status}",
                "html": self._html("Application Status Update", body),
                "text": f"Application Status Update: Your application {application_id} status is now {status}",
                "priority": Priority.NORMAL.value,
                "metadata": {"type": "application_status", "applicationId": application_id, "status": status},
            }
        )

    async def send_exam_notification_email(
        self, user_email: str, user_name: str, exam_name: str, exam_date: Union[str, datetime]
    ) -> EmailJob:
        when = parse_timestamp(exam_date) if isinstance(exam_date, str) else exam_date
        day = when.strftime("%Y-%m-%d")
        hour = when.strftime("%H:%M")
        body = (
            f"<p>Dear {escape(user_name)},</p>"
            "<p>This is a reminder that you have an upcoming exam:</p>"
            '<div style="background: #f5f5f5; padding: 15px; border-radius: 5px; margin: 15px 0;">'
            f'<h3 style="margin: 0; color: #333;">{escape(exam_name)}</h3>'
            f'<p style="margin: 5px 0;"><strong>Date:</strong> {day}</p>'
            f'<p style="margin: 5px 0;"><strong>Time:</strong> {hour}</p>'
            "</div><p>Please be prepared and arrive on time.</p>"
        )
        return await self.add_email_job(
            {
                "id": f"exam_notification_{_millis()}",
                "to": user_email,
                "subject": f"Exam Notification - {exam_name}",
                "html": self._html("Exam Notification", body),
                "text": f"Exam Notification: {exam_name} on {day}",
                "priority": Priority.HIGH.value,
                "metadata": {"type": "exam_notification", "examName": exam_name, "examDate": format_timestamp(when)},
            }
        )

    async def send_password_reset_email(
        self, user_email: str, reset_token: str, frontend_url: Optional[str] = None
    ) -> EmailJob:
        base_url = frontend_url if frontend_url is not None else os.getenv("FRONTEND_URL", "")
        reset_url = f"{base_url.rstrip('/')}/reset-password?token={quote(reset_token, safe='')}"
        body = (
            "<p>You have requested to reset your password.</p>"
            "<p>Click the link below to reset your password:</p>"
            '<div style="text-align: center; margin: 20px 0;">'
            f'<a href="{escape(reset_url)}" style="background: #007bff; color: white; padding: 12px 24px; '
            'text-decoration: none; border-radius: 5px; display: inline-block;">Reset Password</a></div>'
            "<p>This link will expire in 24 hours.</p>"
            "<p>If you didn't request this password reset, please ignore this email.</p>"
        )
        return await self.add_email_job(
            {
                "id": f"password_reset_{_millis()}",
                "to": user_email,
                "subject": "Password Reset Request",
                "html": self._html("Password Reset Request", body),
                "text": f"Password reset requested. Click this link to reset: {reset_url}",
                "priority": Priority.HIGH.value,
                # the token is already in the link, keep it out of the queued metadata
                "metadata": {"type": "password_reset"},
            }
        )
