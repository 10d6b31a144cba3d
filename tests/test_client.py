"""Tests for the producer-side EmailQueueClient."""

import json
import re
from datetime import datetime, timezone

import pytest

from email_worker.client import EmailQueueClient, generate_job_id
from email_worker.models import EmailJob, parse_timestamp


def queued(store, name="email_queue"):
    return [json.loads(raw) for raw in store.items(name)]


def test_generate_job_id_format():
    job_id = generate_job_id()
    assert re.fullmatch(r"email_\d{13}_[a-z0-9]{9}", job_id)
    assert generate_job_id() != job_id


# --- add_email_job ---

class TestAddEmailJob:
    """Tests for enqueueing arbitrary jobs."""

    @pytest.mark.asyncio
    async def test_generates_id_and_stamps_created_at(self, store):
        client = EmailQueueClient(store)
        job = await client.add_email_job({"to": "a@x.com", "subject": "Hi", "text": "Hello"})

        assert job.id.startswith("email_")
        payload = queued(store)[0]
        assert payload["id"] == job.id
        assert parse_timestamp(payload["metadata"]["createdAt"]).tzinfo is not None

    @pytest.mark.asyncio
    async def test_keeps_existing_id_and_metadata(self, store):
        client = EmailQueueClient(store)
        job = EmailJob(id="custom-1", to="a@x.com", metadata={"type": "digest"})

        await client.add_email_job(job)

        payload = queued(store)[0]
        assert payload["id"] == "custom-1"
        assert payload["metadata"]["type"] == "digest"
        assert "createdAt" in payload["metadata"]
        assert job.metadata == {"type": "digest"}

    @pytest.mark.asyncio
    async def test_high_priority_goes_to_main_queue(self, store):
        client = EmailQueueClient(store)
        await client.add_email_job({"to": "a@x.com", "priority": "high"})

        assert len(queued(store)) == 1
        assert store.items("email_queue_high") == []

    @pytest.mark.asyncio
    async def test_push_errors_propagate(self, store):
        store.fail_push = True
        client = EmailQueueClient(store)
        with pytest.raises(ConnectionError):
            await client.add_email_job({"to": "a@x.com"})


class TestQueueLength:
    """Tests for get_queue_length."""

    @pytest.mark.asyncio
    async def test_counts_main_queue(self, store):
        client = EmailQueueClient(store)
        await client.add_email_job({"to": "a@x.com"})
        await client.add_email_job({"to": "b@x.com"})
        assert await client.get_queue_length() == 2

    @pytest.mark.asyncio
    async def test_returns_zero_when_store_unreachable(self, store):
        store.broken = True
        assert await EmailQueueClient(store).get_queue_length() == 0

    @pytest.mark.asyncio
    async def test_close_closes_store(self, store):
        await EmailQueueClient(store).close()
        assert store.closed is True


# --- templated jobs ---

class TestTemplatedJobs:
    """Tests for the domain-specific helpers."""

    @pytest.mark.asyncio
    async def test_welcome_email(self, store):
        client = EmailQueueClient(store)
        job = await client.send_welcome_email("ada@x.com", "Ada <Lovelace>")

        assert job.id.startswith("welcome_")
        assert job.subject == "Welcome to ERP System"
        assert "Ada &lt;Lovelace&gt;" in job.html
        assert job.metadata["type"] == "welcome"
        assert job.metadata["userName"] == "Ada <Lovelace>"

    @pytest.mark.asyncio
    async def test_application_status_email(self, store):
        job = await EmailQueueClient(store).send_application_status_email("ada@x.com", "Ada", "approved", "A-42")

        assert job.id == "application_status_A-42"
        assert job.subject == "Application Status Update - approved"
        assert job.metadata == {
            "type": "application_status",
            "applicationId": "A-42",
            "status": "approved",
            "createdAt": job.metadata["createdAt"],
        }

    @pytest.mark.asyncio
    async def test_exam_notification_email(self, store):
        when = datetime(2025, 6, 3, 9, 30, tzinfo=timezone.utc)
        job = await EmailQueueClient(store).send_exam_notification_email("ada@x.com", "Ada", "Calculus", when)

        assert job.priority == "high"
        assert "2025-06-03" in job.html
        assert "09:30" in job.html
        assert job.metadata["examDate"] == "2025-06-03T09:30:00.000Z"

    @pytest.mark.asyncio
    async def test_exam_notification_accepts_iso_string(self, store):
        job = await EmailQueueClient(store).send_exam_notification_email(
            "ada@x.com", "Ada", "Algebra", "2025-06-03T14:00:00Z"
        )
        assert job.text == "Exam Notification: Algebra on 2025-06-03"

    @pytest.mark.asyncio
    async def test_password_reset_email(self, store):
        job = await EmailQueueClient(store).send_password_reset_email(
            "ada@x.com", "tok123", frontend_url="https://erp.uni.edu/"
        )

        assert "https://erp.uni.edu/reset-password?token=tok123" in job.text
        assert job.metadata == {"type": "password_reset", "createdAt": job.metadata["createdAt"]}

    @pytest.mark.asyncio
    async def test_password_reset_uses_frontend_url_env(self, store, monkeypatch):
        monkeypatch.setenv("FRONTEND_URL", "https://portal.example")
        job = await EmailQueueClient(store).send_password_reset_email("ada@x.com", "abc")
        assert "https://portal.example/reset-password?token=abc" in job.text

    @pytest.mark.asyncio
    async def test_password_reset_token_is_url_encoded(self, store):
        job = await EmailQueueClient(store).send_password_reset_email(
            "ada@x.com", "a b/c+d&e", frontend_url="https://erp.uni.edu"
        )
        assert "https://erp.uni.edu/reset-password?token=a%20b%2Fc%2Bd%26e" in job.text
