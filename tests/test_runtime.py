"""Tests for the composition root and producer-side job intake."""
import pytest

from config.settings import Settings
from core.runtime import Runtime
from models.schemas import ConnectionState, JobKind, JobRecord, JobStatus


@pytest.fixture
def runtime(broker, broker_config, worker_config, store, senders):
    settings = Settings(broker=broker_config, worker=worker_config)
    return Runtime(settings, connector=broker.connect, store=store, senders=senders)


class TestRuntime:
    @pytest.mark.asyncio
    async def test_start_declares_queue_and_consumes(self, runtime, broker):
        await runtime.start()
        try:
            assert runtime.supervisor.current_state() == ConnectionState.CONNECTED
            assert broker.declared["email_queue"] is True
            assert runtime.gateway.consumers()["email_queue"]["active"] is True
        finally:
            await runtime.stop()
        assert runtime.supervisor.current_state() == ConnectionState.DISCONNECTED
        assert runtime.gateway.consumers() == {}

    @pytest.mark.asyncio
    async def test_start_degraded_does_not_raise(self, runtime, broker):
        broker.fail_always = True
        await runtime.start()
        try:
            health = await runtime.health()
            assert health["healthy"] is False
            assert health["broker_state"] == "degraded"
            assert runtime.gateway.consumers() == {}
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_end_to_end_delivery(self, runtime, store, sender, broker, eventually):
        await runtime.start()
        try:
            record, published = await runtime.intake.enqueue(
                "x@y.com", kind="welcome", userName="Ana")
            assert published is True
            await eventually(lambda: len(broker.acked) == 1)
            assert (await store.find_by_id(record.id)).status == JobStatus.SENT
            _, job = sender.calls[0]
            assert job.user_name == "Ana"
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_job_summary_counts_recent_statuses(self, runtime, store):
        sent = await store.create(JobRecord(id="s1", destination="x@y.com", kind=JobKind.WELCOME))
        sent.retry_count = 1
        sent.mark_sent()
        await store.save(sent)
        await store.create(JobRecord(id="q1", destination="x@y.com"))
        await store.create(JobRecord(id="q2", destination="x@y.com"))

        summary = await runtime.job_summary()
        assert summary["counts"] == {"sent": 1, "queued": 2}
        assert {row["id"] for row in summary["recent"]} == {"s1", "q1", "q2"}
        row = next(r for r in summary["recent"] if r["id"] == "s1")
        assert row == {"id": "s1", "kind": "welcome", "status": "sent", "retry_count": 1}

        assert len((await runtime.job_summary(limit=1))["recent"]) == 1


class TestJobIntake:
    @pytest.mark.asyncio
    async def test_record_created_before_publish(self, runtime, store, broker):
        await runtime.supervisor.init()
        record, published = await runtime.intake.enqueue(
            "x@y.com", kind="custom", subject="Invoice", text="see attached")
        assert published is True
        stored = await store.find_by_id(record.id)
        assert stored.kind == JobKind.GENERIC
        assert stored.status == JobStatus.QUEUED
        assert stored.body == "see attached"
        assert broker.published_payloads("email_queue") == [{
            "jobId": record.id, "kind": "generic", "destination": "x@y.com",
            "subject": "Invoice", "text": "see attached",
        }]
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_publish_refused_marks_record_failed(self, runtime, store, broker):
        record, published = await runtime.intake.enqueue("x@y.com", kind="welcome")
        assert published is False
        stored = await store.find_by_id(record.id)
        assert stored.status == JobStatus.FAILED
        assert "could not enqueue" in stored.error_message
        assert broker.published == []
