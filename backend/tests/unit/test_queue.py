"""
Unit Tests — Queue catalogue, broker and job bookkeeping
════════════════════════════════════════════════════════
All tests:
  • Use a per-test SQLite database for job_records
  • Replace Celery with fake_celery (send_task is a MagicMock)
  • Never touch Redis

Coverage targets:
  ✅ Catalogue  → six queues, attempts / backoff / retention per queue
  ✅ Backoff    → exponential, base * 2**(n-1); none for hierarchy-reindex
  ✅ Broker     → unreachable at start-up → no-op queues, degraded handles
  ✅ enqueue    → publishes through send_task on the queue's route
  ✅ Dedup      → same job id twice → one publish, deduplicated handle
  ✅ Outage     → BrokerUnavailable from enqueue, degraded handle from enqueue_safe
  ✅ Outage     → bookkeeping row removed so a later enqueue can publish
  ✅ Rejected   → encode errors propagate, row removed, resubmitted email publishes
  ✅ Shutdown   → close() drains every queue once; enqueue after close fails
  ✅ Counts     → waiting / active / completed / failed / delayed per queue
  ✅ Pruning    → completed / failed windows applied per queue
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from docpipe.core.exceptions import BrokerUnavailable
from docpipe.queue import tracking
from docpipe.queue.broker import CeleryQueue, NoOpQueue, QueueBroker
from docpipe.queue.catalogue import QUEUE_CATALOGUE, QueueConfig, QueueName, get_queue_config


# ─────────────────────────────────────────────────────────────────────────────
# Catalogue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestQueueCatalogue:

    def test_six_named_queues(self):
        assert {q.value for q in QUEUE_CATALOGUE} == {
            "file-import", "invoice-import", "bulk-parsing-test",
            "email", "scheduled-tasks", "hierarchy-reindex",
        }

    @pytest.mark.parametrize("name,attempts", [
        ("file-import", 3),
        ("bulk-parsing-test", 2),
        ("invoice-import", 2),
        ("email", 10),
        ("scheduled-tasks", 3),
        ("hierarchy-reindex", 1),
    ])
    def test_attempts_per_queue(self, name, attempts):
        config = get_queue_config(name)
        assert config.attempts == attempts
        assert config.max_retries == attempts - 1

    def test_backoff_is_exponential(self):
        config = get_queue_config(QueueName.FILE_IMPORT)
        assert [config.backoff_delay_ms(n) for n in (1, 2, 3)] == [2000, 4000, 8000]
        assert config.backoff_seconds(2) == 4.0

    def test_email_backoff_starts_at_one_minute(self):
        config = get_queue_config(QueueName.EMAIL)
        assert config.backoff_delay_ms(1) == 60_000
        assert config.backoff_delay_ms(4) == 480_000

    def test_hierarchy_reindex_has_no_backoff(self):
        config = get_queue_config(QueueName.HIERARCHY_REINDEX)
        assert config.backoff_delay_ms(1) == 0
        assert config.max_retries == 0

    def test_failed_jobs_outlive_completed_jobs(self):
        for config in QUEUE_CATALOGUE.values():
            if config.keep_failed_seconds is None:
                continue
            assert config.keep_failed_seconds >= config.keep_completed_seconds

    def test_unknown_queue_raises_key_error(self):
        with pytest.raises(KeyError):
            get_queue_config("printing")

    def test_attempts_below_one_rejected(self):
        with pytest.raises(ValueError):
            QueueConfig(
                name=QueueName.EMAIL, task_name="x", attempts=0, backoff_base_ms=None,
                keep_completed_seconds=0, keep_completed_count=None, keep_failed_seconds=None,
            )


# ─────────────────────────────────────────────────────────────────────────────
# Broker construction
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestQueueBrokerConnect:

    def test_unreachable_broker_yields_noop_queues(self, fake_celery):
        fake_celery.connection_for_write.side_effect = ConnectionRefusedError("refused")

        broker = QueueBroker.connect(fake_celery, connect_timeout=0.1)

        assert broker.degraded is True
        assert all(isinstance(broker.queue(name), NoOpQueue) for name in QueueName)

    def test_reachable_broker_yields_celery_queues(self, fake_celery):
        broker = QueueBroker.connect(fake_celery, connect_timeout=0.1)

        assert broker.degraded is False
        assert isinstance(broker.queue(QueueName.EMAIL), CeleryQueue)

    def test_non_broker_error_at_connect_propagates(self, fake_celery):
        fake_celery.connection_for_write.side_effect = RuntimeError("misconfigured")

        with pytest.raises(RuntimeError):
            QueueBroker.connect(fake_celery, connect_timeout=0.1)

    def test_every_queue_must_be_configured(self):
        queues = {QueueName.EMAIL: NoOpQueue(get_queue_config(QueueName.EMAIL))}
        with pytest.raises(ValueError, match="Queues not configured"):
            QueueBroker(queues)


# ─────────────────────────────────────────────────────────────────────────────
# No-op broker
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestNoOpBroker:

    async def test_enqueue_returns_degraded_handle(self, noop_broker):
        handle = await noop_broker.enqueue(QueueName.FILE_IMPORT, {"file_id": "f1"}, job_id="file-import_f1")

        assert handle.degraded is True
        assert handle.job_id == "file-import_f1"
        assert handle.queue_name == "file-import"

    async def test_counts_are_zero(self, noop_broker):
        counts = await noop_broker.get_counts("email")
        assert counts == {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}


# ─────────────────────────────────────────────────────────────────────────────
# Celery-backed broker
# ─────────────────────────────────────────────────────────────────────────────

def _celery_broker(fake_celery, session_factory) -> QueueBroker:
    return QueueBroker(
        {
            name: CeleryQueue(config, fake_celery, session_factory=session_factory, publish_timeout=5)
            for name, config in QUEUE_CATALOGUE.items()
        },
        celery_app=fake_celery,
    )


@pytest.mark.unit
class TestCeleryBroker:

    async def test_enqueue_publishes_on_queue_route(self, fake_celery, session_factory):
        broker = _celery_broker(fake_celery, session_factory)

        handle = await broker.enqueue(
            QueueName.FILE_IMPORT, {"file_id": "abc"}, job_id="file-import_abc", priority=3,
        )

        assert handle.degraded is False
        assert handle.deduplicated is False
        fake_celery.send_task.assert_called_once()
        args, kwargs = fake_celery.send_task.call_args
        assert args[0] == "docpipe.workers.tasks.process_file_import"
        assert kwargs["kwargs"] == {"file_id": "abc"}
        assert kwargs["task_id"] == "file-import_abc"
        assert kwargs["queue"] == "file-import"
        assert kwargs["priority"] == 3

        record = await tracking.get_job("file-import_abc", session_factory=session_factory)
        assert record.state == "waiting"
        assert record.max_attempts == 3

    async def test_same_job_id_publishes_once(self, fake_celery, session_factory):
        broker = _celery_broker(fake_celery, session_factory)

        first = await broker.enqueue(QueueName.EMAIL, {"email_log_id": "1"}, job_id="email_1")
        second = await broker.enqueue(QueueName.EMAIL, {"email_log_id": "1"}, job_id="email_1")

        assert first.deduplicated is False
        assert second.deduplicated is True
        assert fake_celery.send_task.call_count == 1

    async def test_broker_outage_raises_and_forgets_job(self, fake_celery, session_factory):
        fake_celery.send_task.side_effect = ConnectionRefusedError("redis down")
        broker = _celery_broker(fake_celery, session_factory)

        with pytest.raises(BrokerUnavailable):
            await broker.enqueue(QueueName.FILE_IMPORT, {"file_id": "x"}, job_id="file-import_x")

        assert await tracking.get_job("file-import_x", session_factory=session_factory) is None

    async def test_job_can_be_published_after_outage_clears(self, fake_celery, session_factory):
        fake_celery.send_task.side_effect = [ConnectionRefusedError("redis down"), None]
        broker = _celery_broker(fake_celery, session_factory)

        degraded = await broker.enqueue_safe(QueueName.FILE_IMPORT, {"file_id": "x"}, job_id="file-import_x")
        handle = await broker.enqueue(QueueName.FILE_IMPORT, {"file_id": "x"}, job_id="file-import_x")

        assert degraded.degraded is True
        assert degraded.job_id == "file-import_x"
        assert handle.degraded is False
        assert handle.deduplicated is False

    async def test_rejected_publish_forgets_job(self, fake_celery, session_factory):
        fake_celery.send_task.side_effect = TypeError("Object of type bytes is not JSON serializable")
        broker = _celery_broker(fake_celery, session_factory)

        with pytest.raises(TypeError):
            await broker.enqueue(QueueName.FILE_IMPORT, {"file_id": "x"}, job_id="file-import_x")

        assert await tracking.get_job("file-import_x", session_factory=session_factory) is None

    async def test_email_resubmitted_after_rejected_publish(self, fake_celery, session_factory):
        from docpipe.core.exceptions import EnqueueFailed
        from docpipe.models import EmailDeliveryLog
        from docpipe.notifications import queue_email

        fake_celery.send_task.side_effect = [TypeError("cannot encode payload"), None]
        broker = _celery_broker(fake_celery, session_factory)

        with pytest.raises(EnqueueFailed):
            await queue_email(broker, to="ops@acme.test", subject="Hi", html="<p>x</p>",
                              session_factory=session_factory)
        async with session_factory() as session:
            log = (await session.execute(select(EmailDeliveryLog))).scalar_one()

        queued = await queue_email(broker, to="ops@acme.test", subject="Hi", html="<p>x</p>",
                                   log_id=log.id, session_factory=session_factory)

        assert queued.handle.deduplicated is False
        assert fake_celery.send_task.call_count == 2
        assert fake_celery.send_task.call_args.kwargs["task_id"] == f"email_{log.id}"

    async def test_delayed_job_is_marked_delayed(self, fake_celery, session_factory):
        broker = _celery_broker(fake_celery, session_factory)

        await broker.enqueue(QueueName.EMAIL, {"email_log_id": "2"}, job_id="email_2", delay_seconds=30)

        assert fake_celery.send_task.call_args.kwargs["countdown"] == 30
        record = await tracking.get_job("email_2", session_factory=session_factory)
        assert record.state == "delayed"

    async def test_close_drains_once_and_blocks_enqueue(self, fake_celery, session_factory):
        broker = _celery_broker(fake_celery, session_factory)

        await broker.close()
        await broker.close()

        fake_celery.close.assert_called_once()
        with pytest.raises(BrokerUnavailable):
            await broker.enqueue(QueueName.EMAIL, {})

    async def test_enqueue_safe_after_close_is_degraded(self, fake_celery, session_factory):
        broker = _celery_broker(fake_celery, session_factory)
        await broker.close()

        handle = await broker.enqueue_safe(QueueName.EMAIL, {}, job_id="email_3")

        assert handle.degraded is True
        assert handle.queue_name == "email"


# ─────────────────────────────────────────────────────────────────────────────
# Job bookkeeping
# ─────────────────────────────────────────────────────────────────────────────

async def _register(job_id: str, queue: QueueName, session_factory) -> None:
    config = get_queue_config(queue)
    await tracking.register_job(
        job_id=job_id, config=config, task_name=config.task_name,
        payload={}, priority=0, session_factory=session_factory,
    )


@pytest.mark.unit
class TestJobTracking:

    async def test_counts_by_state(self, session_factory):
        for n in range(5):
            await _register(f"job-{n}", QueueName.FILE_IMPORT, session_factory)
        await tracking.mark_job("job-1", "active", session_factory=session_factory)
        await tracking.mark_job("job-2", "completed", session_factory=session_factory)
        await tracking.mark_job("job-3", "failed", error="boom", session_factory=session_factory)
        await tracking.mark_job("job-4", "dead_letter", session_factory=session_factory)
        await _register("other", QueueName.EMAIL, session_factory)

        counts = await tracking.count_jobs(QueueName.FILE_IMPORT, session_factory=session_factory)

        assert counts == {"waiting": 1, "active": 1, "completed": 1, "failed": 2, "delayed": 0}

    async def test_mark_job_records_attempts_and_error(self, session_factory):
        await _register("job-a", QueueName.EMAIL, session_factory)

        await tracking.mark_job("job-a", "failed", attempts_made=2, error="x" * 5000,
                                session_factory=session_factory)

        record = await tracking.get_job("job-a", session_factory=session_factory)
        assert record.attempts_made == 2
        assert len(record.last_error) == 2000
        assert record.finished_at is not None

    async def test_mark_unknown_job_is_a_no_op(self, session_factory):
        await tracking.mark_job("never-registered", "completed", session_factory=session_factory)
        assert await tracking.get_job("never-registered", session_factory=session_factory) is None

    async def test_prune_applies_each_queue_window(self, session_factory):
        await _register("reindex-done", QueueName.HIERARCHY_REINDEX, session_factory)
        await _register("import-done", QueueName.FILE_IMPORT, session_factory)
        await _register("import-failed", QueueName.FILE_IMPORT, session_factory)
        await _register("import-waiting", QueueName.FILE_IMPORT, session_factory)
        await tracking.mark_job("reindex-done", "completed", session_factory=session_factory)
        await tracking.mark_job("import-done", "completed", session_factory=session_factory)
        await tracking.mark_job("import-failed", "failed", session_factory=session_factory)

        now = datetime.now(timezone.utc) + timedelta(seconds=1)
        removed = await tracking.prune_finished_jobs(now, session_factory=session_factory)

        assert removed["hierarchy-reindex"] == 1
        assert await tracking.get_job("import-done", session_factory=session_factory) is not None

        later = datetime.now(timezone.utc) + timedelta(days=2)
        await tracking.prune_finished_jobs(later, session_factory=session_factory)

        assert await tracking.get_job("import-done", session_factory=session_factory) is None
        assert await tracking.get_job("import-failed", session_factory=session_factory) is not None
        assert await tracking.get_job("import-waiting", session_factory=session_factory) is not None
