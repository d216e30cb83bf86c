"""
Queue Broker
════════════

Typed wrapper over the durable broker (Celery on Redis).

Design: one explicit broker value, constructed at process start (FastAPI
lifespan, Celery worker_process_init) and passed to whoever needs to
enqueue: API routes via app.state, services as a constructor argument.
Nothing connects at import time.

Every named queue sits behind the same `Queue` interface with two
implementations, chosen once at construction:

  CeleryQueue  publishes through Celery, with job-id deduplication backed by
               the job_records table
  NoOpQueue    accepts nothing and returns a degraded handle; used when the
               broker is unreachable at start-up, or explicitly in tests

Call sites never branch on broker availability. The only distinction they
see is `enqueue` (raises BrokerUnavailable) versus `enqueue_safe` (returns a
degraded, non-throwing handle) for paths such as ingestion that must not
block on notification infrastructure being down.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from docpipe.core.exceptions import BrokerUnavailable
from docpipe.queue import tracking
from docpipe.queue.catalogue import QUEUE_CATALOGUE, QueueConfig, QueueName, get_queue_config

logger = logging.getLogger(__name__)

# Exceptions raised by kombu / redis-py / sockets when the broker is down.
_BROKER_EXCEPTION_TYPES = (
    "OperationalError",
    "ConnectionError",
    "ConnectionRefusedError",
    "TimeoutError",
    "RedisError",
)


def _is_broker_error(exc: BaseException) -> bool:
    if isinstance(exc, (OSError, ConnectionError, TimeoutError)):
        return True
    name = type(exc).__name__
    return any(name.endswith(n) for n in _BROKER_EXCEPTION_TYPES)


# ---------------------------------------------------------------------------
# Job handle
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobHandle:
    """
    job_id        : broker job id (caller-supplied idempotency key or generated)
    queue_name    : queue the job was routed to
    degraded      : True if nothing was published (no-op queue / broker down)
    deduplicated  : True if the job id already existed and nothing new was published
    """
    job_id:       str
    queue_name:   str
    degraded:     bool = False
    deduplicated: bool = False


# ---------------------------------------------------------------------------
# Queue interface
# ---------------------------------------------------------------------------

class Queue(ABC):

    def __init__(self, config: QueueConfig) -> None:
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name.value

    @abstractmethod
    async def add(
        self,
        payload:   dict[str, Any],
        *,
        job_id:    str,
        priority:  int = 0,
        task_name: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> JobHandle:
        """Publish one job. Raises BrokerUnavailable if the broker cannot be reached."""

    @abstractmethod
    async def get_counts(self) -> dict[str, int]:
        """waiting / active / completed / failed / delayed."""

    async def close(self) -> None:
        return None


class NoOpQueue(Queue):
    """Accepts every job and does nothing with it."""

    async def add(self, payload, *, job_id, priority=0, task_name=None, delay_seconds=0) -> JobHandle:
        logger.warning("No-op queue | queue=%s job=%s dropped", self.name, job_id)
        return JobHandle(job_id=job_id, queue_name=self.name, degraded=True)

    async def get_counts(self) -> dict[str, int]:
        return {state: 0 for state in tracking.COUNT_STATES}


class CeleryQueue(Queue):
    """
    Publishes via celery_app.send_task on the queue's kombu route.

    send_task is a blocking socket call; it runs in the default executor so
    the event loop is never stalled by a slow broker.
    """

    def __init__(
        self,
        config:     QueueConfig,
        celery_app: Any,
        *,
        session_factory: Optional[async_sessionmaker] = None,
        publish_timeout: float = 30.0,
    ) -> None:
        super().__init__(config)
        self._celery = celery_app
        self._session_factory = session_factory
        self._publish_timeout = publish_timeout

    async def add(self, payload, *, job_id, priority=0, task_name=None, delay_seconds=0) -> JobHandle:
        task = task_name or self.config.task_name

        fresh = await tracking.register_job(
            job_id=job_id,
            config=self.config,
            task_name=task,
            payload=payload,
            priority=priority,
            session_factory=self._session_factory,
        )
        if not fresh:
            return JobHandle(job_id=job_id, queue_name=self.name, deduplicated=True)

        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: self._celery.send_task(
                        task,
                        kwargs=payload,
                        task_id=job_id,
                        queue=self.name,
                        priority=priority,
                        countdown=delay_seconds or None,
                    ),
                ),
                timeout=self._publish_timeout,
            )
        except Exception as exc:
            # The job row must not outlive a failed publish or a resubmit is deduplicated
            await tracking.forget_job(job_id, session_factory=self._session_factory)
            if not (_is_broker_error(exc) or isinstance(exc, asyncio.TimeoutError)):
                logger.error("Publish rejected | queue=%s job=%s error=%s", self.name, job_id, exc)
                raise
            logger.error("Broker publish failed | queue=%s job=%s error=%s", self.name, job_id, exc)
            raise BrokerUnavailable(f"Broker unreachable while enqueueing to {self.name}: {exc}") from exc

        if delay_seconds:
            await tracking.mark_job(job_id, "delayed", session_factory=self._session_factory)

        logger.info("Job enqueued | queue=%s job=%s task=%s priority=%d", self.name, job_id, task, priority)
        return JobHandle(job_id=job_id, queue_name=self.name)

    async def get_counts(self) -> dict[str, int]:
        return await tracking.count_jobs(self.config.name, session_factory=self._session_factory)


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------

class QueueBroker:
    """
    Holds one Queue per catalogue entry.

    Usage::

        broker = QueueBroker.connect(celery_app)           # at start-up
        handle = await broker.enqueue(QueueName.FILE_IMPORT, {"file_id": ...})
        handle = await broker.enqueue_safe(QueueName.EMAIL, {...}, job_id="email_...")
        await broker.close()                               # on shutdown
    """

    def __init__(self, queues: dict[QueueName, Queue], *, celery_app: Any = None) -> None:
        missing = set(QUEUE_CATALOGUE) - set(queues)
        if missing:
            raise ValueError(f"Queues not configured: {sorted(q.value for q in missing)}")
        self._queues = queues
        self._celery = celery_app
        self._closed = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def connect(
        cls,
        celery_app: Any,
        *,
        session_factory: Optional[async_sessionmaker] = None,
        connect_timeout: Optional[float] = None,
        publish_timeout: Optional[float] = None,
    ) -> "QueueBroker":
        """
        Probe the broker once. Reachable → Celery-backed queues;
        unreachable → no-op queues for the life of this process.
        """
        from docpipe.core.config import settings

        connect_timeout = connect_timeout or settings.broker_connect_timeout
        publish_timeout = publish_timeout or settings.broker_request_timeout

        try:
            with celery_app.connection_for_write() as conn:
                conn.ensure_connection(max_retries=1, timeout=connect_timeout)
        except Exception as exc:
            if not _is_broker_error(exc):
                raise
            logger.error("Broker unreachable at start-up, using no-op queues | error=%s", exc)
            return cls.noop()

        return cls(
            {
                name: CeleryQueue(
                    config, celery_app,
                    session_factory=session_factory,
                    publish_timeout=publish_timeout,
                )
                for name, config in QUEUE_CATALOGUE.items()
            },
            celery_app=celery_app,
        )

    @classmethod
    def noop(cls) -> "QueueBroker":
        return cls({name: NoOpQueue(config) for name, config in QUEUE_CATALOGUE.items()})

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def queue(self, name: QueueName | str) -> Queue:
        return self._queues[get_queue_config(name).name]

    @property
    def degraded(self) -> bool:
        return all(isinstance(q, NoOpQueue) for q in self._queues.values())

    async def enqueue(
        self,
        queue_name: QueueName | str,
        payload:    dict[str, Any],
        *,
        job_id:     Optional[str] = None,
        priority:   Optional[int] = None,
        task_name:  Optional[str] = None,
        delay_seconds: float = 0,
    ) -> JobHandle:
        if self._closed:
            raise BrokerUnavailable("Broker has been closed")
        queue = self.queue(queue_name)
        return await queue.add(
            payload,
            job_id=job_id or str(uuid.uuid4()),
            priority=priority or 0,
            task_name=task_name,
            delay_seconds=delay_seconds,
        )

    async def enqueue_safe(
        self,
        queue_name: QueueName | str,
        payload:    dict[str, Any],
        **options:  Any,
    ) -> JobHandle:
        """Like enqueue, but a broker outage yields a degraded handle instead of raising."""
        try:
            return await self.enqueue(queue_name, payload, **options)
        except BrokerUnavailable as exc:
            job_id = options.get("job_id") or str(uuid.uuid4())
            logger.warning(
                "Enqueue degraded | queue=%s job=%s error=%s",
                get_queue_config(queue_name).name.value, job_id, exc,
            )
            return JobHandle(
                job_id=job_id,
                queue_name=get_queue_config(queue_name).name.value,
                degraded=True,
            )

    async def get_counts(self, queue_name: QueueName | str) -> dict[str, int]:
        return await self.queue(queue_name).get_counts()

    async def close(self) -> None:
        """Drain every queue connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues.values():
            await queue.close()
        if self._celery is not None:
            self._celery.close()
        logger.info("Queue broker closed")


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_broker: Optional[QueueBroker] = None


def set_broker(broker: Optional[QueueBroker]) -> None:
    global _broker
    _broker = broker


def get_broker() -> QueueBroker:
    """
    Return the broker created at process start-up.
    Workers and the API call set_broker() from their start-up hooks.
    """
    if _broker is None:
        raise RuntimeError("Queue broker not initialised; call set_broker() at start-up")
    return _broker
