from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import pytest
from fakeredis.aioredis import FakeRedis

from dancefeedback.moderation.domain.classifier import ChatCompletionClassifier
from dancefeedback.moderation.domain.content import InMemoryContentStore
from dancefeedback.moderation.domain.errors import ClassifierUnavailable, PersistenceError, QueueUnavailable
from dancefeedback.moderation.domain.ledger import InMemoryJobLedger
from dancefeedback.moderation.domain.models import (
    JobStatus,
    ModeratedContent,
    ModerationLevel,
    ModerationSource,
    ModerationVerdict,
    QueueMessage,
    TargetType,
)
from dancefeedback.moderation.domain.producer import ModerationProducer
from dancefeedback.moderation.infra.queue import Delivery, QueueConnection, RedisStreamQueue
from dancefeedback.moderation.workers import ModerationWorker, ResultKind, WorkerConfig


class StubQueue:
    def __init__(self, bodies: list[str] | None = None) -> None:
        self.pending = [Delivery(entry_id=f"{i}-0", body=body) for i, body in enumerate(bodies or [], start=1)]
        self.acked: list[str] = []
        self.requeued: list[str] = []
        self.dead: list[str] = []
        self.closed = False

    async def connect(self) -> None:
        return None

    async def consume_one(self, timeout: float = 0.0) -> Optional[Delivery]:
        return self.pending.pop(0) if self.pending else None

    async def ack(self, delivery: Delivery) -> None:
        self.acked.append(delivery.entry_id)

    async def nack(self, delivery: Delivery, *, requeue: bool = True) -> None:
        if requeue:
            self.requeued.append(delivery.entry_id)
            self.pending.insert(0, delivery)
        else:
            self.dead.append(delivery.entry_id)

    async def close(self) -> None:
        self.closed = True


class StubClassifier:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.texts: list[str] = []

    async def classify(self, text: str) -> ModerationVerdict:
        self.texts.append(text)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


GREEN = ModerationVerdict(ModerationLevel.GREEN, "polite")
RED = ModerationVerdict(ModerationLevel.RED, "insult")


def _body(target_type: str = "Review", target_id: int = 1) -> str:
    return QueueMessage(target_type=target_type, target_id=target_id).to_wire()


def _setup(bodies, *outcomes, config: WorkerConfig | None = None):
    content = InMemoryContentStore()
    content.add(ModeratedContent(target_type=TargetType.REVIEW, target_id=1, text_review="Great musicality, thanks!"))
    ledger = InMemoryJobLedger()
    queue = StubQueue(bodies)
    sleep = RecordingSleep()
    worker = ModerationWorker(
        queue=queue,
        content=content,
        ledger=ledger,
        classifier=StubClassifier(*(outcomes or (GREEN,))),
        config=config,
        sleep=sleep,
    )
    return worker, queue, content, ledger, sleep


@pytest.mark.asyncio
async def test_verdict_is_applied_and_message_acked() -> None:
    worker, queue, content, ledger, _ = _setup([_body()], GREEN)
    job = await ledger.create(TargetType.REVIEW, 1)

    assert await worker.run_once() is True

    item = content.items[(TargetType.REVIEW, 1)]
    assert item.moderation_level is ModerationLevel.GREEN
    assert item.moderation_source is ModerationSource.LLM
    assert item.moderated_at is not None
    assert ledger.rows[job.job_id].status is JobStatus.DONE
    assert queue.acked == ["1-0"]
    assert worker.classifier.texts == ["Great musicality, thanks!"]


@pytest.mark.asyncio
async def test_classifier_failure_records_error_and_requeues() -> None:
    config = WorkerConfig(classifier_backoff=2.5)
    worker, queue, content, ledger, sleep = _setup([_body()], ClassifierUnavailable("HTTP 503"), config=config)
    job = await ledger.create(TargetType.REVIEW, 1)

    await worker.run_once()

    row = ledger.rows[job.job_id]
    assert row.status is JobStatus.ERROR
    assert row.attempts == 1
    assert row.last_error.startswith("ClassifierUnavailable")
    assert content.items[(TargetType.REVIEW, 1)].moderation_level is ModerationLevel.PENDING
    assert queue.requeued == ["1-0"]
    assert queue.acked == []
    assert sleep.calls == [2.5]


@pytest.mark.asyncio
async def test_redelivery_after_failure_succeeds() -> None:
    worker, queue, content, ledger, _ = _setup([_body()], ClassifierUnavailable("down"), RED)
    job = await ledger.create(TargetType.REVIEW, 1)

    await worker.run_once()
    await worker.run_once()

    assert content.items[(TargetType.REVIEW, 1)].moderation_level is ModerationLevel.RED
    row = ledger.rows[job.job_id]
    assert row.status is JobStatus.DONE
    assert row.attempts == 1
    assert queue.acked == ["1-0"]


@pytest.mark.asyncio
async def test_malformed_message_is_requeued_with_short_backoff() -> None:
    worker, queue, _, ledger, sleep = _setup(["{broken"])

    await worker.run_once()

    assert queue.requeued == ["1-0"]
    assert sleep.calls == [0.2]
    assert ledger.rows == {}


@pytest.mark.asyncio
async def test_unknown_target_type_is_dead_lettered() -> None:
    worker, queue, _, _, sleep = _setup([_body("Comment", 1)])

    await worker.run_once()

    assert queue.dead == ["1-0"]
    assert queue.requeued == []
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_missing_content_is_acked_and_job_closed() -> None:
    worker, queue, _, ledger, _ = _setup([_body("Review", 99)])
    job = await ledger.create(TargetType.REVIEW, 99)

    await worker.run_once()

    assert queue.acked == ["1-0"]
    assert ledger.rows[job.job_id].status is JobStatus.DONE
    assert worker.classifier.texts == []


@pytest.mark.asyncio
async def test_processing_without_ledger_row_still_applies_verdict() -> None:
    worker, queue, content, ledger, _ = _setup([_body()], GREEN)

    result = await worker.process(queue.pending[0])

    assert result.kind is ResultKind.DONE
    assert content.items[(TargetType.REVIEW, 1)].moderation_level is ModerationLevel.GREEN
    assert ledger.rows == {}


@pytest.mark.asyncio
async def test_duplicate_delivery_converges_on_same_state() -> None:
    worker, queue, content, _, _ = _setup([_body(), _body()], GREEN)

    await worker.run_once()
    first = content.items[(TargetType.REVIEW, 1)]
    await worker.run_once()
    second = content.items[(TargetType.REVIEW, 1)]

    assert queue.acked == ["1-0", "2-0"]
    assert (first.moderation_level, first.moderation_source, first.moderation_reason) == (
        second.moderation_level,
        second.moderation_source,
        second.moderation_reason,
    )


@pytest.mark.asyncio
async def test_attempts_are_recorded_on_latest_row() -> None:
    worker, _, _, ledger, _ = _setup([_body()], ClassifierUnavailable("down"))
    older = await ledger.create(TargetType.REVIEW, 1)
    newer = await ledger.create(TargetType.REVIEW, 1)

    await worker.run_once()

    assert ledger.rows[older.job_id].attempts == 0
    assert ledger.rows[newer.job_id].attempts == 1


@pytest.mark.asyncio
async def test_max_attempts_dead_letters_the_message() -> None:
    config = WorkerConfig(max_attempts=2)
    worker, queue, _, ledger, _ = _setup([_body()], PersistenceError("db down"), config=config)
    job = await ledger.create(TargetType.REVIEW, 1)

    await worker.run_once()
    await worker.run_once()

    assert queue.requeued == ["1-0"]
    assert queue.dead == ["1-0"]
    assert ledger.rows[job.job_id].attempts == 2


@pytest.mark.asyncio
async def test_unexpected_error_does_not_stop_the_worker() -> None:
    worker, queue, _, ledger, sleep = _setup([_body()], RuntimeError("boom"))
    job = await ledger.create(TargetType.REVIEW, 1)

    assert await worker.run_once() is True

    assert queue.requeued == ["1-0"]
    assert ledger.rows[job.job_id].last_error == "RuntimeError: boom"
    assert sleep.calls == [worker.config.error_backoff]


@pytest.mark.asyncio
async def test_poll_failure_backs_off() -> None:
    worker, queue, _, _, sleep = _setup([])

    async def _down(timeout: float = 0.0):
        raise QueueUnavailable("broker down")

    queue.consume_one = _down

    assert await worker.run_once() is True
    assert sleep.calls == [worker.config.transport_backoff]


@pytest.mark.asyncio
async def test_run_forever_stops_and_closes_queue() -> None:
    worker, queue, content, _, _ = _setup([_body()], GREEN)

    async def _idle(delay: float) -> None:
        worker.stop()

    worker._sleep = _idle
    await worker.run_forever()

    assert queue.closed
    assert queue.acked == ["1-0"]
    assert content.items[(TargetType.REVIEW, 1)].moderation_level is ModerationLevel.GREEN


@pytest.mark.asyncio
async def test_end_to_end_through_redis_stream(redis_server) -> None:
    def _queue() -> RedisStreamQueue:
        connection = QueueConnection(
            lambda: FakeRedis(server=redis_server, decode_responses=True),
            stream="moderation",
            group="moderation.jobs",
        )
        return RedisStreamQueue(connection, consumer="worker-1", claim_idle_ms=0)

    content = InMemoryContentStore()
    content.add(ModeratedContent(target_type=TargetType.EVENT_REVIEW, target_id=4, text_review="You smell, learn to dance"))
    ledger = InMemoryJobLedger()
    publisher = _queue()
    await publisher.connect()
    producer = ModerationProducer(ledger=ledger, publisher=publisher, content=content)
    job = await producer.enqueue(TargetType.EVENT_REVIEW, 4)

    consumer = _queue()
    worker = ModerationWorker(
        queue=consumer,
        content=content,
        ledger=ledger,
        classifier=StubClassifier(RED),
        sleep=RecordingSleep(),
    )
    await consumer.connect()
    assert await worker.run_once() is True
    assert await worker.run_once() is False

    assert content.items[(TargetType.EVENT_REVIEW, 4)].moderation_level is ModerationLevel.RED
    assert ledger.rows[job.job_id].status is JobStatus.DONE
    await publisher.close()
    await consumer.close()


@pytest.mark.asyncio
async def test_classifier_timeout_leaves_content_pending() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("model too slow", request=request)

    worker, queue, content, ledger, _ = _setup([_body()])
    job = await ledger.create(TargetType.REVIEW, 1)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        worker.classifier = ChatCompletionClassifier(http=http, base_url="http://llm.test", model="judge", timeout=5.0)
        await worker.run_once()

    row = ledger.rows[job.job_id]
    assert row.status is JobStatus.ERROR
    assert row.attempts == 1
    assert "timed out" in row.last_error
    assert queue.requeued == ["1-0"]
    assert queue.acked == []
    assert content.items[(TargetType.REVIEW, 1)].moderation_level is ModerationLevel.PENDING


@pytest.mark.asyncio
async def test_deeply_nested_body_is_requeued_as_malformed() -> None:
    worker, queue, _, _, sleep = _setup(["[" * 100000])

    assert await worker.run_once() is True

    assert queue.requeued == ["1-0"]
    assert sleep.calls == [0.2]


@pytest.mark.asyncio
async def test_crash_while_acking_keeps_the_loop_alive() -> None:
    worker, queue, _, _, sleep = _setup([_body()], GREEN)

    async def _broken_ack(delivery: Delivery) -> None:
        raise RuntimeError("unexpected broker reply")

    queue.ack = _broken_ack

    assert await worker.run_once() is True
    assert sleep.calls == [worker.config.error_backoff]


@pytest.mark.asyncio
async def test_unexpected_poll_error_backs_off() -> None:
    worker, queue, _, _, sleep = _setup([])

    async def _garbled(timeout: float = 0.0):
        raise KeyError("times_delivered")

    queue.consume_one = _garbled

    assert await worker.run_once() is True
    assert sleep.calls == [worker.config.transport_backoff]


class BlockingClassifier:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def classify(self, text: str) -> ModerationVerdict:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("unreachable")


@pytest.mark.asyncio
async def test_cancellation_aborts_classification_and_leaves_delivery_pending() -> None:
    worker, queue, content, ledger, _ = _setup([_body()])
    worker.classifier = BlockingClassifier()
    job = await ledger.create(TargetType.REVIEW, 1)

    task = asyncio.create_task(worker.run_forever())
    await asyncio.wait_for(worker.classifier.started.wait(), timeout=1.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert worker.classifier.cancelled
    assert queue.acked == []
    assert queue.requeued == []
    assert queue.dead == []
    assert queue.closed
    assert ledger.rows[job.job_id].status is JobStatus.PROCESSING
    assert content.items[(TargetType.REVIEW, 1)].moderation_level is ModerationLevel.PENDING
