"""Long-running worker that classifies queued content and applies verdicts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from dancefeedback.moderation.domain.applier import apply_verdict
from dancefeedback.moderation.domain.classifier import TextClassifier
from dancefeedback.moderation.domain.content import ContentStore
from dancefeedback.moderation.domain.errors import (
    ClassifierError,
    MalformedMessage,
    PersistenceError,
    QueueUnavailable,
    UnknownTargetType,
)
from dancefeedback.moderation.domain.ledger import JobLedger
from dancefeedback.moderation.domain.models import (
    ModerationJob,
    ModerationLevel,
    QueueMessage,
    TargetType,
    parse_target_type,
)
from dancefeedback.moderation.infra.queue import Delivery
from dancefeedback.obs import logging as obs_logging
from dancefeedback.obs import metrics

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ModerationQueue(Protocol):
    async def connect(self) -> None:
        ...

    async def consume_one(self, timeout: float = 0.0) -> Optional[Delivery]:
        ...

    async def ack(self, delivery: Delivery) -> None:
        ...

    async def nack(self, delivery: Delivery, *, requeue: bool = True) -> None:
        ...

    async def close(self) -> None:
        ...


class ResultKind(str, Enum):
    DONE = "done"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True, slots=True)
class ProcessingResult:
    kind: ResultKind
    backoff: float = 0.0
    error: str | None = None
    level: ModerationLevel | None = None


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    poll_interval: float = 1.0
    poll_timeout: float = 0.0
    classifier_backoff: float = 1.0
    persistence_backoff: float = 0.5
    malformed_backoff: float = 0.2
    error_backoff: float = 0.5
    transport_backoff: float = 1.0
    # 0 disables dead-lettering: failed messages are requeued forever
    max_attempts: int = 0


def decode_delivery(delivery: Delivery) -> tuple[QueueMessage, TargetType]:
    """Parse a delivery body into a message and its content type."""
    try:
        message = QueueMessage.from_wire(delivery.body or "")
    except (ValueError, RecursionError) as exc:
        raise MalformedMessage(str(exc)) from exc
    try:
        target_type = parse_target_type(message.target_type)
    except ValueError as exc:
        raise UnknownTargetType(str(exc)) from exc
    return message, target_type


class ModerationWorker:
    """Consumes one message at a time; the only error boundary of the pipeline.

    Each delivery is turned into a :class:`ProcessingResult` and a single
    dispatcher decides between ack, requeue and dead-letter. Nothing raised
    while handling a message stops the loop; cancellation does, leaving the
    in-flight delivery pending for redelivery.
    """

    def __init__(
        self,
        *,
        queue: ModerationQueue,
        content: ContentStore,
        ledger: JobLedger,
        classifier: TextClassifier,
        config: WorkerConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.content = content
        self.ledger = ledger
        self.classifier = classifier
        self.config = config or WorkerConfig()
        self._sleep = sleep
        self._running = False

    async def run_forever(self) -> None:
        """Poll until :meth:`stop` is called or the task is cancelled."""
        self._running = True
        await self.queue.connect()
        logger.info("moderation worker started")
        try:
            while self._running:
                consumed = await self.run_once()
                if not consumed and self._running:
                    await self._sleep(self.config.poll_interval)
        finally:
            await self.queue.close()
            logger.info("moderation worker stopped")

    def stop(self) -> None:
        self._running = False

    async def run_once(self) -> bool:
        """Handle at most one delivery. Returns ``False`` when the queue was empty."""
        try:
            delivery = await self.queue.consume_one(self.config.poll_timeout)
        except QueueUnavailable as exc:
            logger.warning("moderation queue poll failed", extra={"error": str(exc)})
            await self._sleep(self.config.transport_backoff)
            return True
        except Exception:  # noqa: BLE001 - the loop outlives any broker reply
            logger.exception("moderation queue poll crashed")
            await self._sleep(self.config.transport_backoff)
            return True
        if delivery is None:
            return False
        tokens = obs_logging.bind_context(delivery_id=delivery.entry_id)
        try:
            result = await self.process(delivery)
            await self._dispatch(delivery, result)
        except QueueUnavailable as exc:
            # the delivery is still pending and comes back once the broker does
            logger.warning("moderation queue ack/nack failed", extra={"error": str(exc)})
            await self._sleep(self.config.transport_backoff)
        except Exception:  # noqa: BLE001 - left pending, redelivered on the next poll
            logger.exception("moderation delivery crashed")
            await self._sleep(self.config.error_backoff)
        finally:
            obs_logging.reset_context(tokens)
        return True

    async def process(self, delivery: Delivery) -> ProcessingResult:
        try:
            message, target_type = decode_delivery(delivery)
        except MalformedMessage as exc:
            return ProcessingResult(ResultKind.TRANSIENT, self.config.malformed_backoff, f"malformed message: {exc}")
        except UnknownTargetType as exc:
            return ProcessingResult(ResultKind.PERMANENT, error=str(exc))

        tokens = obs_logging.bind_context(target_type=target_type.value, target_id=message.target_id)
        job: ModerationJob | None = None
        try:
            job = await self.ledger.latest_for(target_type, message.target_id)
            current = await self.content.get(target_type, message.target_id)
            if current is None:
                if job is not None:
                    await self.ledger.mark_done(job.job_id)
                return ProcessingResult(ResultKind.NOT_FOUND)
            if job is not None:
                await self.ledger.mark_processing(job.job_id)
            logger.info("classifying content", extra={"delivery_count": delivery.delivery_count})
            verdict = await self.classifier.classify(current.moderation_text())
            updated = apply_verdict(current, verdict)
            if not await self.content.save_moderation(updated):
                if job is not None:
                    await self.ledger.mark_done(job.job_id)
                return ProcessingResult(ResultKind.NOT_FOUND)
            if job is not None:
                await self.ledger.mark_done(job.job_id)
            metrics.observe_verdict(updated.moderation_level.value, updated.moderation_source.value)
            return ProcessingResult(ResultKind.DONE, level=updated.moderation_level)
        except ClassifierError as exc:
            return await self._failed(job, exc, self.config.classifier_backoff)
        except PersistenceError as exc:
            return await self._failed(job, exc, self.config.persistence_backoff)
        except Exception as exc:  # noqa: BLE001 - one bad message must not stop the worker
            logger.exception("unexpected moderation failure")
            return await self._failed(job, exc, self.config.error_backoff)
        finally:
            obs_logging.reset_context(tokens)

    async def _failed(self, job: ModerationJob | None, exc: Exception, backoff: float) -> ProcessingResult:
        error = f"{exc.__class__.__name__}: {exc}"
        attempts: int | None = None
        if job is not None:
            try:
                recorded = await self.ledger.mark_error(job.job_id, error)
            except Exception:  # noqa: BLE001 - recording the failure is best effort
                logger.warning("could not record moderation failure", exc_info=True, extra={"job_id": job.job_id})
            else:
                attempts = recorded.attempts if recorded is not None else None
        if self.config.max_attempts and attempts is not None and attempts >= self.config.max_attempts:
            return ProcessingResult(ResultKind.PERMANENT, error=f"gave up after {attempts} attempts: {error}")
        return ProcessingResult(ResultKind.TRANSIENT, backoff, error)

    async def _dispatch(self, delivery: Delivery, result: ProcessingResult) -> None:
        metrics.observe_message(result.kind.value)
        if result.kind is ResultKind.DONE:
            await self.queue.ack(delivery)
            logger.info("moderation verdict applied", extra={"level": result.level.value if result.level else None})
        elif result.kind is ResultKind.NOT_FOUND:
            await self.queue.ack(delivery)
            logger.info("moderation target no longer exists")
        elif result.kind is ResultKind.PERMANENT:
            logger.error("moderation message dead-lettered", extra={"error": result.error})
            await self.queue.nack(delivery, requeue=False)
        else:
            logger.warning("moderation message requeued", extra={"error": result.error, "retry_in": result.backoff})
            await self.queue.nack(delivery, requeue=True)
            if result.backoff > 0:
                await self._sleep(result.backoff)
