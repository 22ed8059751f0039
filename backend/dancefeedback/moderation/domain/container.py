"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

from typing import Optional

import asyncpg
import httpx

from dancefeedback.infra import redis as redis_infra
from dancefeedback.moderation.domain.admin_service import ModerationAdminService
from dancefeedback.moderation.domain.classifier import ChatCompletionClassifier
from dancefeedback.moderation.domain.content import (
    ContentStore,
    InMemoryContentStore,
    InMemoryReportReader,
    ReportReader,
)
from dancefeedback.moderation.domain.ledger import InMemoryJobLedger, JobLedger
from dancefeedback.moderation.domain.producer import ModerationProducer
from dancefeedback.moderation.infra.postgres_repo import (
    PostgresContentStore,
    PostgresJobLedger,
    PostgresReportReader,
)
from dancefeedback.moderation.infra.queue import QueueConnection, RedisStreamQueue
from dancefeedback.settings import settings

_ledger: JobLedger = InMemoryJobLedger()
_content: ContentStore = InMemoryContentStore()
_reports: ReportReader = InMemoryReportReader()
_queue: Optional[RedisStreamQueue] = None


def configure(
    *,
    ledger: JobLedger | None = None,
    content: ContentStore | None = None,
    reports: ReportReader | None = None,
    queue: RedisStreamQueue | None = None,
) -> None:
    """Swap individual moderation dependencies (tests and alternative backends)."""
    global _ledger, _content, _reports, _queue
    if ledger is not None:
        _ledger = ledger
    if content is not None:
        _content = content
    if reports is not None:
        _reports = reports
    if queue is not None:
        _queue = queue


def configure_postgres(pool: asyncpg.Pool) -> None:
    configure(
        ledger=PostgresJobLedger(pool),
        content=PostgresContentStore(pool),
        reports=PostgresReportReader(pool),
    )


def reset() -> None:
    global _ledger, _content, _reports, _queue
    _ledger = InMemoryJobLedger()
    _content = InMemoryContentStore()
    _reports = InMemoryReportReader()
    _queue = None


def build_queue(*, consumer: str | None = None) -> RedisStreamQueue:
    connection = QueueConnection(
        redis_infra.create_client,
        stream=settings.moderation_exchange,
        group=settings.moderation_queue,
        reconnect_delay=max(settings.moderation_poll_interval, 0.1),
    )
    return RedisStreamQueue(
        connection,
        consumer=consumer or settings.moderation_consumer_name,
        claim_idle_ms=settings.moderation_claim_idle_ms,
        dead_letter_stream=settings.moderation_dead_letter or None,
    )


def build_classifier(http: httpx.AsyncClient) -> ChatCompletionClassifier:
    return ChatCompletionClassifier(
        http=http,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_timeout,
    )


def get_ledger() -> JobLedger:
    return _ledger


def get_content_store() -> ContentStore:
    return _content


def get_queue() -> RedisStreamQueue:
    """Publishing queue shared by request handlers."""
    global _queue
    if _queue is None:
        _queue = build_queue(consumer=f"{settings.service_name}-producer")
    return _queue


def get_producer() -> ModerationProducer:
    return ModerationProducer(ledger=_ledger, publisher=get_queue(), content=_content)


def get_admin_service() -> ModerationAdminService:
    return ModerationAdminService(
        content=_content,
        ledger=_ledger,
        producer=get_producer(),
        reports=_reports,
        languages=tuple(settings.moderation_reason_languages),
    )
