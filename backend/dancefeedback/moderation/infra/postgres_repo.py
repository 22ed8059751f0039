"""PostgreSQL-backed repositories for the moderation pipeline."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

import asyncpg

from dancefeedback.moderation.domain.content import ContentStore, ReportReader
from dancefeedback.moderation.domain.errors import PersistenceError
from dancefeedback.moderation.domain.ledger import JobLedger, truncate_error
from dancefeedback.moderation.domain.models import (
    JobStatus,
    ModeratedContent,
    ModerationJob,
    ModerationLevel,
    ModerationSource,
    Report,
    TargetType,
)

_JOB_COLUMNS = "id, target_type, target_id, status, attempts, last_error, created_at, updated_at"

# Each moderated table with the rating columns folded into ModeratedContent.ratings
_CONTENT_TABLES: dict[TargetType, tuple[str, tuple[tuple[str, str], ...]]] = {
    TargetType.REVIEW: ("reviews", (("lead_ratings", "LeadRatings"), ("follow_ratings", "FollowRatings"))),
    TargetType.EVENT_REVIEW: ("event_reviews", (("ratings", "Ratings"),)),
}


@asynccontextmanager
async def _persistence_errors() -> AsyncIterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise PersistenceError(f"{exc.__class__.__name__}: {exc}") from exc


class PostgresJobLedger(JobLedger):
    """Persists moderation job rows using asyncpg."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create(self, target_type: TargetType, target_id: int) -> ModerationJob:
        query = f"""
        INSERT INTO moderation_jobs (target_type, target_id, status, attempts)
        VALUES ($1, $2, 'Pending', 0)
        RETURNING {_JOB_COLUMNS}
        """
        async with _persistence_errors():
            record = await self.pool.fetchrow(query, target_type.value, target_id)
        assert record is not None
        return _job_from_record(record)

    async def latest_for(self, target_type: TargetType, target_id: int) -> ModerationJob | None:
        query = f"""
        SELECT {_JOB_COLUMNS}
        FROM moderation_jobs
        WHERE target_type = $1 AND target_id = $2
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """
        async with _persistence_errors():
            record = await self.pool.fetchrow(query, target_type.value, target_id)
        return _job_from_record(record) if record is not None else None

    async def mark_processing(self, job_id: int) -> None:
        await self._set_status(job_id, JobStatus.PROCESSING)

    async def mark_done(self, job_id: int) -> None:
        await self._set_status(job_id, JobStatus.DONE)

    async def mark_error(self, job_id: int, error: str) -> ModerationJob | None:
        query = f"""
        UPDATE moderation_jobs
        SET status = 'Error', attempts = attempts + 1, last_error = $2, updated_at = now()
        WHERE id = $1
        RETURNING {_JOB_COLUMNS}
        """
        async with _persistence_errors():
            record = await self.pool.fetchrow(query, job_id, truncate_error(error))
        return _job_from_record(record) if record is not None else None

    async def list_jobs(self, *, status: JobStatus | None, limit: int) -> list[ModerationJob]:
        if status is not None:
            query = f"""
            SELECT {_JOB_COLUMNS}
            FROM moderation_jobs
            WHERE status = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2
            """
            args: tuple[Any, ...] = (status.value, limit)
        else:
            query = f"""
            SELECT {_JOB_COLUMNS}
            FROM moderation_jobs
            ORDER BY created_at DESC, id DESC
            LIMIT $1
            """
            args = (limit,)
        async with _persistence_errors():
            records = await self.pool.fetch(query, *args)
        return [_job_from_record(record) for record in records]

    async def _set_status(self, job_id: int, status: JobStatus) -> None:
        query = "UPDATE moderation_jobs SET status = $2, updated_at = now() WHERE id = $1"
        async with _persistence_errors():
            await self.pool.execute(query, job_id, status.value)


class PostgresContentStore(ContentStore):
    """Reads reviews and event reviews; writes only their moderation columns."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get(self, target_type: TargetType, target_id: int) -> ModeratedContent | None:
        table, rating_columns = _CONTENT_TABLES[target_type]
        columns = ", ".join(column for column, _label in rating_columns)
        query = f"""
        SELECT id, text_review, {columns}, moderation_level, moderation_source, moderated_at,
               moderation_reason, moderation_reason_ru, moderation_reason_en
        FROM {table}
        WHERE id = $1
        """
        async with _persistence_errors():
            record = await self.pool.fetchrow(query, target_id)
        if record is None:
            return None
        ratings = {}
        for column, label in rating_columns:
            scores = _decode_ratings(record[column])
            if scores:
                ratings[label] = scores
        localized = {
            lang: value
            for lang, value in (("ru", record["moderation_reason_ru"]), ("en", record["moderation_reason_en"]))
            if value
        }
        return ModeratedContent(
            target_type=target_type,
            target_id=record["id"],
            text_review=record["text_review"],
            ratings=ratings,
            moderation_level=ModerationLevel(record["moderation_level"]),
            moderation_source=ModerationSource(record["moderation_source"]),
            moderated_at=record["moderated_at"],
            moderation_reason=record["moderation_reason"],
            reason_localized=localized,
        )

    async def save_moderation(self, content: ModeratedContent) -> bool:
        table, _ = _CONTENT_TABLES[content.target_type]
        query = f"""
        UPDATE {table}
        SET moderation_level = $2,
            moderation_source = $3,
            moderated_at = $4,
            moderation_reason = $5,
            moderation_reason_ru = $6,
            moderation_reason_en = $7
        WHERE id = $1
        """
        async with _persistence_errors():
            status = await self.pool.execute(
                query,
                content.target_id,
                content.moderation_level.value,
                content.moderation_source.value,
                content.moderated_at,
                content.moderation_reason,
                content.reason_localized.get("ru"),
                content.reason_localized.get("en"),
            )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return status.split()[-1] != "0"


class PostgresReportReader(ReportReader):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def list_reports(self, target_type: str, target_id: int) -> list[Report]:
        query = """
        SELECT id, reporter_id, target_type, target_id, reason, description, status, created_at, resolved_at
        FROM reports
        WHERE target_type = $1 AND target_id = $2
        ORDER BY created_at DESC
        """
        async with _persistence_errors():
            records = await self.pool.fetch(query, target_type, target_id)
        return [
            Report(
                report_id=record["id"],
                reporter_id=str(record["reporter_id"]),
                target_type=record["target_type"],
                target_id=record["target_id"],
                reason=record["reason"],
                description=record["description"],
                status=record["status"],
                created_at=record["created_at"],
                resolved_at=record["resolved_at"],
            )
            for record in records
        ]


def _decode_ratings(value: Any) -> dict[str, int]:
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    if not isinstance(value, Mapping):
        return {}
    return {str(key): int(score) for key, score in value.items() if isinstance(score, (int, float))}


def _job_from_record(record: Mapping[str, Any]) -> ModerationJob:
    return ModerationJob(
        job_id=record["id"],
        target_type=TargetType(record["target_type"]),
        target_id=record["target_id"],
        status=JobStatus(record["status"]),
        attempts=record["attempts"],
        last_error=record["last_error"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )
