"""Job ledger contract and in-memory implementation."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol

from dancefeedback.moderation.domain.models import MAX_LAST_ERROR_LENGTH, JobStatus, ModerationJob, TargetType


class JobLedger(Protocol):
    """Persistence for moderation attempts. Rows are only ever appended or updated."""

    async def create(self, target_type: TargetType, target_id: int) -> ModerationJob:
        """Append a new Pending row for the target."""

    async def latest_for(self, target_type: TargetType, target_id: int) -> ModerationJob | None:
        """Most recently created row for the target, if any."""

    async def mark_processing(self, job_id: int) -> None:
        ...

    async def mark_done(self, job_id: int) -> None:
        ...

    async def mark_error(self, job_id: int, error: str) -> ModerationJob | None:
        """Record a failed attempt: status Error, ``attempts + 1`` and the message."""

    async def list_jobs(self, *, status: JobStatus | None, limit: int) -> list[ModerationJob]:
        """Newest first, optionally filtered by status."""


def truncate_error(error: str) -> str:
    return error[:MAX_LAST_ERROR_LENGTH]


class InMemoryJobLedger(JobLedger):
    def __init__(self) -> None:
        self.rows: dict[int, ModerationJob] = {}
        self._next_id = 1

    async def create(self, target_type: TargetType, target_id: int) -> ModerationJob:
        job = ModerationJob(
            job_id=self._next_id,
            target_type=target_type,
            target_id=target_id,
            status=JobStatus.PENDING,
            attempts=0,
            last_error=None,
            created_at=datetime.now(timezone.utc),
        )
        self.rows[job.job_id] = job
        self._next_id += 1
        return replace(job)

    async def latest_for(self, target_type: TargetType, target_id: int) -> ModerationJob | None:
        matches = [job for job in self.rows.values() if job.target_type == target_type and job.target_id == target_id]
        if not matches:
            return None
        # ids are monotonic, so they break ties between equal timestamps
        return replace(max(matches, key=lambda job: (job.created_at, job.job_id)))

    async def mark_processing(self, job_id: int) -> None:
        self._update(job_id, status=JobStatus.PROCESSING)

    async def mark_done(self, job_id: int) -> None:
        self._update(job_id, status=JobStatus.DONE)

    async def mark_error(self, job_id: int, error: str) -> ModerationJob | None:
        job = self.rows.get(job_id)
        if job is None:
            return None
        return self._update(job_id, status=JobStatus.ERROR, attempts=job.attempts + 1, last_error=truncate_error(error))

    async def list_jobs(self, *, status: JobStatus | None, limit: int) -> list[ModerationJob]:
        jobs = [job for job in self.rows.values() if status is None or job.status == status]
        jobs.sort(key=lambda job: (job.created_at, job.job_id), reverse=True)
        return [replace(job) for job in jobs[:limit]]

    def _update(self, job_id: int, **changes) -> ModerationJob | None:
        job = self.rows.get(job_id)
        if job is None:
            return None
        updated = replace(job, updated_at=datetime.now(timezone.utc), **changes)
        self.rows[job_id] = updated
        return replace(updated)
