"""Manual moderation decisions and operator tooling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

from dancefeedback.moderation.domain.applier import apply_manual
from dancefeedback.moderation.domain.content import ContentStore, ReportReader
from dancefeedback.moderation.domain.errors import ContentNotFound
from dancefeedback.moderation.domain.ledger import JobLedger
from dancefeedback.moderation.domain.models import (
    JobStatus,
    ModeratedContent,
    ModerationJob,
    ModerationLevel,
    Report,
    TargetType,
)
from dancefeedback.moderation.domain.producer import ModerationProducer
from dancefeedback.obs import metrics

logger = logging.getLogger(__name__)

MAX_JOBS_PAGE = 500


@dataclass
class ModerationAdminService:
    """Human overrides that bypass the queue, plus requeue and inspection."""

    content: ContentStore
    ledger: JobLedger
    producer: ModerationProducer
    reports: ReportReader
    languages: Sequence[str] = ("ru", "en")

    async def set_level(
        self,
        target_type: TargetType,
        target_id: int,
        level: ModerationLevel,
        reason: str | None = None,
        *,
        localized: Mapping[str, str | None] | None = None,
    ) -> ModeratedContent:
        current = await self.content.get(target_type, target_id)
        if current is None:
            raise ContentNotFound(target_type.value, target_id)
        updated = apply_manual(current, level, reason=reason, localized=localized, languages=self.languages)
        if not await self.content.save_moderation(updated):
            raise ContentNotFound(target_type.value, target_id)
        metrics.observe_verdict(updated.moderation_level.value, updated.moderation_source.value)
        logger.info(
            "manual moderation applied",
            extra={"target_type": target_type.value, "target_id": target_id, "level": level.value},
        )
        return updated

    async def requeue(self, target_type: TargetType, target_id: int) -> ModerationJob:
        """Append a fresh Pending job and publish it; earlier rows are left as they are."""
        return await self.producer.enqueue(target_type, target_id, origin="requeue")

    async def list_jobs(self, status: JobStatus | None = None, limit: int = 100) -> list[ModerationJob]:
        limit = max(1, min(limit, MAX_JOBS_PAGE))
        return await self.ledger.list_jobs(status=status, limit=limit)

    async def list_reports(self, target_type: str, target_id: int) -> list[Report]:
        return await self.reports.list_reports(target_type, target_id)
