"""Entry point used by the content-creation path to request moderation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from dancefeedback.moderation.domain.applier import approve_without_classifier
from dancefeedback.moderation.domain.content import ContentStore
from dancefeedback.moderation.domain.ledger import JobLedger
from dancefeedback.moderation.domain.models import ModeratedContent, ModerationJob, QueueMessage, TargetType
from dancefeedback.obs import metrics

logger = logging.getLogger(__name__)


class MessagePublisher(Protocol):
    async def publish(self, message: QueueMessage) -> str:
        ...


@dataclass
class ModerationProducer:
    """Writes a Pending ledger row, then publishes a reference to the target.

    The two writes are not atomic. A crash in between leaves an orphaned
    Pending row, so the ledger is a best-effort audit trail and delivery is
    at-least-once.
    """

    ledger: JobLedger
    publisher: MessagePublisher
    content: ContentStore | None = None

    async def enqueue(self, target_type: TargetType, target_id: int, *, origin: str = "create") -> ModerationJob:
        job = await self.ledger.create(target_type, target_id)
        entry_id = await self.publisher.publish(QueueMessage(target_type=target_type.value, target_id=target_id))
        metrics.observe_enqueue(origin)
        logger.info(
            "moderation job enqueued",
            extra={"job_id": job.job_id, "entry_id": entry_id, "origin": origin},
        )
        return job

    async def submit(self, item: ModeratedContent) -> ModerationJob | None:
        """Route freshly created content into moderation.

        Ratings-only submissions carry no user text, so they are approved on
        the spot and never reach the classifier; ``None`` is returned for them.
        """
        if item.has_scores() and not item.has_text():
            if self.content is None:
                raise RuntimeError("content store required to approve ratings-only submissions")
            await self.content.save_moderation(approve_without_classifier(item))
            return None
        return await self.enqueue(item.target_type, item.target_id)
