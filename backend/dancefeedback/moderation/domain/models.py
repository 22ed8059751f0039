"""Moderation data model shared by the producer, worker and admin surface."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

MAX_VERDICT_REASON_LENGTH = 200
MAX_CONTENT_REASON_LENGTH = 300
MAX_LAST_ERROR_LENGTH = 500


class ModerationLevel(str, Enum):
    PENDING = "Pending"
    GREEN = "Green"
    YELLOW = "Yellow"
    RED = "Red"


VERDICT_LEVELS = (ModerationLevel.GREEN, ModerationLevel.YELLOW, ModerationLevel.RED)


class ModerationSource(str, Enum):
    NONE = "None"
    LLM = "LLM"
    MANUAL = "Manual"


class JobStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    DONE = "Done"
    ERROR = "Error"


class TargetType(str, Enum):
    REVIEW = "Review"
    EVENT_REVIEW = "EventReview"


@dataclass(slots=True)
class ModerationJob:
    """One moderation attempt for a target; rows are never deleted."""

    job_id: int
    target_type: TargetType
    target_id: int
    status: JobStatus
    attempts: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ModerationVerdict:
    """Classifier output; consumed immediately and never stored as-is."""

    level: ModerationLevel
    reason: str
    categories: tuple[str, ...] = ()


@dataclass(slots=True)
class ModeratedContent:
    """Moderation view over a Review or an EventReview.

    ``ratings`` maps a group label (``LeadRatings``, ``FollowRatings`` or
    ``Ratings``) to the criterion scores of that group.
    """

    target_type: TargetType
    target_id: int
    text_review: str | None = None
    ratings: dict[str, dict[str, int]] = field(default_factory=dict)
    moderation_level: ModerationLevel = ModerationLevel.PENDING
    moderation_source: ModerationSource = ModerationSource.NONE
    moderated_at: datetime | None = None
    moderation_reason: str | None = None
    reason_localized: dict[str, str] = field(default_factory=dict)

    def has_text(self) -> bool:
        return bool(self.text_review and self.text_review.strip())

    def has_scores(self) -> bool:
        return any(1 <= score <= 5 for group in self.ratings.values() for score in group.values())

    def moderation_text(self) -> str:
        """Text submitted to the classifier: the review followed by its rating groups."""
        lines: list[str] = []
        if self.has_text():
            lines.append(self.text_review.strip())  # type: ignore[union-attr]
        for label, scores in self.ratings.items():
            if scores:
                lines.append(f"{label}: {json.dumps(scores, separators=(',', ':'))}")
        return "\n".join(lines).strip()


@dataclass(frozen=True, slots=True)
class QueueMessage:
    """Wire message: a reference to the content, never the content itself."""

    target_type: str
    target_id: int

    def to_wire(self) -> str:
        return json.dumps({"TargetType": self.target_type, "TargetId": self.target_id}, separators=(",", ":"))

    @classmethod
    def from_wire(cls, raw: str | bytes) -> "QueueMessage":
        """Parse the wire JSON; raises ``ValueError`` on anything malformed."""
        data = json.loads(raw)
        if not isinstance(data, Mapping):
            raise ValueError("message body is not an object")
        target_type = data.get("TargetType")
        target_id = data.get("TargetId")
        if not isinstance(target_type, str) or not target_type:
            raise ValueError("TargetType missing")
        if isinstance(target_id, bool) or not isinstance(target_id, int):
            raise ValueError("TargetId must be an integer")
        return cls(target_type=target_type, target_id=target_id)


@dataclass(slots=True)
class Report:
    """User report against a piece of content, read-only for moderation."""

    report_id: int
    reporter_id: str
    target_type: str
    target_id: int
    reason: str
    description: str | None
    status: str
    created_at: datetime
    resolved_at: datetime | None = None


def parse_target_type(value: Any) -> TargetType:
    """Return the matching :class:`TargetType` or raise ``ValueError``."""
    try:
        return TargetType(str(value))
    except ValueError:
        raise ValueError(f"unknown target type: {value!r}") from None


def parse_level(value: Any) -> ModerationLevel:
    """Case-insensitive level lookup; raises ``ValueError`` for unknown names."""
    text = str(value or "").strip().lower()
    for level in ModerationLevel:
        if level.value.lower() == text:
            return level
    raise ValueError(f"unknown moderation level: {value!r}")
