"""Pure functions that write verdicts onto moderated content."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Mapping, Sequence

from dancefeedback.moderation.domain.models import (
    MAX_CONTENT_REASON_LENGTH,
    ModeratedContent,
    ModerationLevel,
    ModerationSource,
    ModerationVerdict,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _bounded(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped[:MAX_CONTENT_REASON_LENGTH] if stripped else None


def apply_verdict(
    content: ModeratedContent,
    verdict: ModerationVerdict,
    *,
    now: datetime | None = None,
) -> ModeratedContent:
    """Return a copy of ``content`` carrying the classifier verdict.

    Previous moderation state, including localized reasons from an earlier
    manual decision, is replaced rather than merged.
    """
    return replace(
        content,
        moderation_level=verdict.level,
        moderation_source=ModerationSource.LLM,
        moderation_reason=_bounded(verdict.reason),
        moderated_at=now or _now(),
        reason_localized={},
    )


def apply_manual(
    content: ModeratedContent,
    level: ModerationLevel,
    *,
    reason: str | None = None,
    localized: Mapping[str, str | None] | None = None,
    languages: Sequence[str] = ("ru", "en"),
    now: datetime | None = None,
) -> ModeratedContent:
    """Return a copy of ``content`` with a moderator decision.

    A lone ``reason`` without per-language values is copied into every
    language slot so a localized reason is always present afterwards.
    """
    given = {lang: _bounded(value) for lang, value in (localized or {}).items()}
    given = {lang: value for lang, value in given.items() if value}
    base_reason = _bounded(reason)
    if given:
        reason_localized = dict(given)
        if base_reason is None:
            base_reason = given.get("en") or next(iter(given.values()))
    elif base_reason is not None:
        reason_localized = {lang: base_reason for lang in languages}
    else:
        reason_localized = {}
    return replace(
        content,
        moderation_level=level,
        moderation_source=ModerationSource.MANUAL,
        moderation_reason=base_reason,
        moderated_at=now or _now(),
        reason_localized=reason_localized,
    )


def approve_without_classifier(content: ModeratedContent, *, now: datetime | None = None) -> ModeratedContent:
    """Ratings-only submissions are shown immediately; nothing to classify."""
    return replace(
        content,
        moderation_level=ModerationLevel.GREEN,
        moderation_source=ModerationSource.NONE,
        moderation_reason=None,
        moderated_at=now or _now(),
        reason_localized={},
    )
