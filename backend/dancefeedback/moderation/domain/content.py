"""Access to the moderation fields of reviews and event reviews."""

from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from dancefeedback.moderation.domain.models import ModeratedContent, Report, TargetType


class ContentStore(Protocol):
    """Reads live content and writes back its moderation fields only."""

    async def get(self, target_type: TargetType, target_id: int) -> ModeratedContent | None:
        ...

    async def save_moderation(self, content: ModeratedContent) -> bool:
        """Persist moderation fields; ``False`` when the content no longer exists."""


class ReportReader(Protocol):
    async def list_reports(self, target_type: str, target_id: int) -> list[Report]:
        ...


class InMemoryContentStore(ContentStore):
    def __init__(self) -> None:
        self.items: dict[tuple[TargetType, int], ModeratedContent] = {}

    def add(self, content: ModeratedContent) -> ModeratedContent:
        self.items[(content.target_type, content.target_id)] = content
        return content

    async def get(self, target_type: TargetType, target_id: int) -> ModeratedContent | None:
        item = self.items.get((target_type, target_id))
        return replace(item) if item is not None else None

    async def save_moderation(self, content: ModeratedContent) -> bool:
        key = (content.target_type, content.target_id)
        current = self.items.get(key)
        if current is None:
            return False
        self.items[key] = replace(
            current,
            moderation_level=content.moderation_level,
            moderation_source=content.moderation_source,
            moderated_at=content.moderated_at,
            moderation_reason=content.moderation_reason,
            reason_localized=dict(content.reason_localized),
        )
        return True


class InMemoryReportReader(ReportReader):
    def __init__(self) -> None:
        self.reports: list[Report] = []

    async def list_reports(self, target_type: str, target_id: int) -> list[Report]:
        matches = [r for r in self.reports if r.target_type == target_type and r.target_id == target_id]
        return sorted(matches, key=lambda r: r.created_at, reverse=True)
