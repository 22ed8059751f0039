"""Exceptions raised by moderation components."""

from __future__ import annotations


class ModerationError(Exception):
    """Base class for moderation pipeline errors."""


class QueueUnavailable(ModerationError):
    """The broker is unreachable or the connection dropped; always recoverable."""


class MalformedMessage(ModerationError):
    """A queue entry whose body cannot be decoded into a moderation message."""


class UnknownTargetType(ModerationError):
    """A well-formed message referencing a content type nothing can moderate."""


class ClassifierError(ModerationError):
    """The classifier could not be reached or answered with an HTTP error."""


class ClassifierUnavailable(ClassifierError):
    pass


class ClassifierTimeout(ClassifierError):
    pass


class PersistenceError(ModerationError):
    """Saving content or ledger state failed."""


class ContentNotFound(ModerationError):
    def __init__(self, target_type: str, target_id: int) -> None:
        super().__init__(f"{target_type} #{target_id} not found")
        self.target_type = target_type
        self.target_id = target_id
