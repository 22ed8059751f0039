"""Moderation worker exports."""

from .moderation_worker import ModerationWorker, ProcessingResult, ResultKind, WorkerConfig
from .runner import build_worker, spawn_worker

__all__ = [
	"ModerationWorker",
	"ProcessingResult",
	"ResultKind",
	"WorkerConfig",
	"build_worker",
	"spawn_worker",
]
