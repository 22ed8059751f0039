"""Observability package bootstrap."""

from __future__ import annotations

from dancefeedback.obs import logging as obs_logging
from dancefeedback.settings import settings

_initialised = False


def init() -> None:
	global _initialised
	if _initialised:
		return
	obs_logging.configure_logging()
	_initialised = True
	obs_logging.get_logger().info("observability initialised", extra={"log_level": settings.obs_log_level})


__all__ = ["init"]
