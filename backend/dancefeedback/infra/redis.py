"""Redis client management.

Clients are created through a swappable factory so long-lived components (the
moderation queue reconnects by building a fresh client) pick up test doubles
such as fakeredis without patching every import site.
"""

from __future__ import annotations

from typing import Callable, Optional

import redis.asyncio as redis

from dancefeedback.settings import settings

ClientFactory = Callable[[], redis.Redis]


def _from_settings() -> redis.Redis:
	return redis.from_url(settings.redis_url, decode_responses=True)


_factory: ClientFactory = _from_settings


def create_client() -> redis.Redis:
	"""Return a new client from the active factory."""
	return _factory()


def set_client_factory(factory: Optional[ClientFactory]) -> None:
	"""Swap the factory; ``None`` restores the settings-based default."""
	global _factory
	_factory = factory or _from_settings
