import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from dancefeedback.infra import postgres
from dancefeedback.infra import redis as redis_infra
from dancefeedback.main import app
from dancefeedback.moderation.domain import container


@pytest.fixture
def redis_server():
	return FakeServer()


@pytest_asyncio.fixture(autouse=True)
async def fake_redis(redis_server):
	"""Every client built through the factory shares one in-memory server."""
	redis_infra.set_client_factory(lambda: FakeRedis(server=redis_server, decode_responses=True))
	client = FakeRedis(server=redis_server, decode_responses=True)
	try:
		yield client
	finally:
		await client.flushall()
		await client.aclose()
		redis_infra.set_client_factory(None)


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def reset_moderation_container():
	container.reset()
	yield
	container.reset()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
