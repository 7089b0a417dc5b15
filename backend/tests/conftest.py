import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from isle.domain.collab.feed import reset_change_feed
from isle.domain.collab.repo import reset_memory_state
from isle.infra import postgres
from isle.main import app
from isle.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from isle.infra.redis import redis_client, set_redis_client
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests authenticate via the X-User-Id header, which is only accepted in
	dev mode. The cross-process relay stays off unless a test turns it on.
	"""
	original_env = settings.environment
	original_relay = settings.collab_feed_relay_enabled
	settings.environment = "dev"
	settings.collab_feed_relay_enabled = False
	try:
		yield
	finally:
		settings.environment = original_env
		settings.collab_feed_relay_enabled = original_relay


@pytest_asyncio.fixture(autouse=True)
async def reset_collab_state():
	await reset_memory_state()
	reset_change_feed()
	yield
	await reset_memory_state()
	reset_change_feed()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
