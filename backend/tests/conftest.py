import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from huddle.api import calls as calls_api
from huddle.domain.calls.store import reset_memory_state
from huddle.infra import postgres
from huddle.main import app
from huddle.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from huddle.infra.redis import redis_client, set_redis_client
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


@pytest_asyncio.fixture(autouse=True)
async def reset_call_state():
	await reset_memory_state()
	calls_api._call_service = None
	yield
	calls_api._call_service = None
	await reset_memory_state()


@pytest.fixture(autouse=True)
def force_test_settings(monkeypatch):
	"""Dev mode lets API tests authenticate with X-User-* headers."""
	monkeypatch.setattr(settings, "environment", "dev")
	monkeypatch.setattr(settings, "call_reactivation_requires_owner", False)


class FakeClock:
	def __init__(self, start: datetime | None = None) -> None:
		self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> datetime:
		self.now = self.now + timedelta(**kwargs)
		return self.now


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture(scope="session")
def rsa_keypair() -> tuple[str, str]:
	key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
	private_pem = key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	).decode()
	public_pem = key.public_key().public_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PublicFormat.SubjectPublicKeyInfo,
	).decode()
	return private_pem, public_pem


@pytest.fixture
def transport_settings(monkeypatch, rsa_keypair):
	private_pem, public_pem = rsa_keypair
	monkeypatch.setattr(settings, "jitsi_app_id", "huddle-app")
	monkeypatch.setattr(settings, "jitsi_kid", "huddle-app/kid-1")
	monkeypatch.setattr(settings, "jitsi_private_key", private_pem)
	monkeypatch.setattr(settings, "jitsi_private_key_path", None)
	return public_pem


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
