from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from huddle.domain.calls import models, policy
from huddle.infra.redis import set_redis_client
from huddle.settings import settings

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

OWNER = models.Principal(id="u1", email="a@x.com", name="Ada")
INVITED = models.Principal(id="u2", email="b@x.com", name="Bo")
STRANGER = models.Principal(id="u3", email="c@x.com", name="Cy")
OWNER_OTHER_EMAIL = models.Principal(id="u1", email="ada@elsewhere.com", name="Ada")


def _room(scope: models.CallScope, allowed: tuple[str, ...] = ()) -> models.CallRoom:
    return models.CallRoom(
        id="room-1",
        title="Room",
        media_kind=models.MediaKind.AUDIO,
        scope=scope,
        owner=OWNER,
        created_at=NOW,
        last_activity=NOW,
        allowed_emails=allowed,
    )


@pytest.mark.parametrize(
    "scope,requester,allowed,reason",
    [
        (models.CallScope.PERSONAL, OWNER, True, "access granted"),
        (models.CallScope.PERSONAL, OWNER_OTHER_EMAIL, True, "access granted"),
        (models.CallScope.PERSONAL, INVITED, False, "private room"),
        (models.CallScope.TEAM, OWNER, True, "access granted"),
        (models.CallScope.TEAM, INVITED, True, "access granted"),
        (models.CallScope.TEAM, STRANGER, False, "not invited"),
        (models.CallScope.GLOBAL, OWNER, True, "open scope"),
        (models.CallScope.GLOBAL, STRANGER, True, "open scope"),
    ],
)
def test_evaluate_access(scope, requester, allowed, reason):
    decision = policy.evaluate_access(_room(scope, allowed=("b@x.com",)), requester)
    assert decision == models.AccessDecision(allowed, reason)


def test_team_access_matches_owner_by_email_not_id():
    impostor = models.Principal(id="u1", email="someone@x.com")
    decision = policy.evaluate_access(_room(models.CallScope.TEAM), impostor)
    assert decision.allowed is False
    assert decision.reason == "not invited"


def test_team_access_ignores_email_case():
    room = _room(models.CallScope.TEAM, allowed=("b@x.com",))
    assert policy.evaluate_access(room, models.Principal(id="u9", email=" B@X.com ")).allowed


def test_ensure_access_raises_with_reason():
    with pytest.raises(policy.AuthorizationError) as info:
        policy.ensure_access(_room(models.CallScope.PERSONAL), STRANGER)
    assert info.value.detail == "private room"
    assert info.value.status_code == 403


def test_ensure_can_invite():
    room = _room(models.CallScope.TEAM, allowed=("b@x.com",))
    policy.ensure_can_invite(room, "a@x.com")
    policy.ensure_can_invite(room, "b@x.com")
    with pytest.raises(policy.AuthorizationError):
        policy.ensure_can_invite(room, "c@x.com")


def test_ensure_team_room_rejects_other_scopes():
    with pytest.raises(policy.ValidationError):
        policy.ensure_team_room(_room(models.CallScope.GLOBAL))


def test_ensure_active():
    room = _room(models.CallScope.GLOBAL)
    assert policy.ensure_active(room, room.id) is room
    room.active = False
    with pytest.raises(policy.NotFoundError):
        policy.ensure_active(room, room.id)
    with pytest.raises(policy.NotFoundError):
        policy.ensure_active(None, "missing")


def test_merge_emails_dedupes_and_keeps_order():
    merged = policy.merge_emails(("b@x.com",), ["C@x.com", "b@x.com", "", "c@x.com", "d@x.com"])
    assert merged == ("b@x.com", "c@x.com", "d@x.com")


def test_error_taxonomy_retryability():
    assert policy.TransientStoreError("x").retryable is True
    assert policy.CredentialTimeout("x").retryable is True
    assert policy.ConfigurationError("x").retryable is False
    assert policy.ConfigurationError("x").status_code == 500
    assert policy.NotFoundError("x").status_code == 404


def test_reactivation_owner_requirement(monkeypatch):
    room = _room(models.CallScope.PERSONAL)
    policy.ensure_can_reactivate(room, STRANGER)
    monkeypatch.setattr(settings, "call_reactivation_requires_owner", True)
    policy.ensure_can_reactivate(room, OWNER)
    with pytest.raises(policy.AuthorizationError):
        policy.ensure_can_reactivate(room, STRANGER)


@pytest.mark.asyncio
async def test_enforce_create_limit(fake_redis, monkeypatch):
    monkeypatch.setattr(settings, "call_create_limit_per_hour", 3)
    for _ in range(3):
        await policy.enforce_create_limit("user-limit")
    with pytest.raises(policy.RateLimitedError):
        await policy.enforce_create_limit("user-limit")
    await policy.enforce_create_limit("someone-else")


@pytest.mark.asyncio
async def test_enforce_create_limit_fails_open_without_redis(monkeypatch):
    server = FakeServer()
    server.connected = False
    set_redis_client(FakeRedis(server=server, decode_responses=True))
    monkeypatch.setattr(settings, "call_create_limit_per_hour", 0)
    await policy.enforce_create_limit("user-limit", NOW)


@pytest.mark.asyncio
async def test_enforce_create_limit_buckets_by_given_hour(fake_redis, monkeypatch):
    monkeypatch.setattr(settings, "call_create_limit_per_hour", 1)
    await policy.enforce_create_limit("user-limit", NOW)
    with pytest.raises(policy.RateLimitedError):
        await policy.enforce_create_limit("user-limit", NOW + timedelta(minutes=59))
    await policy.enforce_create_limit("user-limit", NOW + timedelta(hours=1))
    assert await fake_redis.get("rl:call:create:user-limit:2026030209") == "2"
