import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from huddle.domain.calls import models, policy, store
from huddle.domain.calls.store import CallRepository
from huddle.settings import settings

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
OWNER = models.Principal(id="u1", email="a@x.com", name="Ada")


def _room(room_id: str, *, scope=models.CallScope.GLOBAL, created_at=NOW) -> models.CallRoom:
    return models.CallRoom(
        id=room_id,
        title=f"Title {room_id}",
        media_kind=models.MediaKind.AUDIO,
        scope=scope,
        owner=OWNER,
        created_at=created_at,
        last_activity=created_at,
        global_ref="Global123" if scope is models.CallScope.GLOBAL else None,
    )


def _bump(current: models.CallRoom) -> models.CallRoom:
    current.participant_count += 1
    return current


@pytest.mark.asyncio
async def test_insert_if_absent_reports_creation_once():
    repo = CallRepository()
    first, created = await repo.insert_if_absent(_room("standup"))
    assert created is True
    assert first.version == 1

    other = _room("standup")
    other.title = "Hijack"
    second, created_again = await repo.insert_if_absent(other)
    assert created_again is False
    assert second.title == "Title standup"


@pytest.mark.asyncio
async def test_get_returns_copies():
    repo = CallRepository()
    await repo.insert_if_absent(_room("standup"))
    fetched = await repo.get("standup")
    fetched.participant_count = 99
    again = await repo.get("standup")
    assert again.participant_count == 1
    assert await repo.get("missing") is None


@pytest.mark.asyncio
async def test_compare_and_update_bumps_version():
    repo = CallRepository()
    await repo.insert_if_absent(_room("standup"))
    updated = await repo.compare_and_update("standup", _bump)
    assert updated.participant_count == 2
    assert updated.version == 2


@pytest.mark.asyncio
async def test_compare_and_update_no_change_keeps_version():
    repo = CallRepository()
    await repo.insert_if_absent(_room("standup"))
    result = await repo.compare_and_update("standup", lambda current: None)
    assert result.version == 1


@pytest.mark.asyncio
async def test_compare_and_update_missing_room_returns_none():
    repo = CallRepository()
    assert await repo.compare_and_update("missing", _bump) is None


@pytest.mark.asyncio
async def test_compare_and_update_retries_after_concurrent_write():
    repo = CallRepository()
    await repo.insert_if_absent(_room("standup"))
    calls: list[int] = []

    def _racing(current: models.CallRoom) -> models.CallRoom:
        calls.append(current.version)
        if len(calls) == 1:
            # Another writer commits between our read and our write.
            store._MEMORY.rooms["standup"].participant_count = 5
            store._MEMORY.rooms["standup"].version += 1
        current.participant_count += 1
        return current

    updated = await repo.compare_and_update("standup", _racing)
    assert calls == [1, 2]
    assert updated.participant_count == 6
    assert updated.version == 3


@pytest.mark.asyncio
async def test_compare_and_update_gives_up_after_retry_budget(monkeypatch):
    monkeypatch.setattr(settings, "call_store_max_retries", 3)
    repo = CallRepository()
    await repo.insert_if_absent(_room("standup"))
    attempts: list[int] = []

    def _always_loses(current: models.CallRoom) -> models.CallRoom:
        attempts.append(1)
        store._MEMORY.rooms["standup"].version += 1
        return current

    with pytest.raises(policy.TransientStoreError) as info:
        await repo.compare_and_update("standup", _always_loses)
    assert len(attempts) == 3
    assert info.value.retryable is True


@pytest.mark.asyncio
async def test_mutator_errors_propagate_without_write():
    repo = CallRepository()
    await repo.insert_if_absent(_room("standup"))

    def _deny(current: models.CallRoom) -> models.CallRoom:
        raise policy.AuthorizationError("access_denied", message="not invited")

    with pytest.raises(policy.AuthorizationError):
        await repo.compare_and_update("standup", _deny)
    assert (await repo.get("standup")).version == 1


@pytest.mark.asyncio
async def test_concurrent_updates_all_apply():
    repo = CallRepository()
    await repo.insert_if_absent(_room("standup"))
    await asyncio.gather(*(repo.compare_and_update("standup", _bump) for _ in range(8)))
    room = await repo.get("standup")
    assert room.participant_count == 9


@pytest.mark.asyncio
async def test_list_rooms_filters_scope_and_sorts_newest_first():
    repo = CallRepository()
    await repo.insert_if_absent(_room("old", created_at=NOW))
    await repo.insert_if_absent(_room("new", created_at=NOW + timedelta(minutes=5)))
    await repo.insert_if_absent(_room("mine", scope=models.CallScope.PERSONAL))

    def _deactivate(current: models.CallRoom) -> models.CallRoom:
        current.active = False
        return current

    await repo.insert_if_absent(_room("ended", created_at=NOW + timedelta(minutes=10)))
    await repo.compare_and_update("ended", _deactivate)

    active = await repo.list_rooms(models.CallScope.GLOBAL)
    assert [room.id for room in active] == ["new", "old"]
    everything = await repo.list_rooms(models.CallScope.GLOBAL, active_only=False)
    assert [room.id for room in everything] == ["ended", "new", "old"]


@pytest.mark.asyncio
async def test_failed_pool_connect_is_retried_not_cached(monkeypatch):
    monkeypatch.setattr(settings, "postgres_enabled", True)
    pool = object()
    calls: list[int] = []

    async def _flaky_get_pool():
        calls.append(1)
        if len(calls) == 1:
            raise OSError("connection refused")
        return pool

    monkeypatch.setattr(store, "get_pool", _flaky_get_pool)
    repo = CallRepository()

    with pytest.raises(policy.TransientStoreError) as info:
        await repo._get_pool()
    assert info.value.code == "store_unavailable"
    assert info.value.retryable is True

    assert await repo._get_pool() is pool
    assert await repo._get_pool() is pool
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_store_operations_surface_unavailable_postgres(monkeypatch):
    monkeypatch.setattr(settings, "postgres_enabled", True)

    async def _down():
        raise OSError("connection refused")

    monkeypatch.setattr(store, "get_pool", _down)
    repo = CallRepository()
    with pytest.raises(policy.TransientStoreError):
        await repo.insert_if_absent(_room("standup"))
    assert "standup" not in store._MEMORY.rooms


@pytest.mark.asyncio
async def test_disabled_postgres_uses_memory_store(monkeypatch):
    monkeypatch.setattr(settings, "postgres_enabled", False)

    calls: list[int] = []

    async def _tracking_get_pool():
        calls.append(1)
        return object()

    monkeypatch.setattr(store, "get_pool", _tracking_get_pool)
    repo = CallRepository()
    _, created = await repo.insert_if_absent(_room("standup"))
    assert created is True
    assert "standup" in store._MEMORY.rooms
    assert calls == []
