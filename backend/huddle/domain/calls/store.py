"""Call room store: atomic insert-if-absent and versioned compare-and-update."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, Dict, List, Optional, Tuple

import asyncpg

from huddle.domain.calls import models, policy
from huddle.infra.postgres import get_pool
from huddle.obs import metrics as obs_metrics
from huddle.settings import settings

logger = logging.getLogger(__name__)

Mutator = Callable[[models.CallRoom], Optional[models.CallRoom]]

_STORE_UNAVAILABLE = (asyncpg.PostgresConnectionError, asyncpg.InterfaceError, OSError)


class _MemoryStore:
	"""Single-process store with per-key versions."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.rooms: Dict[str, models.CallRoom] = {}

	async def insert_if_absent(self, room: models.CallRoom) -> Tuple[models.CallRoom, bool]:
		async with self._lock:
			existing = self.rooms.get(room.id)
			if existing is not None:
				return existing.copy(), False
			stored = room.copy()
			stored.version = 1
			self.rooms[room.id] = stored
			return stored.copy(), True

	async def get(self, room_id: str) -> Optional[models.CallRoom]:
		async with self._lock:
			room = self.rooms.get(room_id)
			return room.copy() if room else None

	async def write_if_version(self, room: models.CallRoom, expected_version: int) -> models.CallRoom:
		async with self._lock:
			current = self.rooms.get(room.id)
			if current is None or current.version != expected_version:
				raise policy.ConflictError("version_conflict")
			stored = room.copy()
			stored.version = expected_version + 1
			self.rooms[room.id] = stored
			return stored.copy()

	async def list_rooms(self, scope: models.CallScope, *, active_only: bool) -> List[models.CallRoom]:
		async with self._lock:
			rooms = [
				room.copy()
				for room in self.rooms.values()
				if room.scope is scope and (room.active or not active_only)
			]
		rooms.sort(key=lambda item: item.created_at, reverse=True)
		return rooms


_MEMORY = _MemoryStore()

_COLUMNS = (
	"id, title, media_kind, scope, owner_id, owner_name, owner_email, owner_avatar, "
	"team_ref, global_ref, allowed_emails, participant_count, active, created_at, last_activity, version"
)


class CallRepository:
	def __init__(self) -> None:
		self._pool_instance: Optional[asyncpg.Pool] = None

	async def _get_pool(self) -> Optional[asyncpg.Pool]:
		"""Return the Postgres pool, or ``None`` when the memory store is in use.

		Only a live pool is cached. A failed connection attempt raises
		``TransientStoreError`` and the next call tries again, so a worker never
		drifts onto a private in-memory map while Postgres is configured.
		"""
		if self._pool_instance is not None:
			return self._pool_instance
		if not settings.postgres_enabled:
			return None
		try:
			pool = await get_pool()
		except AssertionError:
			# No pool was configured for this process.
			return None
		except Exception as exc:
			logger.warning("postgres unavailable for call store", exc_info=True)
			raise policy.TransientStoreError("store_unavailable", message="call store is unavailable, retry") from exc
		self._pool_instance = pool
		return pool

	async def insert_if_absent(self, room: models.CallRoom) -> Tuple[models.CallRoom, bool]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.insert_if_absent(room)
		try:
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					f"""
					INSERT INTO call_rooms ({_COLUMNS})
					VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12,$13,$14,$15,1)
					ON CONFLICT (id) DO NOTHING
					RETURNING {_COLUMNS}
					""",
					*_room_params(room),
				)
				if row is not None:
					return _row_to_room(row), True
				row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM call_rooms WHERE id=$1", room.id)
		except _STORE_UNAVAILABLE as exc:
			raise policy.TransientStoreError("store_unavailable") from exc
		if row is None:
			# Inserted and deleted between our two statements; let the caller retry.
			raise policy.TransientStoreError("store_unavailable")
		return _row_to_room(row), False

	async def get(self, room_id: str) -> Optional[models.CallRoom]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.get(room_id)
		try:
			async with pool.acquire() as conn:
				row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM call_rooms WHERE id=$1", room_id)
		except _STORE_UNAVAILABLE as exc:
			raise policy.TransientStoreError("store_unavailable") from exc
		return _row_to_room(row) if row else None

	async def list_rooms(self, scope: models.CallScope, *, active_only: bool = True) -> List[models.CallRoom]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.list_rooms(scope, active_only=active_only)
		query = f"SELECT {_COLUMNS} FROM call_rooms WHERE scope=$1"
		if active_only:
			query += " AND active"
		query += " ORDER BY created_at DESC"
		try:
			async with pool.acquire() as conn:
				rows = await conn.fetch(query, scope.value)
		except _STORE_UNAVAILABLE as exc:
			raise policy.TransientStoreError("store_unavailable") from exc
		return [_row_to_room(row) for row in rows]

	async def compare_and_update(self, room_id: str, mutator: Mutator) -> Optional[models.CallRoom]:
		"""Apply ``mutator`` to the freshest version of a room and persist it.

		The mutator receives a copy and returns the updated room, or ``None`` to
		leave the record untouched. It is re-run against a re-read record after
		every version conflict; exceptions it raises propagate unchanged. Returns
		``None`` if the room does not exist.
		"""
		attempts = max(1, settings.call_store_max_retries)
		for attempt in range(attempts):
			current = await self.get(room_id)
			if current is None:
				return None
			updated = mutator(current.copy())
			if updated is None:
				return current
			try:
				return await self._write_if_version(updated, current.version)
			except policy.ConflictError:
				obs_metrics.inc_store_conflict()
				logger.debug("call store conflict", extra={"room_id": room_id, "attempt": attempt + 1})
				await asyncio.sleep(random.uniform(0, 0.002 * (attempt + 1)))
		raise policy.TransientStoreError(
			"store_contention",
			message=f"gave up updating call {room_id!r} after {attempts} attempts",
		)

	async def _write_if_version(self, room: models.CallRoom, expected_version: int) -> models.CallRoom:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.write_if_version(room, expected_version)
		try:
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					f"""
					UPDATE call_rooms
					SET title=$2, media_kind=$3, scope=$4, owner_id=$5, owner_name=$6, owner_email=$7,
						owner_avatar=$8, team_ref=$9, global_ref=$10, allowed_emails=$11,
						participant_count=$12, active=$13, created_at=$14, last_activity=$15,
						version=version + 1
					WHERE id=$1 AND version=$16
					RETURNING {_COLUMNS}
					""",
					*_room_params(room),
					expected_version,
				)
		except _STORE_UNAVAILABLE as exc:
			raise policy.TransientStoreError("store_unavailable") from exc
		if row is None:
			raise policy.ConflictError("version_conflict")
		return _row_to_room(row)


def _room_params(room: models.CallRoom) -> tuple:
	return (
		room.id,
		room.title,
		room.media_kind.value,
		room.scope.value,
		room.owner.id,
		room.owner.name,
		room.owner.email,
		room.owner.avatar,
		room.team_ref,
		room.global_ref,
		list(room.allowed_emails),
		room.participant_count,
		room.active,
		room.created_at,
		room.last_activity,
	)


def _row_to_room(row: asyncpg.Record) -> models.CallRoom:
	return models.CallRoom(
		id=str(row["id"]),
		title=row["title"],
		media_kind=models.MediaKind(row["media_kind"]),
		scope=models.CallScope(row["scope"]),
		owner=models.Principal(
			id=str(row["owner_id"]),
			email=row["owner_email"],
			name=row["owner_name"] or "",
			avatar=row["owner_avatar"] or "",
		),
		team_ref=row["team_ref"],
		global_ref=row["global_ref"],
		allowed_emails=tuple(row["allowed_emails"] or ()),
		participant_count=int(row["participant_count"]),
		active=bool(row["active"]),
		created_at=row["created_at"],
		last_activity=row["last_activity"],
		version=int(row["version"]),
	)


async def reset_memory_state() -> None:
	"""Test helper to clear in-memory store state."""
	async with _MEMORY._lock:  # type: ignore[attr-defined]
		_MEMORY.rooms.clear()
