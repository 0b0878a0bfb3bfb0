"""Policy helpers and error taxonomy for call rooms."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from redis.exceptions import RedisError

from huddle.domain.calls import models
from huddle.infra.redis import redis_client
from huddle.settings import settings

logger = logging.getLogger(__name__)


class CallPolicyError(RuntimeError):
	status_code = 400
	retryable = False

	def __init__(self, code: str, *, message: str | None = None, status_code: int | None = None) -> None:
		super().__init__(message or code)
		self.code = code
		self.detail = message or code
		if status_code is not None:
			self.status_code = status_code


class ValidationError(CallPolicyError):
	status_code = 400


class AuthorizationError(CallPolicyError):
	status_code = 403


class NotFoundError(CallPolicyError):
	status_code = 404


class ConflictError(CallPolicyError):
	"""Version conflict inside the store; retried, never surfaced to callers."""

	status_code = 409


class RateLimitedError(CallPolicyError):
	status_code = 429
	retryable = True


class ConfigurationError(CallPolicyError):
	status_code = 500


class TransientStoreError(CallPolicyError):
	status_code = 503
	retryable = True


class CredentialTimeout(CallPolicyError):
	status_code = 503
	retryable = True


REASON_GRANTED = "access granted"
REASON_PRIVATE = "private room"
REASON_NOT_INVITED = "not invited"
REASON_OPEN = "open scope"


def evaluate_access(room: models.CallRoom, requester: models.Principal) -> models.AccessDecision:
	if room.scope is models.CallScope.PERSONAL:
		if requester.id == room.owner.id:
			return models.AccessDecision(True, REASON_GRANTED)
		return models.AccessDecision(False, REASON_PRIVATE)
	if room.scope is models.CallScope.TEAM:
		if room.allows_email(requester.email):
			return models.AccessDecision(True, REASON_GRANTED)
		return models.AccessDecision(False, REASON_NOT_INVITED)
	if room.scope is models.CallScope.GLOBAL:
		return models.AccessDecision(True, REASON_OPEN)
	raise ValueError(f"unknown scope: {room.scope!r}")


def ensure_access(room: models.CallRoom, requester: models.Principal) -> models.AccessDecision:
	decision = evaluate_access(room, requester)
	if not decision.allowed:
		raise AuthorizationError("access_denied", message=decision.reason)
	return decision


def ensure_team_room(room: models.CallRoom) -> None:
	if room.scope is not models.CallScope.TEAM:
		raise ValidationError("team_only", message="invites are only supported for team calls")


def ensure_can_invite(room: models.CallRoom, requester_email: str) -> None:
	if not room.allows_email(requester_email):
		raise AuthorizationError("invite_forbidden", message="not authorized to invite members to this call")


def ensure_can_reactivate(room: models.CallRoom, requester: models.Principal) -> None:
	if settings.call_reactivation_requires_owner and not room.is_owned_by(requester):
		raise AuthorizationError("reactivation_forbidden", message="room owned by another user")


def ensure_active(room: models.CallRoom | None, room_id: str) -> models.CallRoom:
	if room is None or not room.active:
		raise NotFoundError("call_not_found", message=f"call {room_id!r} not found")
	return room


def merge_emails(existing: tuple[str, ...], incoming: list[str]) -> tuple[str, ...]:
	"""Append new emails, keeping order and dropping duplicates."""
	seen = {models.normalise_email(item) for item in existing}
	merged = list(existing)
	for email in incoming:
		normalised = models.normalise_email(email)
		if not normalised or normalised in seen:
			continue
		seen.add(normalised)
		merged.append(normalised)
	return tuple(merged)


async def _touch_limit(key: str, ttl_seconds: int) -> int:
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, ttl_seconds)
		count, _ = await pipe.execute()
	return int(count)


async def enforce_create_limit(user_id: str, now: datetime | None = None) -> None:
	"""Count a new room against the owner's hourly quota; fails open on redis errors."""
	now = now or datetime.now(timezone.utc)
	bucket = now.strftime("%Y%m%d%H")
	key = f"rl:call:create:{user_id}:{bucket}"
	try:
		count = await _touch_limit(key, 3_600)
	except RedisError:
		logger.warning("call create limit unavailable", extra={"user_id": user_id}, exc_info=True)
		return
	if count > settings.call_create_limit_per_hour:
		raise RateLimitedError("rate_limited:create", message="too many new calls this hour")
