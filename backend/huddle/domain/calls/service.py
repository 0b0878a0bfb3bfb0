"""Call room lifecycle service layer."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from huddle.domain.calls import models, outbox, policy, schemas
from huddle.domain.calls.credentials import CredentialIssuer
from huddle.domain.calls.store import CallRepository
from huddle.domain.calls.sweeper import StaleSweeper
from huddle.infra.auth import AuthenticatedUser
from huddle.obs import metrics as obs_metrics
from huddle.settings import settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _principal(user: AuthenticatedUser) -> models.Principal:
	return models.Principal(
		id=(user.id or "").strip(),
		email=(user.email or "").strip(),
		name=user.name or "",
		avatar=user.avatar or "",
	)


def _summary(room: models.CallRoom) -> schemas.CallSummary:
	return schemas.CallSummary(**room.to_summary())


class CallService:
	def __init__(
		self,
		repository: CallRepository | None = None,
		*,
		issuer: CredentialIssuer | None = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._repo = repository or CallRepository()
		self._issuer = issuer or CredentialIssuer()
		self._clock = clock
		self.sweeper = StaleSweeper(self._repo, clock=clock)

	async def create_or_join(self, auth_user: AuthenticatedUser, payload: schemas.CreateCallRequest) -> schemas.CallJoinResponse:
		requester = _principal(auth_user)
		room_id, title = self._validate_create(requester, payload)
		now = self._clock()

		existing = await self._repo.get(room_id)
		if existing is None:
			await policy.enforce_create_limit(requester.id, now)
			candidate = self._new_room(room_id, title, requester, payload, now)
			stored, created = await self._repo.insert_if_absent(candidate)
			if created:
				obs_metrics.inc_call_created(stored.scope.value, stored.media_kind.value)
				await outbox.append_call_event("call_created", stored.id, user_id=requester.id, meta={"scope": stored.scope.value})
				logger.info("call created", extra={"room_id": stored.id, "scope": stored.scope.value})
				return schemas.CallJoinResponse(call=_summary(stored), created=True, reactivated=False)
			logger.debug("call insert lost race, joining", extra={"room_id": room_id})

		outcome = await self._join_existing(room_id, title, requester, payload, now)
		room = outcome.room
		if outcome.reactivated:
			obs_metrics.inc_call_reactivated(room.scope.value)
			await outbox.append_call_event("call_reactivated", room.id, user_id=requester.id, meta={"scope": room.scope.value})
			logger.info("call reactivated", extra={"room_id": room.id, "scope": room.scope.value})
		else:
			obs_metrics.inc_call_joined(room.scope.value)
			await outbox.append_call_event(
				"call_joined",
				room.id,
				user_id=requester.id,
				meta={"participants": room.participant_count},
			)
		return schemas.CallJoinResponse(call=_summary(room), created=False, reactivated=outcome.reactivated)

	async def list_active(
		self,
		auth_user: AuthenticatedUser,
		scope: models.CallScope,
		refs: models.ScopeRefs | None = None,
		*,
		media_kind: models.MediaKind | None = None,
	) -> List[schemas.CallSummary]:
		requester = _principal(auth_user)
		refs = refs or models.ScopeRefs()
		await self.sweeper.sweep(scope)
		rooms = await self._repo.list_rooms(scope, active_only=True)
		if scope is models.CallScope.PERSONAL:
			rooms = [room for room in rooms if room.owner.id == requester.id]
		elif scope is models.CallScope.TEAM:
			rooms = [room for room in rooms if room.allows_email(requester.email)]
		elif scope is models.CallScope.GLOBAL:
			wanted = refs.global_ref or settings.default_global_ref
			rooms = [room for room in rooms if room.global_ref == wanted]
		if media_kind is not None:
			rooms = [room for room in rooms if room.media_kind is media_kind]
		rooms.sort(key=lambda room: room.created_at, reverse=True)
		return [_summary(room) for room in rooms]

	async def invite(self, room_id: str, requester_email: str, emails: Iterable[str]) -> schemas.InviteResponse:
		incoming = list(emails)
		room = policy.ensure_active(await self._repo.get(room_id), room_id)
		policy.ensure_team_room(room)
		policy.ensure_can_invite(room, requester_email)
		outcome: dict[str, tuple[str, ...]] = {"added": ()}

		def _mutate(current: models.CallRoom) -> Optional[models.CallRoom]:
			outcome["added"] = ()
			policy.ensure_active(current, room_id)
			policy.ensure_can_invite(current, requester_email)
			merged = policy.merge_emails(current.allowed_emails, incoming)
			if merged == current.allowed_emails:
				return None
			outcome["added"] = merged[len(current.allowed_emails):]
			current.allowed_emails = merged
			return current

		updated = policy.ensure_active(await self._repo.compare_and_update(room_id, _mutate), room_id)
		added = list(outcome["added"])
		if added:
			await outbox.append_call_event(
				"call_invited",
				room_id,
				meta={"invited": len(added)},
			)
			logger.info("call invites added", extra={"room_id": room_id, "invited": len(added)})
		return schemas.InviteResponse(room_name=room_id, added=added, allowed_emails=list(updated.allowed_emails))

	async def check_access(self, room_id: str, auth_user: AuthenticatedUser) -> schemas.AccessResponse:
		room = policy.ensure_active(await self._repo.get(room_id), room_id)
		decision = policy.evaluate_access(room, _principal(auth_user))
		return schemas.AccessResponse(
			allowed=decision.allowed,
			reason=decision.reason,
			call=_summary(room) if decision.allowed else None,
		)

	async def end(self, room_id: str) -> None:
		ended = False

		def _mutate(current: models.CallRoom) -> Optional[models.CallRoom]:
			nonlocal ended
			ended = False
			if not current.active:
				return None
			current.active = False
			ended = True
			return current

		await self._repo.compare_and_update(room_id, _mutate)
		if ended:
			obs_metrics.inc_call_ended()
			await outbox.append_call_event("call_ended", room_id)
			logger.info("call ended", extra={"room_id": room_id})

	async def heartbeat(self, room_id: str) -> None:
		now = self._clock()

		def _mutate(current: models.CallRoom) -> Optional[models.CallRoom]:
			if not current.active:
				return None
			current.last_activity = max(current.last_activity, now)
			return current

		await self._repo.compare_and_update(room_id, _mutate)

	async def issue_credential(
		self,
		room_id: str,
		auth_user: AuthenticatedUser,
		*,
		moderator: bool = False,
		capabilities: Optional[Iterable[models.Capability]] = None,
	) -> schemas.CredentialResponse:
		requester = _principal(auth_user)
		room = policy.ensure_active(await self._repo.get(room_id), room_id)
		try:
			policy.ensure_access(room, requester)
		except policy.AuthorizationError:
			obs_metrics.inc_call_denied(room.scope.value)
			raise
		grant_moderator = bool(moderator) and room.is_owned_by(requester)
		issued = await self._issuer.issue(room, requester, moderator=grant_moderator, requested=capabilities)
		credential = issued.credential
		return schemas.CredentialResponse(
			jwt=issued.token,
			room_name=room.id,
			media_kind=room.media_kind,
			moderator=credential.moderator,
			capabilities=sorted(credential.capabilities, key=lambda cap: cap.value),
			issued_at=credential.issued_at,
			not_before=credential.not_before,
			expires_at=credential.expires_at,
			config=issued.config,
		)

	def _validate_create(self, requester: models.Principal, payload: schemas.CreateCallRequest) -> tuple[str, str]:
		room_id = (payload.room_name or "").strip()
		title = (payload.title or "").strip()
		if not room_id:
			raise policy.ValidationError("room_name_required", message="room name is required")
		if not title:
			raise policy.ValidationError("title_required", message="call title is required")
		if payload.scope is None:
			raise policy.ValidationError("scope_required", message="call scope is required")
		if not requester.id:
			raise policy.ValidationError("user_id_required", message="user id is required")
		if payload.scope is models.CallScope.TEAM and not requester.email:
			raise policy.ValidationError("email_required", message="email is required for team calls")
		return room_id, title

	def _scope_fields(self, payload: schemas.CreateCallRequest) -> dict:
		scope = payload.scope
		return {
			"scope": scope,
			"team_ref": payload.team_ref if scope is models.CallScope.TEAM else None,
			"global_ref": (payload.global_ref or settings.default_global_ref) if scope is models.CallScope.GLOBAL else None,
			"allowed_emails": policy.merge_emails((), payload.allowed_emails) if scope is models.CallScope.TEAM else (),
		}

	def _new_room(
		self,
		room_id: str,
		title: str,
		requester: models.Principal,
		payload: schemas.CreateCallRequest,
		now: datetime,
	) -> models.CallRoom:
		return models.CallRoom(
			id=room_id,
			title=title,
			media_kind=payload.media_kind,
			owner=requester,
			created_at=now,
			last_activity=now,
			participant_count=1,
			active=True,
			**self._scope_fields(payload),
		)

	async def _join_existing(
		self,
		room_id: str,
		title: str,
		requester: models.Principal,
		payload: schemas.CreateCallRequest,
		now: datetime,
	) -> models.JoinOutcome:
		scope_fields = self._scope_fields(payload)
		flags = {"reactivated": False}

		def _mutate(current: models.CallRoom) -> models.CallRoom:
			flags["reactivated"] = False
			if not current.active:
				policy.ensure_can_reactivate(current, requester)
				current.owner = requester
				current.title = title
				current.media_kind = payload.media_kind
				for key, value in scope_fields.items():
					setattr(current, key, value)
				current.participant_count = 1
				current.active = True
				current.last_activity = now
				flags["reactivated"] = True
				return current
			decision = policy.evaluate_access(current, requester)
			if not decision.allowed:
				raise policy.AuthorizationError("access_denied", message=decision.reason)
			current.participant_count += 1
			current.last_activity = max(current.last_activity, now)
			return current

		try:
			room = await self._repo.compare_and_update(room_id, _mutate)
		except policy.AuthorizationError as exc:
			if exc.code == "access_denied":
				obs_metrics.inc_call_denied(payload.scope.value)
				logger.info("call join denied", extra={"room_id": room_id, "reason": exc.detail})
			raise
		if room is None:
			# Records are never deleted, so this only happens if the store lost the row.
			raise policy.TransientStoreError("store_inconsistent", message=f"call {room_id!r} vanished during join")
		return models.JoinOutcome(room=room, reactivated=flags["reactivated"], joined=not flags["reactivated"])
