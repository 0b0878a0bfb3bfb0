"""Signed, time-bounded media transport credentials.

Tokens follow the Jitsi JWT layout (RS256, ``kid`` header, ``context.user`` and
``context.features``) so the transport can admit the bearer without calling back.
The capability set is decided here from the room's media kind: an audio room
never grants video capabilities, whatever the caller asks for.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import jwt

from huddle.domain.calls import models, policy
from huddle.obs import metrics as obs_metrics
from huddle.settings import settings

logger = logging.getLogger(__name__)

C = models.Capability

AUDIO_CAPABILITIES = frozenset({C.AUDIO, C.CHAT, C.MUTE, C.HANGUP, C.LOBBY})
VIDEO_ONLY_CAPABILITIES = frozenset({C.CAMERA, C.SCREEN_SHARING, C.DESKTOP_SHARING, C.TILE_VIEW, C.VIDEO_SHARING})
MODERATOR_CAPABILITIES = frozenset({C.KICK_OUT})
VIDEO_MODERATOR_CAPABILITIES = frozenset({C.RECORDING, C.LIVESTREAMING})

AUDIENCE = "jitsi"


def allowed_capabilities(media_kind: models.MediaKind, *, moderator: bool) -> frozenset[models.Capability]:
	allowed = set(AUDIO_CAPABILITIES)
	if moderator:
		allowed |= MODERATOR_CAPABILITIES
	if media_kind is models.MediaKind.VIDEO:
		allowed |= VIDEO_ONLY_CAPABILITIES
		if moderator:
			allowed |= VIDEO_MODERATOR_CAPABILITIES
	else:
		allowed -= models.VIDEO_CAPABILITIES
	return frozenset(allowed)


def build_credential(
	room: models.CallRoom,
	requester: models.Principal,
	*,
	moderator: bool,
	now: datetime,
	requested: Optional[Iterable[models.Capability]] = None,
	clock_skew: timedelta = timedelta(seconds=10),
) -> models.Credential:
	allowed = allowed_capabilities(room.media_kind, moderator=moderator)
	capabilities = allowed if requested is None else allowed & frozenset(requested)
	return models.Credential(
		subject_id=requester.id,
		subject_name=requester.name or "Guest User",
		subject_email=requester.email,
		subject_avatar=requester.avatar,
		room_id=room.id,
		media_kind=room.media_kind,
		scope=room.scope,
		moderator=moderator,
		capabilities=capabilities,
		issued_at=now,
		not_before=now - clock_skew,
		expires_at=now + models.CREDENTIAL_LIFETIME[room.media_kind],
		team_ref=room.team_ref,
		global_ref=room.global_ref,
	)


def credential_claims(credential: models.Credential, *, app_id: str, issuer: str) -> Dict[str, Any]:
	features: Dict[str, bool] = {cap.value: cap in credential.capabilities for cap in models.Capability}
	features["audio-only"] = credential.media_kind is models.MediaKind.AUDIO
	return {
		"aud": AUDIENCE,
		"iss": issuer,
		"sub": app_id,
		"room": credential.room_id,
		"iat": int(credential.issued_at.timestamp()),
		"nbf": int(credential.not_before.timestamp()),
		"exp": int(credential.expires_at.timestamp()),
		"context": {
			"features": features,
			"user": {
				"id": credential.subject_id,
				"name": credential.subject_name,
				"email": credential.subject_email,
				"avatar": credential.subject_avatar,
				"moderator": credential.moderator,
				"hidden-from-recorder": False,
			},
			"role": {
				"type": credential.scope.value,
				"teamId": credential.team_ref,
				"globalId": credential.global_ref,
			},
		},
	}


def client_config(media_kind: models.MediaKind) -> Dict[str, bool]:
	audio_only = media_kind is models.MediaKind.AUDIO
	return {
		"audio_only": audio_only,
		"video_disabled": audio_only,
		"start_with_video_muted": audio_only,
		"start_with_audio_muted": False,
	}


@dataclass(slots=True, frozen=True)
class IssuedCredential:
	token: str
	credential: models.Credential
	config: Dict[str, bool] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class _SigningMaterial:
	app_id: str
	kid: str
	private_key: str


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class CredentialIssuer:
	"""Signs credentials with the configured transport key."""

	def __init__(
		self,
		*,
		app_id: Optional[str] = None,
		kid: Optional[str] = None,
		private_key: Optional[str] = None,
		private_key_path: Optional[str] = None,
		timeout_seconds: Optional[float] = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._app_id = app_id if app_id is not None else settings.jitsi_app_id
		self._kid = kid if kid is not None else settings.jitsi_kid
		self._private_key = private_key if private_key is not None else settings.jitsi_private_key
		self._private_key_path = private_key_path if private_key_path is not None else settings.jitsi_private_key_path
		self._timeout = timeout_seconds if timeout_seconds is not None else settings.credential_signing_timeout_seconds
		self._clock = clock

	def _signing_material(self) -> _SigningMaterial:
		key = self._private_key
		if not key and self._private_key_path:
			try:
				key = Path(self._private_key_path).read_text(encoding="utf-8")
			except OSError as exc:
				raise policy.ConfigurationError(
					"signing_key_unreadable",
					message=f"could not read signing key from {self._private_key_path}",
				) from exc
		missing = [
			name
			for name, value in (("app_id", self._app_id), ("kid", self._kid), ("private_key", key))
			if not value
		]
		if missing:
			raise policy.ConfigurationError(
				"credentials_not_configured",
				message=f"call credentials not configured: missing {', '.join(missing)}",
			)
		return _SigningMaterial(app_id=str(self._app_id), kid=str(self._kid), private_key=str(key))

	def _sign(self, claims: Dict[str, Any], private_key: str, kid: str) -> str:
		return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid, "typ": "JWT"})

	async def issue(
		self,
		room: models.CallRoom,
		requester: models.Principal,
		*,
		moderator: bool = False,
		requested: Optional[Iterable[models.Capability]] = None,
	) -> IssuedCredential:
		try:
			material = self._signing_material()
		except policy.ConfigurationError:
			obs_metrics.inc_credential_failure("not_configured")
			raise
		credential = build_credential(
			room,
			requester,
			moderator=moderator,
			now=self._clock(),
			requested=requested,
			clock_skew=timedelta(seconds=settings.credential_clock_skew_seconds),
		)
		claims = credential_claims(credential, app_id=material.app_id, issuer=settings.credential_issuer)
		start = time.perf_counter()
		try:
			token = await asyncio.wait_for(
				asyncio.to_thread(self._sign, claims, material.private_key, material.kid),
				timeout=self._timeout,
			)
		except asyncio.TimeoutError as exc:
			obs_metrics.inc_credential_failure("timeout")
			logger.warning("credential signing timed out", extra={"room_id": room.id, "timeout_s": self._timeout})
			raise policy.CredentialTimeout("credential_timeout", message="credential signing timed out, retry") from exc
		except (jwt.PyJWTError, ValueError, TypeError) as exc:
			obs_metrics.inc_credential_failure("invalid_key")
			raise policy.ConfigurationError("signing_key_invalid", message="configured signing key is not usable") from exc
		obs_metrics.observe_credential_sign(time.perf_counter() - start)
		obs_metrics.inc_credential_issued(room.media_kind.value, moderator)
		logger.info(
			"call credential issued",
			extra={"room_id": room.id, "media_kind": room.media_kind.value, "moderator": moderator},
		)
		return IssuedCredential(token=token, credential=credential, config=client_config(room.media_kind))
