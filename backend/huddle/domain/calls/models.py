"""Domain models for audio/video call rooms."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import FrozenSet, Optional, Tuple


class CallScope(str, enum.Enum):
	PERSONAL = "single"
	TEAM = "team"
	GLOBAL = "global"


class MediaKind(str, enum.Enum):
	AUDIO = "audio"
	VIDEO = "video"


class Capability(str, enum.Enum):
	AUDIO = "audio"
	CHAT = "chat"
	MUTE = "mute"
	HANGUP = "hangup"
	LOBBY = "lobby"
	KICK_OUT = "kick-out"
	CAMERA = "camera"
	SCREEN_SHARING = "screen-sharing"
	DESKTOP_SHARING = "desktop-sharing"
	TILE_VIEW = "tile-view"
	VIDEO_SHARING = "video-sharing"
	RECORDING = "recording"
	LIVESTREAMING = "livestreaming"


VIDEO_CAPABILITIES: FrozenSet[Capability] = frozenset(
	{
		Capability.CAMERA,
		Capability.SCREEN_SHARING,
		Capability.DESKTOP_SHARING,
		Capability.TILE_VIEW,
		Capability.VIDEO_SHARING,
		Capability.RECORDING,
		Capability.LIVESTREAMING,
	}
)

# Idle time after which an active room is swept to inactive.
ROOM_TTL: dict[MediaKind, timedelta] = {
	MediaKind.AUDIO: timedelta(hours=1),
	MediaKind.VIDEO: timedelta(hours=2),
}

# Validity window of an issued credential, measured from issued_at.
CREDENTIAL_LIFETIME: dict[MediaKind, timedelta] = {
	MediaKind.AUDIO: timedelta(hours=4),
	MediaKind.VIDEO: timedelta(hours=7),
}


@dataclass(slots=True, frozen=True)
class Principal:
	"""A verified caller identity as supplied by the identity provider."""

	id: str
	email: str
	name: str = ""
	avatar: str = ""


def normalise_email(email: str | None) -> str:
	return (email or "").strip().lower()


@dataclass(slots=True)
class CallRoom:
	"""Persisted representation of a call room."""

	id: str
	title: str
	media_kind: MediaKind
	scope: CallScope
	owner: Principal
	created_at: datetime
	last_activity: datetime
	team_ref: Optional[str] = None
	global_ref: Optional[str] = None
	allowed_emails: Tuple[str, ...] = ()
	participant_count: int = 1
	active: bool = True
	version: int = 1

	def copy(self) -> "CallRoom":
		return replace(self)

	def is_owned_by(self, principal: Principal) -> bool:
		return self.owner.id == principal.id

	def is_stale(self, now: datetime) -> bool:
		return now - self.last_activity > ROOM_TTL[self.media_kind]

	def allows_email(self, email: str) -> bool:
		wanted = normalise_email(email)
		if not wanted:
			return False
		if normalise_email(self.owner.email) == wanted:
			return True
		return wanted in {normalise_email(item) for item in self.allowed_emails}

	def to_summary(self) -> dict:
		"""Return a dictionary payload suitable for the CallSummary schema."""
		return {
			"room_name": self.id,
			"title": self.title,
			"media_kind": self.media_kind.value,
			"scope": self.scope.value,
			"owner": {
				"id": self.owner.id,
				"name": self.owner.name,
				"email": self.owner.email,
				"avatar": self.owner.avatar,
			},
			"team_ref": self.team_ref,
			"global_ref": self.global_ref,
			"allowed_emails": list(self.allowed_emails),
			"participant_count": self.participant_count,
			"active": self.active,
			"created_at": self.created_at,
			"last_activity": self.last_activity,
		}


@dataclass(slots=True, frozen=True)
class ScopeRefs:
	team_ref: Optional[str] = None
	global_ref: Optional[str] = None


@dataclass(slots=True, frozen=True)
class AccessDecision:
	allowed: bool
	reason: str


@dataclass(slots=True, frozen=True)
class Credential:
	subject_id: str
	subject_name: str
	subject_email: str
	subject_avatar: str
	room_id: str
	media_kind: MediaKind
	scope: CallScope
	moderator: bool
	capabilities: FrozenSet[Capability]
	issued_at: datetime
	not_before: datetime
	expires_at: datetime
	team_ref: Optional[str] = None
	global_ref: Optional[str] = None

	@property
	def lifetime(self) -> timedelta:
		return self.expires_at - self.issued_at


@dataclass(slots=True)
class JoinOutcome:
	"""Result of a create-or-join call."""

	room: CallRoom
	created: bool = False
	reactivated: bool = False
	joined: bool = False
