"""Pydantic schemas for the calls API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from huddle.domain.calls.models import Capability, CallScope, MediaKind


class CreateCallRequest(BaseModel):
    room_name: str = Field(..., max_length=128)
    title: str = Field(..., max_length=200)
    scope: CallScope
    media_kind: MediaKind = MediaKind.AUDIO
    team_ref: Optional[str] = Field(default=None, max_length=64)
    global_ref: Optional[str] = Field(default=None, max_length=64)
    allowed_emails: List[str] = Field(default_factory=list, max_length=200)


class CallOwner(BaseModel):
    id: str
    name: str
    email: str
    avatar: str


class CallSummary(BaseModel):
    room_name: str
    title: str
    media_kind: MediaKind
    scope: CallScope
    owner: CallOwner
    team_ref: Optional[str] = None
    global_ref: Optional[str] = None
    allowed_emails: List[str] = Field(default_factory=list)
    participant_count: int
    active: bool
    created_at: datetime
    last_activity: datetime


class CallJoinResponse(BaseModel):
    call: CallSummary
    created: bool
    reactivated: bool


class CallListResponse(BaseModel):
    items: List[CallSummary]


class InviteRequest(BaseModel):
    emails: List[str] = Field(..., min_length=1, max_length=100)


class InviteResponse(BaseModel):
    room_name: str
    added: List[str]
    allowed_emails: List[str]


class AccessResponse(BaseModel):
    allowed: bool
    reason: str
    call: Optional[CallSummary] = None


class CredentialRequest(BaseModel):
    moderator: bool = False
    capabilities: Optional[List[Capability]] = None


class CredentialResponse(BaseModel):
    jwt: str
    room_name: str
    media_kind: MediaKind
    moderator: bool
    capabilities: List[Capability]
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    config: Dict[str, bool] = Field(default_factory=dict)
