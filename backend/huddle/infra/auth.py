"""Authentication helpers for FastAPI endpoints.

The identity provider is external: bearer tokens are verified (HS256, shared
secret) and trusted as-is. Dev headers are only honoured in development.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from huddle.infra import jwt as jwt_helper
from huddle.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	email: str
	name: Optional[str] = None
	avatar: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser.

	Requirements:
	- issuer="huddle-auth", audience="huddle-api"
	- required claims: sub, email, exp, iat
	"""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		# Normalise all decode failures to invalid_token for the API surface
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	sub = str(payload.get("sub") or "").strip()
	email = str(payload.get("email") or "").strip()
	if not sub or not email:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	name = payload.get("name") or payload.get("display_name")
	avatar = payload.get("avatar")
	return AuthenticatedUser(
		id=sub,
		email=email,
		name=str(name) if name is not None else None,
		avatar=str(avatar) if avatar is not None else None,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_email: Optional[str] = Header(default=None, alias="X-User-Email"),
	x_user_name: Optional[str] = Header(default=None, alias="X-User-Name"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow simple headers. In all other environments, headers are
	ignored and a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)

	if settings.is_dev() and x_user_id and x_user_email:
		return AuthenticatedUser(id=x_user_id, email=x_user_email, name=x_user_name)

	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
