"""FastAPI routes for audio/video call rooms."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from huddle.domain.calls import CallService, models, policy, schemas
from huddle.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/calls", tags=["calls"])

_call_service: CallService | None = None


def get_call_service() -> CallService:
	global _call_service
	if _call_service is None:
		_call_service = CallService()
	return _call_service


def _as_http_error(exc: policy.CallPolicyError) -> HTTPException:
	detail = {"code": exc.code, "message": exc.detail, "retryable": exc.retryable}
	headers = {"Retry-After": "1"} if exc.retryable else None
	return HTTPException(status_code=exc.status_code, detail=detail, headers=headers)


@router.post("", response_model=schemas.CallJoinResponse)
async def create_or_join_endpoint(
	payload: schemas.CreateCallRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: CallService = Depends(get_call_service),
) -> schemas.CallJoinResponse:
	try:
		return await service.create_or_join(auth_user, payload)
	except policy.CallPolicyError as exc:
		raise _as_http_error(exc) from exc


@router.get("", response_model=schemas.CallListResponse)
async def list_active_endpoint(
	scope: models.CallScope = Query(...),
	team_ref: Optional[str] = Query(default=None),
	global_ref: Optional[str] = Query(default=None),
	media_kind: Optional[models.MediaKind] = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: CallService = Depends(get_call_service),
) -> schemas.CallListResponse:
	refs = models.ScopeRefs(team_ref=team_ref, global_ref=global_ref)
	try:
		items = await service.list_active(auth_user, scope, refs, media_kind=media_kind)
	except policy.CallPolicyError as exc:
		raise _as_http_error(exc) from exc
	return schemas.CallListResponse(items=items)


@router.post("/{room_name}/invite", response_model=schemas.InviteResponse)
async def invite_endpoint(
	room_name: str,
	payload: schemas.InviteRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: CallService = Depends(get_call_service),
) -> schemas.InviteResponse:
	try:
		return await service.invite(room_name, auth_user.email, payload.emails)
	except policy.CallPolicyError as exc:
		raise _as_http_error(exc) from exc


@router.get("/{room_name}/access", response_model=schemas.AccessResponse)
async def check_access_endpoint(
	room_name: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: CallService = Depends(get_call_service),
) -> schemas.AccessResponse:
	try:
		return await service.check_access(room_name, auth_user)
	except policy.CallPolicyError as exc:
		raise _as_http_error(exc) from exc


@router.delete("/{room_name}")
async def end_endpoint(
	room_name: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: CallService = Depends(get_call_service),
) -> dict:
	try:
		await service.end(room_name)
	except policy.CallPolicyError as exc:
		raise _as_http_error(exc) from exc
	return {"ok": True}


@router.put("/{room_name}/heartbeat")
async def heartbeat_endpoint(
	room_name: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: CallService = Depends(get_call_service),
) -> dict:
	try:
		await service.heartbeat(room_name)
	except policy.CallPolicyError as exc:
		raise _as_http_error(exc) from exc
	return {"ok": True}


@router.post("/{room_name}/credential", response_model=schemas.CredentialResponse)
async def issue_credential_endpoint(
	room_name: str,
	payload: schemas.CredentialRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: CallService = Depends(get_call_service),
) -> schemas.CredentialResponse:
	try:
		return await service.issue_credential(
			room_name,
			auth_user,
			moderator=payload.moderator,
			capabilities=payload.capabilities,
		)
	except policy.CallPolicyError as exc:
		raise _as_http_error(exc) from exc
