"""Outbox helpers for call-domain events."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from redis.exceptions import RedisError

from huddle.infra.redis import redis_client

logger = logging.getLogger(__name__)

CALL_EVENT_STREAM = "x:calls.events"
CALL_EVENT_STREAM_MAXLEN = 10_000


async def append_call_event(
	event: str,
	room_id: str,
	*,
	user_id: str | None = None,
	meta: Mapping[str, Any] | None = None,
) -> None:
	fields: dict[str, Any] = {
		"event": event,
		"room_id": room_id,
	}
	if user_id:
		fields["user_id"] = str(user_id)
	if meta:
		for key, value in meta.items():
			fields[f"meta_{key}"] = str(value)
	try:
		await redis_client.xadd(CALL_EVENT_STREAM, fields, maxlen=CALL_EVENT_STREAM_MAXLEN, approximate=True)
	except RedisError:
		# Store write already committed.
		logger.warning("call event not published", extra={"event": event, "room_id": room_id}, exc_info=True)
