"""Stale call sweeper.

Runs inline before every listing; an optional background loop can tighten the
staleness bound between listings.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from huddle.domain.calls import models, outbox
from huddle.domain.calls.store import CallRepository
from huddle.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class StaleSweeper:
	def __init__(self, repository: CallRepository, *, clock: Callable[[], datetime] = _utcnow) -> None:
		self._repo = repository
		self._clock = clock

	async def sweep(self, scope: models.CallScope, *, now: Optional[datetime] = None) -> int:
		"""Deactivate active rooms in ``scope`` idle past their TTL; return how many."""
		now = now or self._clock()
		swept = 0
		for room in await self._repo.list_rooms(scope, active_only=True):
			if not room.is_stale(now):
				continue

			changed = False

			def _deactivate(current: models.CallRoom) -> Optional[models.CallRoom]:
				nonlocal changed
				changed = False
				# A heartbeat may have landed since the listing.
				if not current.active or not current.is_stale(now):
					return None
				current.active = False
				changed = True
				return current

			await self._repo.compare_and_update(room.id, _deactivate)
			if changed:
				swept += 1
				await outbox.append_call_event("call_swept", room.id, meta={"scope": scope.value})
		if swept:
			logger.info("stale calls swept", extra={"scope": scope.value, "count": swept})
			obs_metrics.inc_calls_swept(scope.value, swept)
		return swept

	async def sweep_all(self, *, now: Optional[datetime] = None) -> int:
		now = now or self._clock()
		total = 0
		for scope in models.CallScope:
			total += await self.sweep(scope, now=now)
		return total


async def run_stale_sweeper(sweeper: StaleSweeper, interval_s: int = 60) -> None:
	"""Periodically sweep every scope until cancelled."""
	interval = max(1, int(interval_s))
	while True:
		await asyncio.sleep(interval)
		try:
			await sweeper.sweep_all()
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("call sweeper iteration failed")
