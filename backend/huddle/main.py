"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from huddle.api import calls, ops
from huddle.api.errors import install_error_handlers
from huddle.domain.calls.sweeper import run_stale_sweeper
from huddle.infra import postgres
from huddle.obs import init as obs_init
from huddle.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	try:
		await postgres.init_pool()
	except Exception:
		logger.warning("postgres pool unavailable at startup, calls use the in-memory store", exc_info=True)
	worker_tasks: list[asyncio.Task] = []
	if settings.call_sweeper_enabled:
		service = calls.get_call_service()
		worker_tasks.append(
			asyncio.create_task(
				run_stale_sweeper(service.sweeper, settings.call_sweeper_interval_seconds),
				name="call-stale-sweeper",
			)
		)
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		if worker_tasks:
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()


app = FastAPI(title="Huddle Call Registry", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:5173"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["GET", "POST", "PUT", "DELETE"],
	allow_headers=["*"],
)
obs_init(app)

app.include_router(calls.router)
app.include_router(ops.router)
