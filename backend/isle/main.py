from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from isle.api import collab, ops
from isle.api.errors import install_error_handlers
from isle.api.middleware_request_id import RequestIdMiddleware
from isle.domain.collab.relay import ChangeFeedRelay
from isle.domain.collab.schema import ensure_schema
from isle.domain.collab.sockets import CollabNamespace
from isle.infra import postgres
from isle.obs import init as obs_init
from isle.settings import settings

logger = logging.getLogger(__name__)


async def _prepare_database() -> None:
	try:
		pool = await postgres.init_pool()
	except Exception:
		logger.warning("postgres.unavailable", exc_info=True)
		return
	if pool is None or not settings.collab_ensure_schema:
		return
	async with pool.acquire() as conn:
		await ensure_schema(conn)


@asynccontextmanager
async def lifespan(app: FastAPI):
	await _prepare_database()
	worker_tasks: list[asyncio.Task] = []
	relay: ChangeFeedRelay | None = None
	if settings.collab_feed_relay_enabled:
		relay = ChangeFeedRelay()
		worker_tasks.append(asyncio.create_task(relay.run_forever(), name="collab-feed-relay"))
	app.state.collab_relay = relay
	try:
		yield
	finally:
		if relay is not None:
			relay.stop()
		for task in worker_tasks:
			task.cancel()
		if worker_tasks:
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()


app = FastAPI(title="ISLE Collaboration API", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
collab_namespace = CollabNamespace()
sio.register_namespace(collab_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.add_middleware(RequestIdMiddleware)

app.include_router(collab.router)
app.include_router(ops.router)
