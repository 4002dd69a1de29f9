"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatcore import container as chat_container
from chatcore.api import ops
from chatcore.api.errors import install_error_handlers
from chatcore.domain.chat.sockets import ChatNamespace
from chatcore.infra import postgres
from chatcore.infra.schema import apply_schema
from chatcore.obs import init as obs_init
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

# Built at import so the namespace can be registered before the server starts;
# nothing here touches the network until the lifespan runs.
container = chat_container.build_container()


@asynccontextmanager
async def lifespan(app: FastAPI):
	if not settings.uses_memory_store():
		await postgres.init_pool()
		if settings.schema_auto_apply:
			await apply_schema()
	await chat_container.start(container)
	app.state.chat = container
	LOGGER.info("chatcore started", extra={"store": settings.chat_store, "environment": settings.environment})
	try:
		yield
	finally:
		await chat_container.stop(container)
		await postgres.close_pool()


app = FastAPI(title="Chat Core", lifespan=lifespan)
install_error_handlers(app)
app.include_router(ops.router)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
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

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
chat_namespace = ChatNamespace(container)
sio.register_namespace(chat_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)
