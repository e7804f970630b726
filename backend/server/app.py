"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (gateway client, session registry)
- Connect the gateway on startup, close everything on shutdown
- Register routes
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig
from gateway.client import GatewayClient
from gateway.errors import GatewayError
from observability import logger
from observability.logger import log_event
from server.routes import register_routes
from session.registry import SessionRegistry


def create_app(
    config: AppConfig | None = None,
    *,
    gateway: Any | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    `gateway` replaces the GatewayClient (tests pass a fake with
    connect/close/submit_turn/send_raw/cancel_all/snapshot).
    """
    config = config or AppConfig.load_from_env()
    logger.configure(json_lines=config.enable_json_logs)

    gateway_client = gateway or build_gateway_client(config)
    registry = SessionRegistry()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        log_event({
            "event_type": "BRIDGE_STARTING",
            "env": config.env,
            "gateway_url": config.gateway_ws_url,
        })
        try:
            await gateway_client.connect()
        except GatewayError as exc:
            # Not fatal: a reconnect is already scheduled
            log_event({
                "event_type": "GATEWAY_INITIAL_CONNECT_FAILED",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
        try:
            yield
        finally:
            await registry.close_all()
            await gateway_client.close()
            log_event({"event_type": "BRIDGE_STOPPED"})

    app = FastAPI(title="G1 Agent Bridge", lifespan=lifespan)

    app.state.config = config
    app.state.gateway = gateway_client
    app.state.registry = registry

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # control plane binds to localhost by default
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app


def build_gateway_client(config: AppConfig) -> GatewayClient:
    return GatewayClient(
        url=config.gateway_ws_url,
        token=config.gateway_token,
        session_key=config.gateway_session_key,
        agent_name=config.agent_name,
    )
