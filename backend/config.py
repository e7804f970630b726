"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No orchestration logic
- No protocol constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup and passed downward to the
    gateway client, session registry and routes.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # HTTP / device socket
    # ------------------------------------------------------------------

    host: str
    port: int
    device_api_key: str | None

    # ------------------------------------------------------------------
    # Agent gateway
    # ------------------------------------------------------------------

    gateway_ws_url: str
    gateway_token: str
    gateway_session_key: str
    agent_name: str

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if PORT is not an integer.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            host=os.environ.get("HOST", "127.0.0.1"),
            port=int(os.environ.get("PORT", "3001")),
            device_api_key=os.environ.get("DEVICE_API_KEY") or None,

            gateway_ws_url=os.environ.get("GATEWAY_WS_URL", "ws://localhost:18789"),
            gateway_token=os.environ.get("GATEWAY_TOKEN", ""),
            gateway_session_key=os.environ.get("GATEWAY_SESSION_KEY", "agent:main:main"),
            agent_name=os.environ.get("AGENT_NAME", "Hex"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )
