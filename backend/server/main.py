"""
Process entry point.

    python -m server.main        (from backend/)
    g1-bridge                    (installed console script)
"""

from __future__ import annotations

import uvicorn
from dotenv import load_dotenv

from config import AppConfig


def run() -> None:
    load_dotenv()
    config = AppConfig.load_from_env()
    uvicorn.run(
        "server.asgi:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        reload=config.env == "dev",
    )


if __name__ == "__main__":
    run()
