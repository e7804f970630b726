"""
ASGI entry point for the bridge.

    uvicorn server.asgi:app --app-dir backend --port 3001

.env is loaded before the app factory reads the environment.
"""

from dotenv import load_dotenv

load_dotenv()

from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app()
