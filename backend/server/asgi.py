"""
ASGI entry point.

Used by uvicorn / gunicorn:

    uvicorn server.asgi:app

.env values are loaded before the config is read; variables already set
in the environment win.
"""

from dotenv import load_dotenv

load_dotenv(override=False)

from config import AppConfig  # pylint: disable=wrong-import-position
from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app(AppConfig.load_from_env())
