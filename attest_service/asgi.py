"""ASGI entry point: uvicorn attest_service.asgi:app"""

from .config import LOG_JSON, LOG_LEVEL
from .logging_config import configure_logging
from .main import create_app

configure_logging(LOG_LEVEL, json_format=LOG_JSON)
app = create_app()
