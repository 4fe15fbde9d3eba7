"""ASGI entrypoint: FastAPI app over SQLite storage in the configured data directory."""
from .api import create_app
from .config import STORAGE_PATH, configure_logging
from .server import LogServer
from .storage import SqliteStorage

configure_logging()

app = create_app(LogServer(SqliteStorage(STORAGE_PATH)))
