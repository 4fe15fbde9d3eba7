"""Server and CLI configuration from environment (optionally a .env file)."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent

# Load .env before any configuration is read
load_dotenv(str(ROOT_DIR / ".env"))

DATA_DIR = Path(os.environ.get("NEURALLOG_DATA_DIR", str(ROOT_DIR / "data")))
STORAGE_PATH = DATA_DIR / "storage.db"
DATABASE_URL = os.environ.get("NEURALLOG_DATABASE_URL", f"sqlite:///{DATA_DIR / 'neurallog.db'}")

LOG_LEVEL = os.environ.get("NEURALLOG_LOG_LEVEL", "INFO").upper()

# Request limits
MAX_SEARCH_TOKENS = int(os.environ.get("NEURALLOG_MAX_SEARCH_TOKENS", 256))
MAX_ENTRY_TOKENS = int(os.environ.get("NEURALLOG_MAX_ENTRY_TOKENS", 4096))


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
