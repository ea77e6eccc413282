import logging
import logging.handlers
import os
import json
from typing import Any, Dict

# Log file lives next to this module unless APEX_LOG_FILE points elsewhere
LOG_FILE = os.environ.get(
    "APEX_LOG_FILE",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'apex.log'),
)

# 10 MB per file, 3 rotated backups
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 3

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s (%(threadName)s): %(message)s',
    handlers=[
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding='utf-8'
        ),
        logging.StreamHandler()
    ]
)

# pyserial is chatty at DEBUG on some platforms
logging.getLogger("serial").setLevel(logging.WARNING)


def purge_log() -> None:
    """Truncate the log file."""
    with open(LOG_FILE, "w", encoding="utf-8"):
        pass


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)


def set_level(level: str) -> None:
    """Change the root level at runtime, e.g. set_level("DEBUG") from the CLI."""
    logging.getLogger().setLevel(level.upper())


def log_json(logger: logging.Logger, level: int, payload: Dict[str, Any]) -> None:
    """
    Helper to emit one *single-line* JSON object at the chosen log level.
    """
    logger.log(level, json.dumps(payload, separators=(",", ":")))
