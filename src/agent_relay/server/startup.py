"""Process startup utilities: structured logging, .env loading, banner.

- JSON log records to a rotating file, human-readable lines to console
- ``KEY=value`` loading from .env files without overriding the environment
- Version, bind address and adapter summary at startup

All paths are constructed from conventions.py constants.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agent_relay import __version__, conventions

logger = logging.getLogger(__name__)


def log_file_path() -> Path:
    """Return the relay log file path, constructed from conventions."""
    return (
        Path(conventions.RELAY_HOME).expanduser()
        / conventions.SERVER_DIR
        / conventions.SERVER_LOG_FILE
    )


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured file logging."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(
    log_file: Path | None = None, level: int | str = logging.INFO
) -> None:
    """Configure logging: JSON to a rotating file, readable text to console.

    Args:
        log_file: Path for the JSON log file. Uses convention default if None.
        level: Logging level (number or name) for both handlers.
    """
    if log_file is None:
        log_file = log_file_path()

    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        str(log_file), maxBytes=10 * 1024 * 1024, backupCount=3
    )
    file_handler.setFormatter(JSONFormatter())
    root.addHandler(file_handler)

    # httpx logs every request URL at INFO, which includes bot tokens
    logging.getLogger("httpx").setLevel(logging.WARNING)


def load_env_file(env_file: Path | None = None) -> list[str]:
    """Load ``KEY=value`` lines from a .env file into the environment.

    Existing environment variables take precedence. Comments and blank
    lines are skipped; matching surrounding quotes are stripped.

    Returns:
        Names of the variables that were set.
    """
    if env_file is None:
        env_file = Path(conventions.RELAY_HOME).expanduser() / conventions.ENV_FILENAME
    if not env_file.exists():
        return []

    loaded: list[str] = []
    try:
        lines = env_file.read_text().splitlines()
    except OSError:
        logger.warning("Could not read %s", env_file, exc_info=True)
        return []

    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        if key and key not in os.environ:
            os.environ[key] = value
            loaded.append(key)
    return loaded


def log_startup_info(
    *,
    host: str,
    port: int,
    adapters: list[str],
    workspace_root: str,
    logger: logging.Logger,
) -> None:
    """Log version, bind address, workspace root and configured adapters."""
    logger.info("Agent Relay v%s", __version__)
    logger.info("Admin API: %s:%d", host, port)
    logger.info("Workspace root: %s", workspace_root)
    if adapters:
        logger.info("Adapters: %s", ", ".join(adapters))
    else:
        logger.info("No chat adapters configured")
