"""
Logging setup for the booking core.

Container runtimes (Docker, Kubernetes, Fly.io) stamp each line themselves,
so the formatter drops asctime there.

Levels:
- LOG_LEVEL sets the root level (default INFO)
- LOG_LEVELS overrides single loggers, e.g.
  "careslot.services.match_engine=DEBUG,asyncpg=INFO"

Usage:
    from careslot.utils.logging_config import configure_logging
    configure_logging()
"""
import logging
import os
import sys
from typing import Dict, Optional

IS_CONTAINERIZED = bool(
    os.environ.get('FLY_APP_NAME')
    or os.environ.get('KUBERNETES_SERVICE_HOST')
    or os.path.exists('/.dockerenv')
)

CONTAINER_FORMAT = "[%(name)s] %(levelname)s: %(message)s"
LOCAL_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty at INFO during every request or sweep tick
QUIET_LOGGERS = (
    'httpx',
    'httpcore',
    'hpack',
    'apscheduler.executors.default',
    'apscheduler.scheduler',
)


def _level(name: Optional[str], default: int = logging.INFO) -> int:
    if not name:
        return default
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default


def parse_level_overrides(value: Optional[str]) -> Dict[str, int]:
    """Parse 'logger=LEVEL,other=LEVEL'; malformed entries are skipped."""
    overrides = {}
    for item in (value or "").split(","):
        name, sep, level = item.partition("=")
        if not sep or not name.strip():
            continue
        overrides[name.strip()] = _level(level)
    return overrides


def configure_logging(level: Optional[int] = None, force: bool = False) -> None:
    """
    Install a stdout handler on the root logger.

    Args:
        level: Root level (default: LOG_LEVEL env var, else INFO)
        force: Replace handlers installed earlier (uvicorn --reload, tests)
    """
    root_logger = logging.getLogger()
    if root_logger.handlers and not force:
        return

    if force:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    if level is None:
        level = _level(os.environ.get('LOG_LEVEL'))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        CONTAINER_FORMAT if IS_CONTAINERIZED else LOCAL_FORMAT,
        datefmt=None if IS_CONTAINERIZED else DATE_FORMAT,
    ))
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name, override in parse_level_overrides(os.environ.get('LOG_LEVELS')).items():
        logging.getLogger(name).setLevel(override)
