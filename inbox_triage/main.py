"""
Engine startup: logging configuration driven by settings.
"""

import threading

from inbox_triage.config import Settings, settings
from inbox_triage.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

_bootstrap_lock = threading.Lock()
_bootstrapped = False


def resolve_log_level(config: Settings = settings) -> str:
    """``debug`` forces DEBUG; otherwise ``LOG_LEVEL``."""
    return "DEBUG" if config.debug else config.LOG_LEVEL.upper()


def bootstrap(config: Settings = settings, *, force: bool = False) -> bool:
    """
    Configure logging once per process.

    Returns:
        True when this call configured logging, False when it was already done
    """
    global _bootstrapped
    with _bootstrap_lock:
        if _bootstrapped and not force:
            return False
        setup_logging(log_level=resolve_log_level(config))
        _bootstrapped = True

    logger.info(
        "Triage engine starting",
        environment=config.environment,
        debug=config.debug,
        log_level=resolve_log_level(config),
    )
    return True
