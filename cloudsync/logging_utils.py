"""
Structured logging for sync cycles.

Usage:
    from cloudsync.logging_utils import structured_log

    structured_log("INFO", "sync_cycle_completed", pushed=3, pulled=0)
"""

import json
import logging
from datetime import datetime, timezone

logger = logging.getLogger("cloudsync.events")


def structured_log(level: str, event: str, **kwargs) -> None:
    """Emit one log line as JSON with the event name and a timestamp."""
    log_data = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **kwargs
    }

    message = json.dumps(log_data, default=str)

    if level == "DEBUG":
        logger.debug(message)
    elif level == "INFO":
        logger.info(message)
    elif level == "WARNING":
        logger.warning(message)
    elif level == "ERROR":
        logger.error(message)
    else:
        logger.info(message)


def configure_logging(level: int = logging.INFO) -> None:
    """Console logging for the command-line entry points."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
        ]
    )
