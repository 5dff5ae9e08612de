from __future__ import annotations

import logging
import sys

_initialized = False


def setup_logging(level: str = "INFO") -> None:
    """Send ``claude_jobs`` and ``app`` logs to stderr. Safe to call more than once."""
    global _initialized
    if _initialized:
        return
    _initialized = True

    resolved = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    for name in ("claude_jobs", "app"):
        logger = logging.getLogger(name)
        logger.setLevel(resolved)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.propagate = False

    # APScheduler logs every job submission at INFO.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.captureWarnings(True)
