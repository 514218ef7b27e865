"""
Logging setup for batch runs.

Every graphkeeper module logs through logging.getLogger(__name__), so
configuring the "graphkeeper" logger once (BatchOrchestrator.from_config does
this from GK_LOG_LEVEL / GK_LOG_FILE) covers the whole engine. Chatty client
libraries used during a batch are held at WARNING so per-call HTTP and model
loading messages do not drown out resolution logs.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

BATCH_LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

QUIET_LIBRARIES = ("httpx", "anthropic", "openai", "sentence_transformers", "asyncpg")


def _parse_level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    return level


def setup_logger(
    name: str = "graphkeeper",
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    quiet_libraries: Sequence[str] = QUIET_LIBRARIES,
) -> logging.Logger:
    """
    Attach stderr (and optionally file) handlers to the engine logger.

    Calling it again replaces the handlers, so repeated from_config() calls
    do not duplicate output. The log file is appended to across batches.

    Args:
        name: Logger to configure
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Also write to this file (parent directories are created)
        quiet_libraries: Third-party loggers capped at WARNING

    Raises:
        ValueError: If log_level is not a logging level name
    """
    level = _parse_level(log_level)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(BATCH_LOG_FORMAT)
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, mode="a", encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for library in quiet_libraries:
        logging.getLogger(library).setLevel(max(level, logging.WARNING))
    return logger
