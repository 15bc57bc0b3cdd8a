"""
Logging configuration using loguru.

Console and file sinks share one gateway-aware format: every record shows
the ``request_id`` of the queued request being executed, or ``-`` outside
one.  The request queue binds it with ``logger.contextualize``.
"""

import sys

from loguru import logger

NO_REQUEST = "-"

CONSOLE_FORMAT = "<level>[{level.name}]</level> <cyan>{extra[request_id]}</cyan> {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {extra[request_id]} | {name}:{function} | {message}"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    fmt: str = CONSOLE_FORMAT,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """
    Configure loguru for the gateway: stderr plus an optional rotating file.

    Args:
        level: Minimum log level (TRACE, DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, only logs to stderr.
        fmt: Loguru format string for the console sink; may use
            ``{extra[request_id]}``.
        rotation: Log file rotation size.
        retention: How long to keep rotated logs.
    """
    logger.remove()
    logger.configure(extra={"request_id": NO_REQUEST})
    logger.add(sys.stderr, level=level.upper(), format=fmt)

    if log_file:
        logger.add(log_file, level=level.upper(), format=FILE_FORMAT, rotation=rotation, retention=retention)
