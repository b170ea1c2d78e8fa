"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

# market/trade_id are bound per position; "-" when a record carries neither
LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[market]}</magenta>#{extra[trade_id]} - "
    "<level>{message}</level>"
)


def setup_logging(
    log_file: Optional[str] = "guided_trading.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> None:
    """Configure structured logging for the guided trading engine.

    Args:
        log_file: Path to log file, or None to skip file logging
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to console as well
    """
    _logger.remove()
    _logger.configure(extra={"market": "-", "trade_id": "-"})

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            format=LOG_FORMAT,
            level=level,
            rotation="100 MB",
            retention="7 days",
        )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=LOG_FORMAT,
            level=level,
            colorize=True,
        )


def trade_logger(market: str, trade_id: Optional[int] = None):
    """Return a logger bound to one market/position."""
    return _logger.bind(market=market, trade_id=trade_id if trade_id is not None else "-")


logger = _logger
