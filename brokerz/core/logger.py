"""
Centralized logger configuration for brokerz.

By default every module logs through Python's standard logging under the
'brokerz' namespace. Applications may plug in their own logger instead.

Usage:
    from brokerz.core.logger import get_logger
    logger = get_logger(__name__)
    logger.info("Connected")

    # structlog, loguru, ...
    from brokerz.core.logger import set_logger
    set_logger(structlog.get_logger())

Module loggers are created at import time, so get_logger() returns a
BrokerLogger that looks up the active backend on every call. A logger
installed with set_logger() later still receives every record.
"""

import logging
from typing import Any

_custom_logger: Any = None


def set_logger(logger: Any) -> None:
    """
    Set a custom logger for all brokerz components.

    The object must provide debug/info/warning/error/exception/critical
    methods. Pass None to go back to standard logging.
    """
    global _custom_logger
    _custom_logger = logger


def _standard_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger


class BrokerLogger:
    """Named logger forwarding to the custom logger when one is set."""

    def __init__(self, name: str):
        self.name = name

    @property
    def backend(self) -> Any:
        if _custom_logger is not None:
            return _custom_logger
        return _standard_logger(self.name)

    def _log(self, level: str, msg: Any, args: tuple, kwargs: dict[str, Any]) -> None:
        target = self.backend
        if isinstance(target, logging.Logger):
            # Report the caller's frame, not this wrapper's.
            kwargs.setdefault("stacklevel", 3)
        getattr(target, level)(msg, *args, **kwargs)

    def debug(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._log("debug", msg, args, kwargs)

    def info(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._log("info", msg, args, kwargs)

    def warning(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._log("warning", msg, args, kwargs)

    def error(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._log("error", msg, args, kwargs)

    def exception(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._log("exception", msg, args, kwargs)

    def critical(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._log("critical", msg, args, kwargs)

    def __repr__(self) -> str:
        return f"BrokerLogger({self.name!r})"


def get_logger(name: str = "brokerz") -> BrokerLogger:
    """
    Get a logger for a brokerz module.

    Records go to the custom logger installed with set_logger(), or to the
    standard logger with the given name when none is installed.
    """
    return BrokerLogger(name)


def configure_default_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    format_string: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
) -> None:
    """
    Configure console logging for the 'brokerz' namespace.

    Args:
        level: Logging level (default: INFO)
        json_format: Emit one JSON object per record (BrokerJsonFormatter)
        format_string: Format used when json_format is False
    """
    handler = logging.StreamHandler()
    if json_format:
        from brokerz.monitoring.logging import BrokerJsonFormatter

        handler.setFormatter(BrokerJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(format_string))

    root = logging.getLogger("brokerz")
    root.setLevel(level)
    root.handlers = [h for h in root.handlers if not isinstance(h, logging.StreamHandler)]
    root.addHandler(handler)
