"""
Error taxonomy and logging setup for mcsocks.

Every per-connection failure is a ForwarderError subclass so the supervisor can
log it with context and drop only that connection. ListenerFatalError is the
one error that is allowed to end the process.
"""

import json
import logging
import logging.handlers
import os
import re
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger("mcsocks")


_IPV4 = re.compile(r"(?:[0-9]{1,3}\.){3}[0-9]{1,3}")


def _redact(text: str) -> str:
    # MCSOCKS_REDACT=1 masks IPv4 addresses (client addresses end up in every line).
    if os.environ.get("MCSOCKS_REDACT", "0") == "1":
        return _IPV4.sub("***.***.***.***", text)
    return text


class ColoredFormatter(logging.Formatter):
    """Colored console formatter with millisecond timestamps."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record):
        record.timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]
        raw = _redact(super().format(record))
        return f"{color}{record.timestamp} {record.levelname:8} {raw}{reset}"


class ContextFormatter(logging.Formatter):
    """Formats each record as one JSON object per line, with the ``context`` extra if present."""

    def format(self, record):
        context = getattr(record, "context", None)
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
            "context": context if isinstance(context, dict) else {},
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return _redact(json.dumps(entry, default=str))


def setup_logging(log_level: str = "INFO", log_file: str | None = None) -> logging.Logger:
    """
    Set up the ``mcsocks`` logger with a colored console handler and,
    when ``log_file`` is given, a rotating JSON-lines file handler.

    Calling it again replaces the handlers instead of stacking them.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger.setLevel(level)

    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(ColoredFormatter("%(name)s: %(message)s"))
    logger.addHandler(console)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(ContextFormatter())
        logger.addHandler(file_handler)

    return logger


def log_with_context(message: str, level: str = "info", context: dict[str, Any] | None = None):
    """
    Log with additional context.
    """
    extra = {"context": context or {}}
    getattr(logger, level)(message, extra=extra)


class ErrorType(Enum):
    RESOLUTION = "resolution"
    CONNECT = "connect"
    RELAY = "relay"
    LISTENER = "listener"
    CONFIG = "config"


class ForwarderError(Exception):
    def __init__(self, message: str, error_type: ErrorType, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.context = context or {}

    @property
    def kind(self) -> str:
        return type(self).__name__


class ResolutionFailed(ForwarderError):
    """The DNS resolver itself failed (timeout, no nameservers, bad name)."""

    def __init__(self, domain: str, cause: BaseException | str):
        super().__init__(
            f"DNS resolution failed for {domain}: {cause}",
            ErrorType.RESOLUTION,
            {"domain": domain},
        )
        self.domain = domain
        self.cause = cause


class NoRecordFound(ForwarderError):
    """Neither an SRV nor an A record exists for the domain."""

    def __init__(self, domain: str):
        super().__init__(f"No SRV or A record found for {domain}", ErrorType.RESOLUTION, {"domain": domain})
        self.domain = domain


class ConnectError(ForwarderError):
    """The SOCKS5 dial or handshake to the target failed."""

    def __init__(self, target: Any, cause: BaseException | str):
        super().__init__(
            f"Error connecting to {target}: {cause}",
            ErrorType.CONNECT,
            {"target": str(target)},
        )
        self.target = target
        self.cause = cause


class RelayError(ForwarderError):
    def __init__(self, cause: BaseException | str):
        super().__init__(f"Relay I/O error: {cause}", ErrorType.RELAY)
        self.cause = cause


class ListenerFatalError(ForwarderError):
    """Binding or accepting on the listening socket failed."""

    def __init__(self, address: Any, cause: BaseException | str):
        super().__init__(
            f"Listener on {address} failed: {cause}",
            ErrorType.LISTENER,
            {"listen": str(address)},
        )
        self.address = address
        self.cause = cause


class ConfigError(ForwarderError):
    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, ErrorType.CONFIG, context)
