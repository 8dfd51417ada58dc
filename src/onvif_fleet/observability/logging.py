"""Structured logging for onvif-fleet.

Module loggers accept keyword arguments as structured data:

    logger = get_logger(__name__)
    logger.info("Record admitted", endpoint="urn:uuid:1234", generation=3)

Values bound with LogContext are merged into every record emitted inside
the block; call-site keywords win over context values. Output is either
``key=value`` text or one JSON object per line, always on stderr unless
another stream is given, since the MCP server owns stdout.

Security Note:
    Discovery records come from the network and are untrusted. Pass them
    as keyword data, never formatted into the message:

    # SAFE
    logger.info("Device admitted", endpoint=probe.endpoint_address)

    # UNSAFE - a crafted scope string could forge log lines
    logger.info(f"Device admitted {probe.endpoint_address}")
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO, cast

#: Name of the package logger all module loggers hang off.
ROOT_LOGGER_NAME = "onvif_fleet"

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)


# =============================================================================
# Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger whose level methods take structured keyword data.

    The stdlib level methods forward unknown keywords to ``_log``; this
    class collects them, merges the active LogContext underneath and hands
    the result to the formatter as ``record.structured_data``.
    """

    if TYPE_CHECKING:

        def debug(
            self, msg: object, *args: Any, exc_info: Any = None, **kwargs: Any
        ) -> None: ...

        def info(
            self, msg: object, *args: Any, exc_info: Any = None, **kwargs: Any
        ) -> None: ...

        def warning(
            self, msg: object, *args: Any, exc_info: Any = None, **kwargs: Any
        ) -> None: ...

        def error(
            self, msg: object, *args: Any, exc_info: Any = None, **kwargs: Any
        ) -> None: ...

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: Mapping[str, object] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        merged = dict(extra or {})
        merged["structured_data"] = {**_log_context.get(), **kwargs}
        # One extra frame: this override sits between the caller and stdlib.
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=merged,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


# =============================================================================
# Formatters
# =============================================================================


def _format_value(value: Any) -> str:
    """Render one structured value for ``key=value`` output.

    None becomes ``null``, strings containing spaces are quoted, dicts
    and lists are JSON-encoded and anything else goes through str().
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        return f'"{value}"' if " " in value else value
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """Text formatter: ``<time> - <name> - <level> - <message> | k=v k=v``."""

    def __init__(self, fmt: str | None = None, datefmt: str | None = None) -> None:
        super().__init__(fmt or _TEXT_FORMAT, datefmt)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        data = getattr(record, "structured_data", None)
        if not data:
            return line
        return line + " | " + " ".join(f"{k}={_format_value(v)}" for k, v in data.items())


class JSONFormatter(logging.Formatter):
    """NDJSON formatter; structured data keys sit beside the fixed fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "structured_data", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# =============================================================================
# Context
# =============================================================================


class LogContext:
    """Bind structured values to every record logged inside a ``with`` block.

    Contexts nest; inner values shadow outer ones and are dropped again on
    exit. Backed by contextvars, so threads and tasks keep separate scopes.

    Usage:
        with LogContext(generation=3):
            logger.info("Probe sent")
            with LogContext(endpoint="urn:uuid:1"):
                logger.info("Admitted")  # carries generation and endpoint
    """

    def __init__(self, **values: Any) -> None:
        self._values = values
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __repr__(self) -> str:
        return f"LogContext({self._values!r})"

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**_log_context.get(), **self._values})
        return self

    def __exit__(self, *exc: object) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def _remove_handlers() -> None:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: TextIO | None = None,
    force: bool = False,
) -> None:
    """Attach the package handler to the ``onvif_fleet`` logger.

    Only the first call has an effect unless ``force`` is set, in which
    case the existing handler is replaced.

    Args:
        level: Minimum level, as a number or a name such as ``"DEBUG"``.
        json_format: Emit NDJSON instead of ``key=value`` text.
        stream: Destination, sys.stderr by default.
        force: Reconfigure even if logging is already set up.
    """
    global _configured

    with _config_lock:
        if force:
            _remove_handlers()
            _configured = False
        if _configured:
            return

        logging.setLoggerClass(StructuredLogger)
        handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
        handler.setFormatter(JSONFormatter() if json_format else StructuredFormatter())

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(level)
        root.addHandler(handler)
        root.propagate = False
        _configured = True


def reset_logging() -> None:
    """Remove the package handler; the next get_logger() sets it up again."""
    global _configured

    with _config_lock:
        _remove_handlers()
        _configured = False


def get_logger(name: str) -> StructuredLogger:
    """Return the structured logger for ``name`` (normally ``__name__``).

    Sets up default logging (INFO, text, stderr) on first use.
    """
    if not _configured:
        configure_logging()
    return cast(StructuredLogger, logging.getLogger(name))
