"""Structured logging for multicam-mcp.

Builds on the standard ``logging`` module with:
- Keyword arguments on log calls become structured key/value data
- Human-readable ``key=value`` output or one JSON object per line
- ``LogContext`` for ambient keys (device identity, capture session)

Security Note:
    Device replies are untrusted input. Pass device-supplied values as
    keyword arguments, never interpolated into the message text:

        # SAFE
        logger.warning("Device error", identity=identity, message=msg)

        # UNSAFE - a crafted reply could forge log lines
        logger.warning(f"Device {identity} said {msg}")

Example:
    logger = get_logger(__name__)
    logger.info("Session opened", identity="SN1234", state="connected")

    with LogContext(session_id="9f2c..."):
        logger.info("Capture dispatched", devices=4)

    configure_logging(json_format=True, force=True)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, TextIO, cast

#: Root logger name for the package.
ROOT_LOGGER = "multicam_mcp"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "multicam_log_context", default={}
)

# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept arbitrary keyword data.

    Keyword arguments are merged over the active ``LogContext`` and
    attached to the record as ``structured_data``.

    Usage:
        logger.info("Frame decoded", identity="SN1", bytes=48213)
    """

    def debug(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at DEBUG with structured data."""
        if self.isEnabledFor(logging.DEBUG):
            self._log_structured(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at INFO with structured data."""
        if self.isEnabledFor(logging.INFO):
            self._log_structured(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at WARNING with structured data."""
        if self.isEnabledFor(logging.WARNING):
            self._log_structured(logging.WARNING, msg, args, **kwargs)

    def error(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at ERROR with structured data."""
        if self.isEnabledFor(logging.ERROR):
            self._log_structured(logging.ERROR, msg, args, **kwargs)

    def critical(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at CRITICAL with structured data."""
        if self.isEnabledFor(logging.CRITICAL):
            self._log_structured(logging.CRITICAL, msg, args, **kwargs)

    def _log_structured(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any],
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Merge context and keyword data, then emit the record.

        Merge order is ``LogContext`` values first, explicit keyword
        arguments second, so a call can override an ambient key.

        Args:
            level: Numeric log level.
            msg: Message, may contain %-placeholders.
            args: Arguments for %-formatting.
            exc_info: Exception info as accepted by ``logging``.
            extra: Additional LogRecord attributes.
            stack_info: Include a stack trace.
            stacklevel: Caller frames to skip for source location.
            **kwargs: Structured data, e.g. ``identity``, ``elapsed_ms``.
        """
        structured = {**_log_context.get(), **kwargs}
        extra = dict(extra) if extra else {}
        extra["structured_data"] = structured
        self._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 2,
        )


# =============================================================================
# Formatters
# =============================================================================


def _format_value(value: Any) -> str:
    """Render one structured value for ``key=value`` output.

    None becomes ``null``, strings with spaces are quoted, containers
    are JSON encoded, bytes show their length only.
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        return f'"{value}"' if " " in value else value
    if isinstance(value, bytes | bytearray):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter.

    Format: ``timestamp - name - level - message | key=value key=value``
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        super().__init__(
            fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt
        )
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        structured = getattr(record, "structured_data", None)
        if not self.include_structured or not structured:
            return base
        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation.

    Keys: ``timestamp`` (UTC ISO 8601), ``level``, ``logger``,
    ``message``, optional ``exception``, plus every structured key at
    top level. Unserialisable values fall back to ``str()``; bytes are
    reduced to their length.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in getattr(record, "structured_data", {}).items():
            if isinstance(value, bytes | bytearray):
                value = {"bytes": len(value)}
            entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# =============================================================================
# Context Management
# =============================================================================


class LogContext:
    """Adds key/value pairs to every record logged inside the block.

    Backed by ``contextvars`` so values follow the current thread or
    task. Contexts nest; inner values override outer ones.

    Note:
        Worker threads started by a ``ThreadPoolExecutor`` do not inherit
        the submitting thread's context. Capture workers re-enter a
        ``LogContext`` themselves.

    Usage:
        with LogContext(session_id=result_id):
            with LogContext(identity="SN1"):
                logger.info("Dispatching")  # both keys present
    """

    def __init__(self, **kwargs: Any) -> None:
        self._kwargs = kwargs
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**_log_context.get(), **self._kwargs})
        return self

    def __exit__(self, *exc: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    def __repr__(self) -> str:
        return f"LogContext({self._kwargs!r})"


def current_context() -> dict[str, Any]:
    """Return a copy of the active logging context."""
    return dict(_log_context.get())


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: TextIO | None = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Install the package log handler.

    Idempotent: later calls are ignored unless ``force`` is True, which
    removes the existing handler first. Output goes to stderr by default
    because stdout carries the MCP stdio protocol.

    Args:
        level: Minimum level, as int or name (``"DEBUG"``).
        json_format: Emit NDJSON via ``JSONFormatter``.
        stream: Destination stream. Defaults to ``sys.stderr``.
        include_structured: Append ``key=value`` data in text mode.
        force: Reconfigure even if already configured.

    Example:
        >>> configure_logging(level="DEBUG", force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: TextIO | None = None,
    include_structured: bool = True,
) -> None:
    """Configure with the lock held."""
    global _configured
    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.addHandler(handler)
    root.propagate = False
    _configured = True


def _reset_logging_impl() -> None:
    """Reset with the lock held."""
    global _configured
    root = logging.getLogger(ROOT_LOGGER)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    _configured = False


def reset_logging() -> None:
    """Remove the package handler and mark logging unconfigured (tests)."""
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger, configuring defaults on first use.

    Args:
        name: Usually ``__name__``; must live under ``multicam_mcp`` to
            pick up the package handler.

    Returns:
        StructuredLogger accepting keyword data on every level method.

    Example:
        >>> logger = get_logger("multicam_mcp.devices.session")
        >>> logger.info("Opened", identity="SN1")
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    # setLoggerClass() in configuration guarantees the concrete type
    return cast(StructuredLogger, logging.getLogger(name))
