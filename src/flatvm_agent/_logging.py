"""Logging for flatvm-agent.

Modules log through ``get_logger(__name__)`` and pass the channel side,
request id or path as ``extra={...}``. The package is silent by default (a
NullHandler on "flatvm_agent"); FLATVM_AGENT_LOG_LEVEL sets the level at
import time, and the CLI calls configure_logging() to get lines such as:

    DEBUG [2026-10-19 10:02:54] flatvm_agent.dispatcher - Agent channel closed [channel=host]

Records go through a bounded queue to a listener thread, so a stalled
terminal never blocks the event loop reading the agent connection. When the
queue is full, records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "flatvm_agent"

_LINE_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_QUEUE_SIZE = 1024

# Attributes every LogRecord has; anything else came from extra={...}
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


def _env_level() -> int | None:
    name = os.environ.get("FLATVM_AGENT_LOG_LEVEL", "").strip().upper()
    return logging.getLevelNamesMapping().get(name) or None


_package_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_package_logger.addHandler(logging.NullHandler())
if (_level := _env_level()) is not None:
    _package_logger.setLevel(_level)


class _FieldsFormatter(logging.Formatter):
    """Append a record's extra fields to the line as ``[key=value ...]``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = " ".join(f"{key}={value}" for key, value in record.__dict__.items() if key not in _RECORD_ATTRS)
        return f"{line} [{fields}]" if fields else line


class _EchoHandler(logging.Handler):
    """Terminal sink of the listener thread: dimmed text on stderr."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except RecursionError:
            raise
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """QueueHandler that discards records instead of waiting on a full queue."""

    def __init__(self, listener_target: logging.Handler) -> None:
        super().__init__(queue.Queue(maxsize=_QUEUE_SIZE))
        self.listener = logging.handlers.QueueListener(self.queue, listener_target)
        self.listener.start()

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Print package logs on stderr. Used by the CLI.

    The stderr handler is installed once; later calls only change the level.

    Args:
        level: Overrides FLATVM_AGENT_LOG_LEVEL
        quiet: Errors only, regardless of ``level``
    """
    if not any(isinstance(h, _DroppingQueueHandler) for h in _package_logger.handlers):
        sink = _EchoHandler()
        sink.setFormatter(_FieldsFormatter(fmt=_LINE_FORMAT, datefmt=_TIME_FORMAT))
        _package_logger.addHandler(_DroppingQueueHandler(sink))

    if quiet:
        _package_logger.setLevel(logging.ERROR)
    elif level is not None:
        _package_logger.setLevel(level)
