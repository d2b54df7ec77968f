"""Centralized logging for vbox-control.

Library logging conventions (Python docs, PEP 282):
- Attach NullHandler to library root logger
- Never add other handlers -- that's the application's job
- Support VBOX_CONTROL_LOG_LEVEL env var for level control
- Provide configure_logging() for CLI entry points

CLI output format (httpx convention):
    INFO [2026-02-25 10:02:54] vbox_control.lifecycle - message

Operation narration:
    Lifecycle operations narrate through OperationLog, a LoggerAdapter that
    tags every record with the machine name and mirrors the message to an
    optional caller-supplied sink (the host platform's per-build console,
    for example). Sink output is prefixed with "[VirtualBox] ".

References:
- https://docs.python.org/3/howto/logging.html#configuring-logging-for-a-library
- https://docs.python.org/3/library/logging.handlers.html#queuehandler
"""

from __future__ import annotations

import contextlib
import logging
import logging.handlers
import os
import queue
from collections.abc import Callable, MutableMapping
from typing import Any

import click

LIBRARY_LOGGER_NAME: str = "vbox_control"

SINK_PREFIX: str = "[VirtualBox] "

# NullHandler per Python library convention -- prevents
# "No handler found" warnings when consumers don't configure logging
logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor VBOX_CONTROL_LOG_LEVEL env var (e.g. "DEBUG", "WARNING", "ERROR")
_env_level = os.environ.get("VBOX_CONTROL_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Bounded queue capacity -- absorbs bursts from concurrent lifecycle
# operations without unbounded memory growth.
_QUEUE_CAPACITY = 4096

LogSink = Callable[[str], None]
"""Callable receiving one narrated line (host platform log sink)."""


class _ClickHandler(logging.Handler):
    """Target handler: writes to stderr via click.echo with dim styling.

    Runs on the QueueListener's daemon thread, never on the event loop.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass  # Stderr buffer full -- silently drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller.

    Records are enqueued via put_nowait() into a bounded FIFO.  A
    QueueListener daemon thread drains them to _ClickHandler.  When
    the queue is full, records are dropped.
    """

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Skip serialization -- same-process queue, no pickle needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All vbox_control modules should use this instead of logging.getLogger()
    directly for consistent logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for CLI / application entry points.

    Adds a _NonBlockingHandler if none exists (idempotent), then sets the
    log level.  Library consumers who configure their own handlers are
    unaffected.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR (suppress WARNING/INFO).
               Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)


class OperationLog(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Narrates one lifecycle operation on one machine.

    Every record gets ``extra={"machine": <name>}`` merged in. When a sink
    is given, the formatted message is also written to it with the
    ``[VirtualBox] `` prefix, regardless of the library log level, so the
    host platform's console shows the full narration.

    Sink failures are swallowed: narration must never break an operation.
    """

    def __init__(self, logger: logging.Logger, machine: str, sink: LogSink | None = None) -> None:
        super().__init__(logger, {"machine": machine})
        self.machine = machine
        self._sink = sink

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        super().log(level, msg, *args, **kwargs)
        if self._sink is None:
            return
        try:
            text = str(msg) % args if args else str(msg)
            self._sink(f"{SINK_PREFIX}{text}")
        except Exception:  # noqa: BLE001 - narration is best effort
            self.logger.debug("Log sink raised (ignored)", exc_info=True)
