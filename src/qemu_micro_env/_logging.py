"""Logging for the launcher and for the guest's init and agent.

Modules log through ``get_logger(__name__)`` with structured ``extra``
fields; the package logger carries only a NullHandler until an entry
point calls configure_logging(). QEMU_MICRO_ENV_LOG_LEVEL sets the
starting level.

Console line:
    WARNING [2026-02-25 10:02:54] qemu_micro_env.socket_tunnel - ssh exited guest_path=/run/docker.sock

Emitting never blocks: records go into a bounded queue and a listener
thread writes them to stderr with click. On the guest, stderr is the
serial console, and PID 1 must call flush_logging() before reboot(2) or
the queued tail of the boot log is lost.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qemu_micro_env"

_LINE_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_QUEUED_RECORDS = 4096

# Attributes every LogRecord has; anything else came from ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def _level_from_env() -> int | None:
    name = os.environ.get("QEMU_MICRO_ENV_LOG_LEVEL", "").strip().upper()
    return logging.getLevelNamesMapping().get(name) or None


_package_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_package_logger.addHandler(logging.NullHandler())
if (_initial_level := _level_from_env()) is not None:
    _package_logger.setLevel(_initial_level)


class ExtraFieldsFormatter(logging.Formatter):
    """Standard line plus ``key=value`` for each ``extra`` field, in insertion order."""

    def __init__(self) -> None:
        super().__init__(fmt=_LINE_FORMAT, datefmt=_DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = [f"{key}={value}" for key, value in vars(record).items() if key not in _RECORD_ATTRS]
        if fields:
            line = f"{line} {' '.join(fields)}"
        return line


class _ConsoleHandler(logging.Handler):
    """Listener-side handler writing dimmed lines to stderr."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ExtraFieldsFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # console can't keep up, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _DrainingListener(logging.handlers.QueueListener):
    def enqueue_sentinel(self) -> None:
        # Blocking put: a full queue still gets its stop marker once the thread catches up
        self.queue.put(self._sentinel)


class _QueuedConsoleHandler(logging.handlers.QueueHandler):
    """Caller-side handler: put_nowait into a bounded queue, drop when full."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_MAX_QUEUED_RECORDS)
        super().__init__(records)
        self.listener = _DrainingListener(records, _ConsoleHandler(), respect_handler_level=False)
        self.listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Attach the console handler once and set the package level.

    Args:
        level: Explicit level; wins over QEMU_MICRO_ENV_LOG_LEVEL.
        quiet: Only errors. Wins over ``level``.
    """
    if not any(isinstance(h, _QueuedConsoleHandler) for h in _package_logger.handlers):
        _package_logger.addHandler(_QueuedConsoleHandler())

    if quiet:
        _package_logger.setLevel(logging.ERROR)
    elif level is not None:
        _package_logger.setLevel(level)


def flush_logging() -> None:
    """Write out every queued record and detach the console handler.

    Blocks until the listener thread has emitted the backlog. Logging
    after this goes nowhere until configure_logging() is called again.
    """
    for handler in list(_package_logger.handlers):
        if isinstance(handler, _QueuedConsoleHandler):
            _package_logger.removeHandler(handler)
            handler.close()
