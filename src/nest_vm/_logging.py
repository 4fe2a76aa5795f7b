"""Logging for nest-vm.

The library only attaches a NullHandler to the ``nest_vm`` logger; output is
the application's choice. NEST_VM_LOG_LEVEL (e.g. "DEBUG") sets the level.

Log calls carry structured context through ``extra`` (vm_name, step, pid,
...). The CLI handler installed by configure_logging() renders that context
after the message:

    WARNING [2026-02-25 10:02:54] nest_vm.vm_manager - VM ignored SIGTERM, force killing (vm_name=web pids=[4012])

Records go through a bounded queue drained by a listener thread, so a slow
stderr never stalls a start or stop in progress. Records that do not fit in
the queue are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "nest_vm"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_level_name = os.environ.get("NEST_VM_LOG_LEVEL", "").strip().upper()
if _level_name in logging.getLevelNamesMapping() and _level_name != "NOTSET":
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_level_name)

_CLI_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_CLI_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_SIZE = 1024

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


def record_context(record: logging.LogRecord) -> dict[str, object]:
    """The ``extra={...}`` fields attached to ``record``, in insertion order."""
    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}


class ContextFormatter(logging.Formatter):
    """Appends ``(key=value ...)`` for the record's structured context; None values are omitted."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = " ".join(f"{key}={value}" for key, value in record_context(record).items() if value is not None)
        return f"{line} ({fields})" if fields else line


class _StderrHandler(logging.Handler):
    """Writes dimmed lines to stderr with click.echo (ANSI stripped off a TTY)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ContextFormatter(fmt=_CLI_FORMAT, datefmt=_CLI_DATEFMT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Enqueues records without blocking; a QueueListener thread writes them out."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_SIZE)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _StderrHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener formats the original record, extras included
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a nest_vm module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send nest_vm logs to stderr. Safe to call more than once.

    Args:
        level: Log level; overrides NEST_VM_LOG_LEVEL
        quiet: Only errors (wins over ``level``)
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not any(isinstance(handler, _QueuedStderrHandler) for handler in lib_logger.handlers):
        lib_logger.addHandler(_QueuedStderrHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
