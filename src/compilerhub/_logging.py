"""Centralized logging for compilerhub.

Library logging rules (Python logging HOWTO, "Configuring Logging for a Library"):
- The library root logger only gets a NullHandler
- Output handlers belong to the application (or the ``chub`` CLI)
- COMPILERHUB_LOG_LEVEL sets the level without any code
- configure_logging() is the single opt-in for CLI entry points

CLI output format:
    WARNING [2026-02-25 10:02:54] compilerhub.sandbox - message (job=3f2a... stage=codegen)

Modules log job and stage ids through ``extra=``. The CLI formatter appends
the ones present so interleaved lines from concurrent jobs can be told apart.

Non-blocking output:
    Records go through a bounded queue to a QueueListener thread that writes
    them with click.echo(err=True). Sandbox monitors and stage drivers log
    from the event loop; a slow or blocked terminal must never stall them.
    When the queue is full, records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "compilerhub"

# Keeps "No handlers could be found" out of applications that never
# configure logging
logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# COMPILERHUB_LOG_LEVEL=DEBUG|INFO|WARNING|ERROR
_env_level = os.environ.get("COMPILERHUB_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and unknown names (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# extra= keys shown on CLI lines, in display order
_CONTEXT_KEYS: tuple[tuple[str, str], ...] = (
    ("job_id", "job"),
    ("stage", "stage"),
    ("context_id", "ctx"),
)

# Enough for a burst of stage logs from every concurrent job, small enough
# to bound memory when stderr stops draining
_QUEUE_CAPACITY = 4096


class _ContextFormatter(logging.Formatter):
    """Appends the job, stage and sandbox ids a record carries in ``extra=``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{label}={value}"
            for key, label in _CONTEXT_KEYS
            if (value := getattr(record, key, None)) not in (None, "")
        ]
        if not pairs:
            return line
        return f"{line} ({' '.join(pairs)})"


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr through click.echo (dim style).

    Runs on the QueueListener thread. click.echo strips ANSI codes when
    stderr is not a TTY, so piped CLI output stays plain.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass  # stderr buffer full, drop the record
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """QueueHandler that drops records instead of blocking when the queue is full."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same-process queue: keep the record as is so the formatter still
        # sees its extra= attributes
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger in the compilerhub hierarchy (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Install the stderr handler on the library logger and set its level.

    Idempotent: a second call only adjusts the level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: Only show errors. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    # One handler per process; the CLI calls this once per invocation but
    # tests invoke the CLI many times in the same interpreter
    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        # setLevel raises ValueError for unknown level names
        lib_logger.setLevel(level)
