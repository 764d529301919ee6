"""Tests for the library logging setup.

No mocks - real loggers and records; handlers added by a test are closed.
"""

import logging
from collections.abc import Iterator

import pytest

from compilerhub._logging import (
    _DATEFMT,
    _FMT,
    LIBRARY_LOGGER_NAME,
    _ContextFormatter,
    _NonBlockingHandler,
    configure_logging,
    get_logger,
)


@pytest.fixture
def lib_logger() -> Iterator[logging.Logger]:
    """Library logger restored to its handlers and level after the test."""
    logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("compilerhub.pipeline", logging.INFO, __file__, 1, "Stage finished", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ============================================================================
# Library defaults
# ============================================================================


class TestLibraryLogger:
    def test_null_handler_installed(self) -> None:
        handlers = logging.getLogger(LIBRARY_LOGGER_NAME).handlers
        assert any(isinstance(h, logging.NullHandler) for h in handlers)

    def test_module_loggers_are_children(self) -> None:
        assert get_logger("compilerhub.sandbox").parent is logging.getLogger(LIBRARY_LOGGER_NAME)


# ============================================================================
# CLI formatter
# ============================================================================


class TestContextFormatter:
    def test_plain_record(self) -> None:
        line = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT).format(_record())
        assert line.startswith("INFO [")
        assert line.endswith("compilerhub.pipeline - Stage finished")

    def test_job_and_stage_appended(self) -> None:
        line = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT).format(_record(stage="codegen", job_id="abc123"))
        assert line.endswith("Stage finished (job=abc123 stage=codegen)")

    def test_sandbox_context(self) -> None:
        line = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT).format(_record(context_id="abc123:lex"))
        assert line.endswith("(ctx=abc123:lex)")

    def test_empty_values_skipped(self) -> None:
        line = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT).format(_record(job_id="", stage=None))
        assert line.endswith("Stage finished")


# ============================================================================
# configure_logging
# ============================================================================


class TestConfigureLogging:
    def test_idempotent(self, lib_logger: logging.Logger) -> None:
        configure_logging(level="INFO")
        configure_logging(level="DEBUG")
        assert sum(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers) == 1
        assert lib_logger.level == logging.DEBUG

    def test_quiet_wins_over_level(self, lib_logger: logging.Logger) -> None:
        configure_logging(level="DEBUG", quiet=True)
        assert lib_logger.level == logging.ERROR

    def test_unknown_level_rejected(self, lib_logger: logging.Logger) -> None:
        with pytest.raises(ValueError):
            configure_logging(level="CHATTY")
