"""Tests for the console logging setup."""

import logging
import logging.handlers
from collections.abc import Iterator

import pytest

from qemu_micro_env._logging import (
    LIBRARY_LOGGER_NAME,
    ExtraFieldsFormatter,
    configure_logging,
    flush_logging,
    get_logger,
)


@pytest.fixture
def package_logger() -> Iterator[logging.Logger]:
    """The package logger, detached and back at its old level afterwards."""
    logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    level = logger.level
    yield logger
    flush_logging()
    logger.setLevel(level)


def _queued(logger: logging.Logger) -> list[logging.Handler]:
    return [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]


class TestExtraFieldsFormatter:
    """Tests for the key=value suffix."""

    def test_extra_fields_appended(self) -> None:
        """Fields passed as ``extra`` follow the message in order."""
        record = logging.LogRecord("qemu_micro_env.supervisor", logging.INFO, __file__, 1, "QEMU started", None, None)
        record.pid = 42
        record.arch = "x86_64"
        line = ExtraFieldsFormatter().format(record)
        assert line.startswith("INFO [")
        assert line.endswith("qemu_micro_env.supervisor - QEMU started pid=42 arch=x86_64")

    def test_no_extra(self) -> None:
        """A plain record has no trailing space."""
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "plain %s", ("msg",), None)
        assert ExtraFieldsFormatter().format(record).endswith("x - plain msg")


class TestConfigureLogging:
    """Tests for attaching and flushing the console handler."""

    def test_idempotent(self, package_logger: logging.Logger) -> None:
        """Repeated calls keep a single console handler."""
        configure_logging(level=logging.INFO)
        configure_logging(level=logging.DEBUG)
        assert len(_queued(package_logger)) == 1
        assert package_logger.level == logging.DEBUG

    def test_quiet_wins(self, package_logger: logging.Logger) -> None:
        """quiet raises the level to ERROR whatever level says."""
        configure_logging(level=logging.DEBUG, quiet=True)
        assert package_logger.level == logging.ERROR

    def test_flush_writes_backlog(self, package_logger: logging.Logger, capsys: pytest.CaptureFixture[str]) -> None:
        """Every record logged before flush_logging() is on stderr once it returns."""
        configure_logging(level=logging.INFO)
        logger = get_logger("qemu_micro_env.guest_init")
        for n in range(50):
            logger.info("Boot step", extra={"step": n})
        flush_logging()

        err = capsys.readouterr().err
        assert "Boot step step=0" in err
        assert "Boot step step=49" in err
        assert _queued(package_logger) == []

    def test_flush_without_handler(self, package_logger: logging.Logger) -> None:
        """Flushing before configure_logging() is a no-op."""
        flush_logging()
        assert _queued(package_logger) == []
