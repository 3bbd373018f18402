"""Tests for logging setup."""

import logging

import pytest

from membar.logs import configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_log_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "membar.log"
    configure_logging("INFO", log_file)

    logging.getLogger("membar.test").info("hello from the monitor")
    for handler in restore_root_logger.handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "[membar.test] INFO: hello from the monitor" in text


def test_quiet_without_file_discards(restore_root_logger):
    configure_logging("DEBUG", quiet=True)

    assert restore_root_logger.level == logging.DEBUG
    assert all(isinstance(h, logging.NullHandler) for h in restore_root_logger.handlers)
