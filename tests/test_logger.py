"""Unit tests for logger utility."""

import logging

import pytest

from playlist_mirror.utils.logger import LOGGER_NAME, get_logger, setup_logger


@pytest.fixture(autouse=True)
def no_debug(monkeypatch):
    monkeypatch.delenv("DEBUG", raising=False)


@pytest.fixture
def fresh_logger():
    """Yield a logger name and drop its handlers afterwards."""
    names = []

    def make(name):
        names.append(name)
        return name

    yield make

    for name in names:
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()


def console_handlers(logger):
    return [
        h for h in logger.handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]


class TestLogger:
    """Test cases for logger utility."""

    def test_setup_logger_console_only(self, fresh_logger):
        logger = setup_logger(fresh_logger("pm_console"))

        assert logger.level == logging.INFO
        assert len(console_handlers(logger)) == 1
        assert not any(isinstance(h, logging.FileHandler) for h in logger.handlers)

    def test_setup_logger_with_file(self, fresh_logger, tmp_path):
        """Test that the file handler records DEBUG with function and line."""
        log_file = tmp_path / "sync_logs" / "sync.log"
        logger = setup_logger(fresh_logger("pm_file"), str(log_file))

        logger.debug("matching detail")
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert console_handlers(logger)[0].level == logging.INFO
        content = log_file.read_text(encoding='utf-8')
        assert "matching detail" in content
        assert "test_setup_logger_with_file" in content

    def test_setup_logger_no_duplicate_handlers(self, fresh_logger):
        name = fresh_logger("pm_no_dup")
        first = setup_logger(name)
        handler_count = len(first.handlers)

        second = setup_logger(name)

        assert first is second
        assert len(second.handlers) == handler_count

    def test_debug_environment(self, fresh_logger, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")

        logger = get_logger(fresh_logger("pm_debug"))

        assert logger.level == logging.DEBUG
        assert console_handlers(logger)[0].level == logging.DEBUG

    def test_get_logger_default_name(self, fresh_logger):
        logger = get_logger(fresh_logger(LOGGER_NAME))

        assert logger.name == "playlist_mirror"
        assert len(logger.handlers) >= 1

    def test_get_logger_reuses_handlers(self, fresh_logger):
        name = fresh_logger("pm_reuse")
        get_logger(name)

        logger = get_logger(name)

        assert len(logger.handlers) == 1
