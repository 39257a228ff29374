"""
Tests for logging setup — levels, formats, optional file output.
"""

import logging
from pathlib import Path

import pytest

from kegworks.core.errors import ConfigError
from kegworks.core.observability.logging_config import _parse_level, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestParseLevel:
    @pytest.mark.parametrize("name,expected", [
        ("debug", logging.DEBUG),
        ("INFO", logging.INFO),
        ("error", logging.ERROR),
        (None, logging.WARNING),
        ("", logging.WARNING),
        ("shouting", logging.WARNING),
    ])
    def test_names(self, name, expected):
        assert _parse_level(name) == expected


class TestSetupLogging:
    def test_single_console_handler(self):
        setup_logging("INFO")
        setup_logging("INFO")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.INFO

    def test_debug_format_names_thread(self):
        setup_logging("DEBUG")
        fmt = logging.getLogger().handlers[0].formatter._fmt
        assert "%(threadName)s" in fmt

    def test_log_file(self, tmp_path: Path):
        log_file = tmp_path / "kegworks.log"
        setup_logging("WARNING", log_file=str(log_file), log_file_level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

        logging.getLogger("kegworks.test").debug("only in the file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "only in the file" in log_file.read_text()

    def test_log_file_in_missing_directory(self, tmp_path: Path):
        before = list(logging.getLogger().handlers)
        with pytest.raises(ConfigError, match="KEG_LOG_FILE") as exc:
            setup_logging("INFO", log_file=str(tmp_path / "missing" / "kegworks.log"))
        assert exc.value.exit_code == 11
        assert logging.getLogger().handlers == before

    def test_log_file_home_expanded(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        setup_logging("INFO", log_file="~/kegworks.log")
        logging.getLogger("kegworks.test").info("written")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "written" in (tmp_path / "kegworks.log").read_text()
