"""
tests/unit/test_logger.py — Structured Logging Tests
"""

import json
import logging

import pytest
import structlog

from webot.observability.logger import bind_session, clear_session, get_logger, setup_logging


@pytest.fixture
def restore_logging():
    yield
    clear_session()
    for handler in logging.getLogger().handlers:
        handler.close()
    logging.basicConfig(handlers=[logging.NullHandler()], force=True)
    structlog.reset_defaults()


def _read_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestSetupLogging:
    def test_file_output_is_json_with_session_key(self, tmp_path, restore_logging):
        setup_logging(level="INFO", log_dir=tmp_path, console_output=False)
        bind_session("webchat-1234abcd")
        get_logger("webot.test").info("gateway.connected", url="ws://x")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = _read_lines(tmp_path / "webot.log")
        entry = next(line for line in lines if line["event"] == "gateway.connected")
        assert entry["url"] == "ws://x"
        assert entry["session_key"] == "webchat-1234abcd"
        assert entry["level"] == "info"

    def test_debug_forces_debug_level(self, tmp_path, restore_logging):
        setup_logging(level="WARNING", log_dir=tmp_path, console_output=False, debug=True)
        assert logging.getLogger().level == logging.DEBUG

    def test_level_respected_without_debug(self, tmp_path, restore_logging):
        setup_logging(level="WARNING", log_dir=tmp_path, console_output=False)
        assert logging.getLogger().level == logging.WARNING

    def test_noisy_libraries_quieted(self, restore_logging):
        setup_logging(level="DEBUG", log_dir=None, console_output=False)
        assert logging.getLogger("websockets").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_initial_values_bound(self):
        log = get_logger("webot.test", component="correlator")
        assert log is not None
