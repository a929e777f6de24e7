"""Tests for log file placement and the log helpers."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import taskloop.engine  # noqa: F401  (modules create their loggers at import time)
from taskloop.logger import current_log_path, get_logger, init_logging, truncate


@pytest.fixture
def restore_log_target():
    original = current_log_path()
    yield
    init_logging(str(original.parent.parent))


class TestLogTarget:

    def test_import_time_logging_is_initialised(self):
        assert current_log_path() is not None

    def test_init_logging_moves_the_file_handler(self, tmp_path, restore_log_target):
        first, second = tmp_path / "first", tmp_path / "second"
        log = get_logger("test")

        path = init_logging(str(first))
        assert path == first / ".taskloop_output" / "taskloop.log"
        assert current_log_path() == path
        log.info("written to the first workspace")

        moved = init_logging(str(second), session_id="abc123")
        assert current_log_path() == moved
        assert moved == second / ".taskloop_output" / "taskloop.log"
        log.info("written to the second workspace")

        first_text = path.read_text(encoding="utf-8")
        second_text = moved.read_text(encoding="utf-8")
        assert "written to the first workspace" in first_text
        assert "written to the second workspace" not in first_text
        assert "written to the second workspace" in second_text
        assert "session=abc123" in second_text

    def test_same_workspace_keeps_handler_and_tags_session(self, tmp_path, restore_log_target):
        path = init_logging(str(tmp_path))
        assert init_logging(str(tmp_path), session_id="task42") == path
        get_logger("test").info("after session tag")
        text = path.read_text(encoding="utf-8")
        assert text.count("Logging initialised") == 1
        assert "=== Session task42 ===" in text
        assert "after session tag" in text

    def test_record_format(self, tmp_path, restore_log_target):
        path = init_logging(str(tmp_path))
        get_logger("engine").warning("format check")
        line = [l for l in path.read_text(encoding="utf-8").splitlines() if "format check" in l][0]
        assert " | WARNING | taskloop.engine | format check" in line


class TestHelpers:

    def test_truncate(self):
        assert truncate("") == "(empty)"
        assert truncate("a\nb") == "a\\nb"
        assert truncate("x" * 10, max_len=4) == "xxxx...[10 chars]"
