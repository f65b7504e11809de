"""
Tests for the structured logger.
"""

import json

from multissh.logger import StructuredLogger


class TestStructuredLogger:
    """Test handler ownership and record formats."""

    def test_second_logger_keeps_first_file_handler(self, tmp_path):
        first_log = tmp_path / "run1.log"
        second_log = tmp_path / "run2.log"
        first = StructuredLogger(level="info", log_file=str(first_log), enable_console=False)
        second = StructuredLogger(level="info", log_file=str(second_log), enable_console=False)
        try:
            first.info("first run", hosts=2)
            second.info("second run")
        finally:
            first.close()
            second.close()

        first_text = first_log.read_text()
        assert "first run [hosts=2]" in first_text
        assert "second run" not in first_text
        assert "first run" not in second_log.read_text()

    def test_set_level_replaces_only_own_handlers(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = StructuredLogger(level="warning", log_file=str(log_file), enable_console=False)
        try:
            logger.info("hidden")
            logger.set_level("debug")
            logger.debug("shown")
            assert len(logger.logger.handlers) == 1
        finally:
            logger.close()

        text = log_file.read_text()
        assert "hidden" not in text
        assert text.count("shown") == 1

    def test_json_records(self, tmp_path):
        log_file = tmp_path / "run.json"
        logger = StructuredLogger(level="info", log_file=str(log_file), log_format="json",
                                  enable_console=False)
        try:
            logger.info("Run completed", total=3)
        finally:
            logger.close()

        record = json.loads(log_file.read_text().splitlines()[0])
        assert record['message'] == "Run completed"
        assert record['level'] == "info"
        assert record['total'] == 3

    def test_silent_logger_does_not_reach_stderr(self, capsys):
        logger = StructuredLogger(level="debug", enable_console=False)
        logger.error("nobody listens")
        assert capsys.readouterr().err == ""
