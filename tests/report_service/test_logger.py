"""
Unit tests for report_service/logger.py
"""

import io
import json
import logging

import pytest

from report_service.logger import JsonFormatter, build_handler, get_logger, setup_logging


@pytest.fixture
def capture():
    """Logger wired to an in-memory stream; returns (logger_name, stream, attach)."""
    stream = io.StringIO()
    logger = logging.getLogger("report_service.tests.capture")
    logger.propagate = False
    logger.setLevel(logging.DEBUG)

    def attach(format: str) -> None:
        logger.addHandler(build_handler(logging.DEBUG, format, stream=stream))

    yield logger.name, stream, attach

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.propagate = True


class TestJobLogger:
    def test_simple_format_prefixes_job_and_record(self, capture):
        name, stream, attach = capture
        attach("simple")

        get_logger(name, job_id="0123456789abcdef", record_id="recA1").info("Rendered")

        assert "[job:01234567] [recA1] Rendered" in stream.getvalue()

    def test_plain_module_logs_have_no_prefix(self, capture):
        name, stream, attach = capture
        attach("simple")

        logging.getLogger(name).info("Engine pool ready")

        assert f"{name}: Engine pool ready" in stream.getvalue()

    def test_json_format_carries_job_fields(self, capture):
        name, stream, attach = capture
        attach("json")
        state = {"value": "rendering"}

        log = get_logger(name, job_id="abc123", record_id="recA1", state=lambda: state["value"])
        log.warning('Network not idle for "fonts.css"')
        state["value"] = "failed"
        log.error("Gave up")

        first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
        assert first["message"] == 'Network not idle for "fonts.css"'
        assert first["job_id"] == "abc123"
        assert first["record_id"] == "recA1"
        assert first["job_state"] == "rendering"
        assert first["elapsed"] >= 0
        assert second["job_state"] == "failed"
        assert second["level"] == "ERROR"

    def test_json_format_includes_traceback(self, capture):
        name, stream, attach = capture
        attach("json")

        try:
            raise RuntimeError("Target crashed")
        except RuntimeError:
            get_logger(name, job_id="abc123").exception("Unexpected error")

        payload = json.loads(stream.getvalue())
        assert "Target crashed" in payload["exc_info"]
        assert "record_id" not in payload


class TestSetupLogging:
    def test_installs_single_root_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("debug", "json")

            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JsonFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
