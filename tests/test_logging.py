"""Tests for structured logging."""

import json
import logging
import threading

from loop_medic.logging import (
    ConsoleFormatter,
    JSONFormatter,
    LogContext,
    configure_logging,
    get_logger,
    get_session_id,
    get_task_id,
    set_session_id,
)


def _record(msg: str = "hello", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("loop_medic.test", level, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _json(record: logging.LogRecord) -> dict:
    return json.loads(JSONFormatter().format(record))


class TestJSONFormatter:
    def test_basic_fields(self):
        """Test the core fields of a JSON record."""
        set_session_id("sess-1")
        data = _json(_record())
        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["logger"] == "loop_medic.test"
        assert data["session_id"] == "sess-1"
        assert "location" not in data
        assert "task_id" not in data

    def test_error_has_location(self):
        """Test error records carry their source location."""
        data = _json(_record(level=logging.ERROR))
        assert data["location"]["line"] == 10

    def test_extras_included(self):
        """Test extra record attributes are emitted."""
        data = _json(_record(attempt=2))
        assert data["attempt"] == 2

    def test_extras_excluded(self):
        """Test include_extras=False drops extra attributes."""
        formatter = JSONFormatter(include_extras=False)
        data = json.loads(formatter.format(_record(attempt=2)))
        assert "attempt" not in data

    def test_unserializable_extra_stringified(self):
        """Test extras that are not JSON-serializable are stringified."""
        data = _json(_record(obj=object()))
        assert data["obj"].startswith("<object object")


class TestConsoleFormatter:
    def test_format(self):
        """Test the console line shows session and logger name."""
        set_session_id("abc")
        line = ConsoleFormatter().format(_record("ready"))
        assert "[abc]" in line
        assert "loop_medic.test: ready" in line

    def test_task_tag(self):
        """Test the console line shows the task being handled."""
        set_session_id("abc")
        with LogContext(task_id="TASK-7"):
            line = ConsoleFormatter().format(_record("retrying"))
        assert "[abc TASK-7]" in line


class TestSessionId:
    def test_shared_across_threads(self):
        """Test worker threads report the session set by the main thread."""
        set_session_id("sess-main")
        seen = []
        worker = threading.Thread(target=lambda: seen.append(get_session_id()))
        worker.start()
        worker.join()
        assert seen == ["sess-main"]


class TestLogContext:
    def test_tags_and_clears(self):
        """Test records are tagged only inside the context."""
        with LogContext(task_id="TASK-1"):
            assert _json(_record())["task_id"] == "TASK-1"
        assert get_task_id() is None
        assert "task_id" not in _json(_record())

    def test_nested_restores_outer(self):
        """Test leaving an inner context restores the outer task."""
        with LogContext(task_id="outer"):
            with LogContext(task_id="inner"):
                assert get_task_id() == "inner"
            assert get_task_id() == "outer"

    def test_leaves_record_factory_alone(self):
        """Test the global record factory is never replaced."""
        factory = logging.getLogRecordFactory()
        with LogContext(task_id="TASK-1"):
            assert logging.getLogRecordFactory() is factory

    def test_threads_exit_out_of_order(self):
        """Test interleaved contexts on two threads do not leak tags."""
        a_entered = threading.Event()
        b_entered = threading.Event()
        a_exited = threading.Event()
        seen = {}

        def run_a():
            with LogContext(task_id="A"):
                a_entered.set()
                b_entered.wait(5)
                seen["a"] = _json(_record())["task_id"]
            a_exited.set()

        def run_b():
            a_entered.wait(5)
            with LogContext(task_id="B"):
                b_entered.set()
                a_exited.wait(5)
                seen["b"] = _json(_record())["task_id"]

        threads = [threading.Thread(target=run_a), threading.Thread(target=run_b)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert seen == {"a": "A", "b": "B"}
        assert get_task_id() is None
        fresh = logging.getLogRecordFactory()("x", logging.INFO, __file__, 1, "m", None, None)
        assert not hasattr(fresh, "task_id")
        assert "task_id" not in _json(_record())


class TestConfigureLogging:
    def test_configures_package_logger(self, tmp_path):
        """Test configure_logging installs console and JSON file handlers."""
        log_file = tmp_path / "medic.log"
        configure_logging(level="DEBUG", log_file=str(log_file))
        try:
            logger = logging.getLogger("loop_medic")
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 2

            get_logger("loop_medic.sub").info("written")
            for handler in logger.handlers:
                handler.flush()
            payload = json.loads(log_file.read_text().strip().splitlines()[-1])
            assert payload["message"] == "written"
        finally:
            logger = logging.getLogger("loop_medic")
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()
            logger.setLevel(logging.NOTSET)

    def test_reconfigure_does_not_duplicate(self):
        """Test configuring twice keeps a single console handler."""
        configure_logging()
        configure_logging()
        try:
            assert len(logging.getLogger("loop_medic").handlers) == 1
        finally:
            logging.getLogger("loop_medic").handlers.clear()
            logging.getLogger("loop_medic").setLevel(logging.NOTSET)
