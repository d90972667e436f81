import io
import json

import pytest

from mpcium import logger


@pytest.fixture
def buf():
    stream = io.StringIO()
    logger.set_output(stream)
    return stream


def test_init_sets_info_level_without_debug():
    logger.init("test", False)
    assert logger.get_level() == "info"


def test_init_sets_debug_level():
    logger.init("test", True)
    assert logger.get_level() == "debug"


def test_error_with_error(buf):
    logger.error("test error message", ValueError("test error"))
    output = buf.getvalue()
    assert "test error message" in output
    assert 'level":"error"' in output
    assert "test error" in output


def test_error_without_error(buf):
    logger.error("test error message without error", None)
    output = buf.getvalue()
    assert "test error message without error" in output
    assert 'level":"error"' in output
    assert '"error"' not in output.replace('"level":"error"', "")


def test_error_with_key_values(buf):
    logger.error("test error with context", None, "key1", "value1", "key2", 42)
    output = buf.getvalue()
    assert "test error with context" in output
    assert 'level":"error"' in output
    assert "key1" in output
    assert "value1" in output
    assert "key2" in output
    assert "42" in output


def test_error_records_caller(buf):
    logger.error("with caller", None)
    record = json.loads(buf.getvalue())
    assert "test_logger.py" in record["caller"]


def test_info_basic_message(buf):
    logger.init("test", False)
    logger.set_output(buf)
    logger.info("test info message")
    output = buf.getvalue()
    assert "test info message" in output
    assert 'level":"info"' in output


def test_info_with_key_values(buf):
    logger.info("test info with context", "user", "john", "action", "login")
    record = json.loads(buf.getvalue())
    assert record["message"] == "test info with context"
    assert record["level"] == "info"
    assert record["user"] == "john"
    assert record["action"] == "login"


def test_debug_basic_message():
    logger.init("test", True)
    stream = io.StringIO()
    logger.set_output(stream)
    logger.debug("test debug message")
    output = stream.getvalue()
    assert "test debug message" in output
    assert 'level":"debug"' in output


def test_debug_suppressed_at_info_level():
    logger.init("test", False)
    stream = io.StringIO()
    logger.set_output(stream)
    logger.debug("hidden")
    assert stream.getvalue() == ""


def test_warn_basic_message(buf):
    logger.warn("test warning message")
    output = buf.getvalue()
    assert "test warning message" in output
    assert 'level":"warn"' in output


def test_infof_formatted_message(buf):
    logger.infof("formatted message: %s=%d", "count", 42)
    output = buf.getvalue()
    assert "formatted message: count=42" in output
    assert 'level":"info"' in output


def test_odd_pairs_in_info_become_warning(buf):
    logger.info("odd", "lonely")
    record = json.loads(buf.getvalue())
    assert record["level"] == "warn"
    assert record["Unknown Key"] == ["lonely"]
    assert record["message"].startswith("odd ")


def test_error_panics_on_odd_key_values():
    logger.init("test", False)
    with pytest.raises(ValueError):
        logger.error("test error", None, "odd_key", "value", "another_odd_key")


def test_panic_raises(buf):
    with pytest.raises(RuntimeError, match="boom"):
        logger.panic("boom", None)
    assert 'level":"panic"' in buf.getvalue()


def test_fatal_exits(buf):
    with pytest.raises(SystemExit):
        logger.fatal("fatal message", ValueError("cause"))
    assert "cause" in buf.getvalue()


def test_production_writes_json_to_stdout(capsys):
    logger.init("production", False)
    logger.info("hello", "k", "v")
    record = json.loads(capsys.readouterr().out)
    assert record["message"] == "hello"
    assert record["k"] == "v"


def test_development_writes_console_to_stderr(capsys):
    logger.init("dev", False)
    logger.info("hello console", "k", "v")
    err = capsys.readouterr().err
    assert "hello console" in err
    assert "k=v" in err