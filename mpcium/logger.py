"""Structured key/value logging with JSON and console output."""

from __future__ import annotations

import json
import sys
import traceback
from datetime import datetime
from typing import Any, TextIO

_LEVELS = {"debug": 0, "info": 1, "warn": 2, "error": 3, "fatal": 4, "panic": 5}
_CONSOLE_TAGS = {
    "debug": "DBG",
    "info": "INF",
    "warn": "WRN",
    "error": "ERR",
    "fatal": "FTL",
    "panic": "PNC",
}
_PAIRS_WARNING = (
    "%s ([Wrong logger usage] Provided args to the logger must be a series of key/value pairs)"
)


class _Writer:
    """Renders one log event either as a JSON line or as a console line."""

    def __init__(self, stream: TextIO, console: bool) -> None:
        self.stream = stream
        self.console = console

    def write(self, record: dict[str, Any]) -> None:
        if self.console:
            line = self._console_line(record)
        else:
            line = json.dumps(record, default=str, separators=(",", ":"))
        self.stream.write(line + "\n")
        self.stream.flush()

    @staticmethod
    def _console_line(record: dict[str, Any]) -> str:
        fields = dict(record)
        level = fields.pop("level")
        message = fields.pop("message", "")
        fields.pop("time", None)
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        parts = [stamp, _CONSOLE_TAGS[level], message]
        parts.extend(f"{key}={_console_value(value)}" for key, value in fields.items())
        return " ".join(str(part) for part in parts if part != "")


def _console_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


_writer: _Writer | None = None
_level = "debug"


def init(env: str, debug: bool) -> None:
    """Configure the level and the output: JSON on stdout in production, console on stderr otherwise."""
    global _writer, _level
    _level = "debug" if debug else "info"
    if env != "production":
        _writer = _Writer(sys.stderr, console=True)
    else:
        _writer = _Writer(sys.stdout, console=False)


def set_output(stream: TextIO) -> None:
    """Send JSON log lines to the given stream."""
    global _writer
    _writer = _Writer(stream, console=False)


def get_level() -> str:
    """Return the name of the lowest level that is logged."""
    return _level


def _caller(skip: int) -> str:
    frame = traceback.extract_stack(limit=skip + 1)[0]
    return f"{frame.filename}:{frame.lineno}"


def _pairs(args: tuple[Any, ...]) -> dict[str, Any]:
    return {str(key): value for key, value in zip(args[::2], args[1::2])}


def _emit(
    level: str,
    msg: str,
    fields: dict[str, Any],
    err: BaseException | None = None,
    caller: str | None = None,
) -> None:
    if _writer is None or _LEVELS[level] < _LEVELS[_level]:
        return
    record: dict[str, Any] = {"level": level}
    record.update(fields)
    if err is not None:
        record["error"] = str(err)
    if caller is not None:
        record["caller"] = caller
    record["time"] = datetime.now().astimezone().isoformat(timespec="seconds")
    record["message"] = msg
    _writer.write(record)


def _log_pairs(level: str, msg: str, args: tuple[Any, ...]) -> None:
    if len(args) % 2:
        _emit("warn", _PAIRS_WARNING % msg, {"Unknown Key": list(args)}, caller=_caller(3))
        return
    _emit(level, msg, _pairs(args))


def debug(msg: str, *args: Any) -> None:
    """Log a debug message followed by key/value pairs."""
    _log_pairs("debug", msg, args)


def info(msg: str, *args: Any) -> None:
    """Log an info message followed by key/value pairs."""
    _log_pairs("info", msg, args)


def warn(msg: str, *args: Any) -> None:
    """Log a warning followed by key/value pairs."""
    _log_pairs("warn", msg, args)


def infof(fmt: str, *args: Any) -> None:
    """Log an info message built with %-formatting."""
    _emit("info", fmt % args if args else fmt, {})


def error(msg: str, err: BaseException | None, *args: Any) -> None:
    """Log an error with its cause and key/value pairs; odd pairs raise ValueError."""
    if len(args) % 2:
        raise ValueError("key/value arguments must be a list of key/value pairs")
    _emit("error", msg, _pairs(args), err=err, caller=_caller(2))


def fatal(msg: str, err: BaseException | None) -> None:
    """Log a fatal message and exit the program."""
    _emit("fatal", msg, {}, err=err)
    raise SystemExit(1)


def panic(msg: str, err: BaseException | None) -> None:
    """Log a message and raise RuntimeError with it."""
    _emit("panic", msg, {}, err=err)
    raise RuntimeError(msg)