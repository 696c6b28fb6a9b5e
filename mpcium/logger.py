"""Process-wide structured logging with key/value context."""

from __future__ import annotations

import base64
import enum
import inspect
import json
import sys
import threading
from datetime import datetime
from typing import Any, TextIO


class Level(enum.IntEnum):
    """Severity levels, lowest first."""

    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3
    FATAL = 4
    PANIC = 5


class PanicError(RuntimeError):
    """Raised by :func:`panic` after the message has been logged."""


_LABELS = ("DBG", "INF", "WRN", "ERR", "FTL", "PNC")
_WRONG_USAGE = (
    "([Wrong logger.Info usage] Provided args to logger.Info "
    "must be a series of key/value pairs)"
)

_lock = threading.Lock()
_level = Level.INFO
_stream: TextIO | None = None
_console = True


def init(env: str, debug: bool) -> None:
    """Set the level; console output to stderr, or JSON to stdout in production."""
    global _level, _stream, _console
    with _lock:
        _level = Level.DEBUG if debug else Level.INFO
        _stream = None
        _console = env != "production"


def set_output(stream: TextIO) -> None:
    """Send JSON log lines to ``stream``."""
    global _stream, _console
    with _lock:
        _stream = stream
        _console = False


def get_level() -> Level:
    return _level


def set_level(level: Level) -> None:
    global _level
    _level = Level(level)


def _default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return str(value)


def _emit(level: Level, msg: str, fields: list[tuple[str, Any]],
          err: BaseException | None = None, caller: bool = False) -> None:
    if level < _level:
        return
    now = datetime.now().astimezone()
    record: dict[str, Any] = {"level": level.name.lower(), "time": now.isoformat(timespec="seconds")}
    record.update(fields)
    if caller:
        frame = inspect.currentframe()
        while frame is not None and frame.f_code.co_filename == __file__:
            frame = frame.f_back
        if frame is not None:
            record["caller"] = f"{frame.f_code.co_filename}:{frame.f_lineno}"
    if err is not None:
        record["error"] = str(err)
    record["message"] = msg

    with _lock:
        if _console:
            extras = [
                f"{k}={v if isinstance(v, str) else json.dumps(v, default=_default)}"
                for k, v in record.items()
                if k not in ("level", "time", "message")
            ]
            stamp = now.strftime("%Y-%m-%d %H:%M:%S.") + f"{now.microsecond // 1000:03d}"
            line = " ".join([stamp, _LABELS[level], msg, *extras])
        else:
            line = json.dumps(record, default=_default, separators=(",", ":"))
        stream = _stream or (sys.stderr if _console else sys.stdout)
        stream.write(line + "\n")
        stream.flush()


def _pairs(args: tuple[Any, ...]) -> list[tuple[str, Any]]:
    return [(str(key), value) for key, value in zip(args[::2], args[1::2])]


def _log_pairs(level: Level, msg: str, args: tuple[Any, ...]) -> None:
    if len(args) % 2 != 0:
        _emit(Level.WARN, f"{msg} {_WRONG_USAGE}", [("Unknown Key", list(args))], caller=True)
    else:
        _emit(level, msg, _pairs(args))


def debug(msg: str, *args: Any) -> None:
    """Log at debug level; ``args`` are alternating keys and values."""
    _log_pairs(Level.DEBUG, msg, args)


def info(msg: str, *args: Any) -> None:
    """Log at info level; ``args`` are alternating keys and values."""
    _log_pairs(Level.INFO, msg, args)


def warn(msg: str, *args: Any) -> None:
    """Log at warn level; ``args`` are alternating keys and values."""
    _log_pairs(Level.WARN, msg, args)


def infof(fmt: str, *args: Any) -> None:
    """Log a %-formatted message at info level."""
    _emit(Level.INFO, fmt % args if args else fmt, [])


def error(msg: str, err: BaseException | None, *args: Any) -> None:
    """Log an error with key/value context; odd context raises ValueError."""
    if len(args) % 2 != 0:
        raise ValueError("keyValues must be a list of key/value pairs")
    _emit(Level.ERROR, msg, _pairs(args), err=err, caller=True)


def fatal(msg: str, err: BaseException | None) -> None:
    """Log at fatal level and exit the process."""
    _emit(Level.FATAL, msg, [], err=err)
    raise SystemExit(1)


def panic(msg: str, err: BaseException | None) -> None:
    """Log at panic level and raise :class:`PanicError`."""
    _emit(Level.PANIC, msg, [], err=err)
    raise PanicError(msg)