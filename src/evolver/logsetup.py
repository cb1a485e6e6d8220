"""Process-wide logging lifecycle and step timing."""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from evolver.models import ConfigError, LoggingConfig
from evolver.utils import _ensure_parent_dir

logger = logging.getLogger(__name__)

ROOT_LOGGER_NAME = "evolver"
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def parse_level(level: str) -> int:
    return _LEVELS.get(str(level).strip().lower(), logging.INFO)


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
    }


class TextFormatter(logging.Formatter):
    """``time=... level=... msg="..." key=value`` lines."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"time={self.formatTime(record, '%Y-%m-%dT%H:%M:%S%z')}",
            f"level={record.levelname}",
            f"msg={json.dumps(record.getMessage())}",
        ]
        for key, value in _record_fields(record).items():
            rendered = value if isinstance(value, (int, float, bool)) else json.dumps(str(value))
            parts.append(f"{key}={rendered}")
        if record.exc_info:
            parts.append(f"exc={json.dumps(self.formatException(record.exc_info))}")
        return " ".join(parts)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(config: LoggingConfig, *, stream: Any = None) -> Callable[[], None]:
    """Install handlers on the ``evolver`` logger and return a function that removes them.

    Handlers always include ``stream`` (stderr by default); ``config.file`` adds
    an append-mode file handler.  Calling it again replaces the previous setup.
    """
    fmt = str(config.format).strip().lower()
    formatter: logging.Formatter = JsonFormatter() if fmt == "json" else TextFormatter()

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler(stream if stream is not None else sys.stderr)]
    log_file = str(config.file).strip()
    if log_file:
        path = Path(log_file)
        try:
            _ensure_parent_dir(path)
            handlers.append(logging.FileHandler(path, mode="a", encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"cannot open log file {path}: {exc}") from exc

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(parse_level(config.level))
    root.propagate = False

    def _close() -> None:
        for handler in handlers:
            root.removeHandler(handler)
            handler.close()

    return _close


@contextmanager
def log_step(name: str, *, log: logging.Logger | None = None) -> Iterator[None]:
    active = log or logger
    started = time.monotonic()
    active.info("step started", extra={"step": name})
    try:
        yield
    except Exception as exc:
        active.error(
            "step failed",
            extra={"step": name, "duration_ms": int((time.monotonic() - started) * 1000), "error": str(exc)},
        )
        raise
    active.info(
        "step succeeded",
        extra={"step": name, "duration_ms": int((time.monotonic() - started) * 1000)},
    )
