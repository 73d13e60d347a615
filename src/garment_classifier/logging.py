from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "garment_classifier"
_EVT_PREFIX: Final[str] = "EVT "

# Typed fields that log_event accepts; anything else is dropped.
_INT_FIELDS: Final[frozenset[str]] = frozenset({"latency_ms", "class_index", "n_trees"})
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"confidence"})
_BOOL_FIELDS: Final[frozenset[str]] = frozenset({"uncertain"})
_STR_FIELDS: Final[frozenset[str]] = frozenset({"label", "model_id", "kind", "path"})

_LEVEL_NAMES: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}
_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on", "y"})

LogStyle = Literal["json", "pretty", "auto"]


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; ``EVT`` messages are expanded into fields."""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        fields = _parse_evt_fields(msg)
        if fields:
            payload["message"] = str(fields.pop("event", msg))
            payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Human-readable line for terminals: ``HH:MM:SS [LEVEL] event key=value``."""

    _RESET = "\x1b[0m"
    _DIM = "\x1b[2m"
    _LEVEL_COLOURS: Final[dict[int, str]] = {
        logging.DEBUG: "\x1b[90m",
        logging.INFO: "\x1b[36m",
        logging.WARNING: "\x1b[93m",
        logging.ERROR: "\x1b[91m",
        logging.CRITICAL: "\x1b[95m",
    }

    def format(self, record: logging.LogRecord) -> str:
        colour = self._LEVEL_COLOURS.get(record.levelno, "")
        head = (
            f"{self._DIM}{datetime.now(UTC):%H:%M:%S}{self._RESET} "
            f"{colour}[{record.levelname}]{self._RESET}"
        )
        msg = record.getMessage()
        fields = _parse_evt_fields(msg)
        if fields:
            event = str(fields.pop("event", "event"))
            kv = " ".join(f"{k}={_render(v)}" for k, v in fields.items())
            body = f"{event} {kv}".rstrip()
        else:
            body = msg
        line = f"{head} {body}"
        rid = request_id_var.get()
        if rid:
            line = f"{line} {self._DIM}rid={rid}{self._RESET}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _render(v: object) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def log_event(
    event: str, fields: Mapping[str, object] | None = None, *, level: int = logging.INFO
) -> None:
    """Emit ``EVT event=<name> key=value ...`` on the project logger.

    Only the known typed keys are kept, and only when the value has the
    matching type. String values have spaces replaced with ``_``
    so that labels such as "Ankle boot" stay one token.
    """
    parts = [f"event={event}"]
    for key, value in (fields or {}).items():
        token = _field_token(key, value)
        if token is not None:
            parts.append(token)
    get_logger().log(level, _EVT_PREFIX + " ".join(parts))


def _field_token(key: str, value: object) -> str | None:
    if key in _BOOL_FIELDS and isinstance(value, bool):
        return f"{key}={_render(value)}"
    if key in _INT_FIELDS and isinstance(value, int) and not isinstance(value, bool):
        return f"{key}={value}"
    if key in _FLOAT_FIELDS and isinstance(value, float):
        return f"{key}={value}"
    if key in _STR_FIELDS and isinstance(value, str):
        return f"{key}={value.replace(' ', '_')}"
    return None


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        if not sep or not key:
            continue
        out[key] = _coerce(key, raw)
    return out


def _coerce(key: str, raw: str) -> object:
    try:
        if key in _INT_FIELDS:
            return int(raw)
        if key in _FLOAT_FIELDS:
            return float(raw)
    except ValueError:
        return raw
    if key in _BOOL_FIELDS:
        return raw.lower() in _TRUTHY
    return raw


def _env_level() -> int:
    raw = os.environ.get("GARMENT_LOG_LEVEL", "")
    return _LEVEL_NAMES.get(raw.strip().upper(), logging.INFO)


def _env_flag(*names: str) -> bool:
    return any(os.environ.get(n, "").strip().lower() in _TRUTHY for n in names)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Attach a single stdout handler to the project logger.

    Safe to call repeatedly: earlier stream handlers are replaced, and the new
    one binds whatever ``sys.stdout`` is at call time.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    level = _env_level()
    logger.setLevel(level)
    logger.propagate = _env_flag("GARMENT_LOG_PROPAGATE", "LOG_PROPAGATE")
    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _choose_formatter(style: LogStyle) -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()
    if _env_flag("GARMENT_LOG_JSON", "LOG_JSON"):
        return _JsonFormatter()
    isatty = getattr(sys.stdout, "isatty", None)
    if _env_flag("GARMENT_LOG_PRETTY", "LOG_PRETTY") or (callable(isatty) and bool(isatty())):
        return _ConsoleFormatter()
    return _JsonFormatter()
