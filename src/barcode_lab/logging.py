from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal

from .job_context import job_id_var

_LOGGER_NAME: Final[str] = "barcode_lab"
_INT_FIELDS: Final[frozenset[str]] = frozenset(
    {"trial", "total_trials", "epochs", "batch_size", "samples", "slots"}
)
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset(
    {"accuracy", "macro_f1", "micro_f1", "log_loss", "progress", "lr", "duration_s"}
)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; ``EVT`` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        fields = _parse_evt_fields(msg)
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": str(fields.pop("event", msg)),
        }
        jid = job_id_var.get()
        if jid:
            payload["job_id"] = jid
        payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_ESC: Final[str] = "\x1b["
_RESET: Final[str] = "\x1b[0m"

# level -> (ansi code, short tag)
_LEVEL_STYLE: Final[tuple[tuple[int, str, str], ...]] = (
    (logging.CRITICAL, "1;95", "CRIT"),
    (logging.ERROR, "1;91", "ERROR"),
    (logging.WARNING, "1;93", "WARN"),
    (logging.INFO, "1;36", "INFO"),
    (logging.NOTSET, "1;90", "DEBUG"),
)
_STATE_COLORS: Final[dict[str, str]] = {
    "queued": "90",
    "running": "94",
    "completed": "92",
    "failed": "91",
    "cancelled": "93",
}
_SCORE_KEYS: Final[frozenset[str]] = frozenset({"accuracy", "macro_f1", "micro_f1"})


def _paint(code: str, text: str) -> str:
    return f"{_ESC}{code}m{text}{_RESET}"


class _ConsoleFormatter(logging.Formatter):
    """Colorized one-line rendering for terminals.

    ``event k=v ...`` messages show the event in bold and color values by
    key: job states by state, scores green, durations magenta.
    """

    def format(self, record: logging.LogRecord) -> str:
        stamp = _paint("2", datetime.now(UTC).strftime("[%H:%M:%S]"))
        code, tag = next((c, t) for lvl, c, t in _LEVEL_STYLE if record.levelno >= lvl)
        out: list[str] = [stamp, _paint(code, f"[{tag}]")]
        if record.name != _LOGGER_NAME:
            out.append(_paint("2;90", record.name))

        event, pairs, rest = _split_event(record.getMessage())
        if event:
            out.append(_paint("1;94", event))
        out.extend(f"{_paint('2;36', k)}={_value_color(k, v)}" for k, v in pairs)
        if rest:
            out.append(rest)
        jid = job_id_var.get()
        if jid:
            out.append(_paint("2;90", f"job={jid}"))
        line = " ".join(out)
        if record.exc_info:
            line += "\n" + _paint("91", self.formatException(record.exc_info))
        return line


def _split_event(msg: str) -> tuple[str | None, list[tuple[str, str]], str]:
    if msg.startswith("EVT "):
        fields = _parse_evt_fields(msg)
        name = str(fields.pop("event", "event"))
        return name, [(k, str(v)) for k, v in fields.items()], ""
    tokens = msg.split()
    if not tokens:
        return None, [], ""
    event = None if "=" in tokens[0] else tokens[0]
    pairs: list[tuple[str, str]] = []
    rest: list[str] = []
    for tok in tokens if event is None else tokens[1:]:
        key, sep, val = tok.partition("=")
        if sep and key:
            pairs.append((key, val))
        else:
            rest.append(tok)
    return event, pairs, " ".join(rest)


def _value_color(key: str, value: str) -> str:
    if key == "state" and value in _STATE_COLORS:
        return _paint(_STATE_COLORS[value], value)
    if key in _SCORE_KEYS:
        return _paint("92", value)
    if key.endswith("_s") or key.endswith("_ms"):
        return _paint("95", value)
    if _is_float_str(value):
        return _paint("32", value)
    return _paint("97", value)


def _evt_value(v: object) -> str | None:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, int | float | str):
        text = str(v)
        return text if text and not any(c.isspace() for c in text) else None
    return None


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    """Log ``EVT event=<name> k=v ...`` at INFO.

    Values that are not scalars or that contain whitespace are dropped so the
    line stays parseable by the formatters.
    """
    parts = [f"event={event}"]
    for k, v in (fields or {}).items():
        text = _evt_value(v)
        if text is not None:
            parts.append(f"{k}={text}")
    get_logger().info("EVT " + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        key, sep, raw = tok.partition("=")
        if not sep or not key:
            continue
        val: object = raw
        if key in _INT_FIELDS and raw.lstrip("-").isdigit():
            val = int(raw)
        elif key in _FLOAT_FIELDS and _is_float_str(raw):
            val = float(raw)
        elif raw in ("true", "false"):
            val = raw == "true"
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    body = s.removeprefix("-")
    return bool(body) and body.count(".") <= 1 and body.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]

_LEVELS: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _env_level() -> int:
    name = os.environ.get("BARCODE_LAB_LOG_LEVEL", "").strip().upper()
    return _LEVELS.get(name, logging.INFO)


def _env_truthy(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on", "y"}


def _auto_style() -> Literal["json", "pretty"]:
    if _env_truthy("BARCODE_LAB_LOG_JSON"):
        return "json"
    if _env_truthy("BARCODE_LAB_LOG_PRETTY"):
        return "pretty"
    isatty = getattr(sys.stdout, "isatty", None)
    return "pretty" if callable(isatty) and bool(isatty()) else "json"


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    resolved = _auto_style() if style == "auto" else style
    return _JsonFormatter() if resolved == "json" else _ConsoleFormatter()


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Configure the ``barcode_lab`` logger with a single stdout handler.

    Safe to call repeatedly: existing stream handlers are replaced, which also
    rebinds output to the current ``sys.stdout``.
    """
    logger = get_logger()
    level = _env_level()
    logger.setLevel(level)
    logger.propagate = _env_truthy("BARCODE_LAB_LOG_PROPAGATE")
    for h in [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]:
        logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)
