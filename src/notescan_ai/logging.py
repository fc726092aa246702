from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, TypedDict, runtime_checkable

_LOGGER_NAME: Final[str] = "notescan_ai"
_INT_FIELDS: Final[frozenset[str]] = frozenset(
    {"latency_ms", "class_index", "total", "processed", "page_index", "layers_applied", "skipped"}
)
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset(
    {"confidence", "avg_ocr", "avg_key_sig_type", "avg_digit"}
)
_BOOL_FIELDS: Final[frozenset[str]] = frozenset({"applied", "resume"})

# Set per HTTP request by the middleware; blank outside a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")


class _JsonFormatter(logging.Formatter):
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
        extra = _parse_evt_fields(msg)
        if "event" in extra:
            payload["message"] = str(extra.pop("event"))
        payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals.

    EVT messages render as the event name followed by colored key=value
    pairs; plain messages split a leading token off as the event.
    """

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "\x1b[95m", "CRIT"),
        (logging.ERROR, "\x1b[91m", "ERROR"),
        (logging.WARNING, "\x1b[93m", "WARN"),
        (logging.INFO, "\x1b[36m", "INFO"),
    )

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{record.name}{self._RESET}")

        event, kv_pairs, tail = self._split_message(record.getMessage())
        if event:
            parts.append(f"{self._BOLD}\x1b[94m{event}{self._RESET}")
        for k, v in kv_pairs:
            parts.append(f"{self._DIM}\x1b[36m{k}{self._RESET}={self._color_value(k, v)}")
        if tail:
            parts.append(tail)
        if record.exc_info:
            parts.append(f"\n\x1b[91m{self.formatException(record.exc_info)}{self._RESET}")

        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}rid={rid}{self._RESET}")
        return " ".join(parts)

    def _level_tag(self, level: int) -> str:
        for threshold, color, name in self._LEVELS:
            if level >= threshold:
                return f"{self._BOLD}{color}[{name}]{self._RESET}"
        return f"{self._BOLD}\x1b[90m[DEBUG]{self._RESET}"

    def _split_message(self, msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
        if msg.startswith("EVT "):
            extra = _parse_evt_fields(msg)
            evt_name = str(extra.pop("event")) if "event" in extra else "event"
            return evt_name, [(k, _render(v)) for k, v in extra.items()], None

        toks = msg.split()
        if not toks:
            return None, [], None
        event: str | None = None
        if "=" not in toks[0]:
            event = toks[0]
            toks = toks[1:]
        kv: list[tuple[str, str]] = []
        tail_parts: list[str] = []
        for t in toks:
            k, sep, v = t.partition("=")
            if sep and k.strip():
                kv.append((k.strip(), v))
            else:
                tail_parts.append(t)
        return event, kv, (" ".join(tail_parts) if tail_parts else None)

    def _color_value(self, key: str, v: str) -> str:
        if key.endswith("_ms") or key.endswith("_s"):
            color = "\x1b[95m"
        elif key.startswith("avg_") or key == "confidence":
            color = "\x1b[92m"
        elif v in {"true", "false"}:
            color = "\x1b[36m"
        elif _is_float_str(v):
            color = "\x1b[92m"
        else:
            color = "\x1b[97m"
        return f"{color}{v}{self._RESET}"


class LogEvent(TypedDict, total=False):
    event: str
    latency_ms: int
    model_kind: str
    page_id: str
    page_index: int
    class_index: int
    confidence: float
    layer: str
    applied: bool
    reason: str
    stage: str


def log_event(
    event: str, fields: Mapping[str, object] | None = None, *, level: int = logging.INFO
) -> None:
    """Emit a structured `EVT event=... k=v` line on the project logger.

    Values containing whitespace are dropped; the formatters split on it.
    """
    parts: list[str] = [f"event={event}"]
    for key, val in (fields or {}).items():
        rendered = _render(val)
        if rendered and not any(c.isspace() for c in rendered):
            parts.append(f"{key}={rendered}")
    get_logger().log(level, "EVT " + " ".join(parts))


def _render(val: object) -> str:
    if isinstance(val, bool):
        return "true" if val else "false"
    if val is None:
        return ""
    return str(val)


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.lstrip("-").isdigit():
            val = int(v)
        elif key in _FLOAT_FIELDS and _is_float_str(v):
            val = float(v)
        elif key in _BOOL_FIELDS:
            val = v.lower() in {"1", "true", "yes"}
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    body = s[1:] if s.startswith("-") else s
    return bool(body) and body.count(".") <= 1 and body.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    v = os.environ.get("NOTESCAN_LOG_LEVEL")
    if not v:
        return logging.INFO
    return {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }.get(v.strip().upper(), logging.INFO)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Replaces any existing StreamHandler with one bound to the current
    sys.stdout, so repeated calls (and pytest capsys) never duplicate output.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("NOTESCAN_LOG_PROPAGATE") or _env_truthy("LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("NOTESCAN_LOG_JSON") or _env_truthy("LOG_JSON")
    force_pretty = _env_truthy("NOTESCAN_LOG_PRETTY") or _env_truthy("LOG_PRETTY")

    @runtime_checkable
    class _HasIsatty(Protocol):
        def isatty(self) -> bool: ...

    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
