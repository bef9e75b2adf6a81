import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# request id of the HTTP request being served, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# `extra=` fields copied into JSON records
_REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "client", "user_agent", "url", "errors")
_CACHE_FIELDS = ("event", "key", "pattern", "tier", "removed", "cached")
_SCORE_FIELDS = ("device_id", "score", "best_score", "is_new_best", "time_range", "limit", "count")
_EXTRA_FIELDS = _REQUEST_FIELDS + _CACHE_FIELDS + _SCORE_FIELDS + ("error",)

# fields shown in the bracketed tail of a pretty line
_PRETTY_CONTEXT = ("device_id", "time_range", "key", "pattern", "removed", "count", "error")

_RESET = "\033[0m"
_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
# keyed by status // 100
_STATUS_COLORS = {2: "\033[32m", 3: "\033[36m", 4: "\033[33m", 5: "\033[31m"}
_GREY = "\033[90m"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        payload.update(
            (name, getattr(record, name))
            for name in _EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Single-line console format: level, time, request id, logger, request or score summary, context."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: Optional[str]) -> str:
        if not self.use_color or not color:
            return text
        return f"{color}{text}{_RESET}"

    def _request_summary(self, record: logging.LogRecord) -> Optional[str]:
        method = getattr(record, "method", None)
        path = getattr(record, "path", None)
        if not method and not path:
            return None
        parts = [p for p in (method, path) if p]
        status = getattr(record, "status", None)
        if isinstance(status, int):
            parts.append(self._paint(str(status), _STATUS_COLORS.get(status // 100, _STATUS_COLORS[5])))
        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            parts.append(self._paint(f"{duration_ms}ms", _GREY))
        return " ".join(parts)

    def _score_summary(self, record: logging.LogRecord) -> Optional[str]:
        score = getattr(record, "score", None)
        if score is None:
            return None
        text = f"score={score}"
        best = getattr(record, "best_score", None)
        if best is not None:
            text += f" best={best}"
        if getattr(record, "is_new_best", False):
            text += " (new best)"
        return text

    def _context(self, record: logging.LogRecord) -> Optional[str]:
        ctx: List[str] = [
            f"{name}={getattr(record, name)}"
            for name in _PRETTY_CONTEXT
            if getattr(record, name, None) is not None
        ]
        ua = getattr(record, "user_agent", None)
        if ua and ua != "-":
            ctx.append(f'ua="{ua[:61] + "..." if len(ua) > 64 else ua}"')
        return "[" + " ".join(ctx) + "]" if ctx else None

    def format(self, record: logging.LogRecord) -> str:
        parts: List[str] = [
            self._paint(record.levelname, _LEVEL_COLORS.get(record.levelname)),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._paint(f"rid={rid[:8]}", _LEVEL_COLORS["CRITICAL"]))
        parts.append(self._paint(record.name, "\033[34m"))

        summary = self._request_summary(record) or self._score_summary(record)
        if summary:
            parts.append(summary)
        parts.extend(["-", record.getMessage()])

        ctx = self._context(record)
        if ctx:
            parts.append(self._paint(ctx, _GREY))
        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))
        return " ".join(parts)


def _wants_pretty(stream) -> bool:
    fmt = os.getenv("LOG_FORMAT", "").lower()
    if fmt in ("json", "pretty"):
        return fmt == "pretty"
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def setup_logging(level: Optional[int] = None) -> logging.Logger:
    """Install one stdout handler on the root and uvicorn loggers.

    LOG_FORMAT picks ``json`` or ``pretty`` (default: pretty on a TTY, JSON
    otherwise), LOG_COLOR=0 turns off ANSI colors, and LOG_LEVEL overrides
    ``level``.
    """
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        level = logging.getLevelName(env_level.upper())
        if not isinstance(level, int):
            raise ValueError(f"LOG_LEVEL must be a logging level name, got {env_level!r}")
    if level is None:
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if _wants_pretty(sys.stdout):
        color = os.getenv("LOG_COLOR", "1").lower() not in ("0", "false", "no")
        handler.setFormatter(ColorFormatter(use_color=color))
    else:
        handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "scoreboard") -> logging.Logger:
    return logging.getLogger(name)
