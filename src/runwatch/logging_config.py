from __future__ import annotations

import json
import logging
import os
import sys
import time
import traceback
from typing import Any, Dict

# Attributes every LogRecord carries; anything else came in through `extra=`.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

# Context keys shown by the text formatter, in this order.
_TEXT_CONTEXT_KEYS = (
    "err_id",
    "msg_id",
    "workflow_id",
    "run_id",
    "repo",
    "state",
    "backoff_sec",
    "kind",
    "reason",
)

# httpx and httpcore log every request at INFO/DEBUG; keep them quiet unless asked.
_NOISY_LOGGERS = ("httpx", "httpcore")


def _env(name: str, default: str) -> str:
    v = os.environ.get(name)
    if v is None or v == "":
        return default
    return v


def _env_bool(name: str, default: bool) -> bool:
    v = _env(name, "").strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return default


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS and not k.startswith("_")}


class _JsonLogFormatter(logging.Formatter):
    """
    One JSON object per line.

    Records logged with exc_info also carry the exception type, message,
    traceback and the innermost frame it was raised from (`exc_origin`).
    """

    def __init__(self, *, service: str, use_utc: bool, include_traceback: bool):
        super().__init__()
        self._service = service
        self._clock = time.gmtime if use_utc else time.localtime
        self._ts_format = "%Y-%m-%dT%H:%M:%SZ" if use_utc else "%Y-%m-%dT%H:%M:%S%z"
        self._include_traceback = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "ts": time.strftime(self._ts_format, self._clock(record.created)),
            "service": self._service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "pathname": record.pathname,
            "lineno": record.lineno,
            "func": record.funcName,
        }
        for k, v in _context(record).items():
            if k in out:
                continue
            try:
                json.dumps(v)
            except (TypeError, ValueError):
                v = str(v)
            out[k] = v

        if record.exc_info:
            exc_type, exc, tb = record.exc_info
            out["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            out["exc_message"] = str(exc)
            if self._include_traceback and tb is not None:
                out["exc_traceback"] = "".join(traceback.format_exception(exc_type, exc, tb))
                origin = traceback.extract_tb(tb)[-1]
                out["exc_origin"] = {"file": origin.filename, "line": origin.lineno, "func": origin.name}

        return json.dumps(out, ensure_ascii=True, separators=(",", ":"))


class _TextLogFormatter(logging.Formatter):
    def __init__(self, *, service: str, include_traceback: bool):
        super().__init__()
        self._service = service
        self._include_traceback = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname} {self._service} {record.name} - {record.getMessage()}"
        context = [f"{k}={getattr(record, k)}" for k in _TEXT_CONTEXT_KEYS if hasattr(record, k)]
        if context:
            line += " (" + ", ".join(context) + ")"
        if record.exc_info and self._include_traceback:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(*, service: str) -> None:
    """
    Configure root logging from env vars.

    - RUNWATCH_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
    - RUNWATCH_LOG_FORMAT: json|text (default: json)
    - RUNWATCH_LOG_UTC: true|false (default: true)
    - RUNWATCH_LOG_INCLUDE_TRACEBACK: true|false (default: true)
    - RUNWATCH_LOG_HTTP: true|false (default: false); per-request httpx logs
    """

    level = getattr(logging, _env("RUNWATCH_LOG_LEVEL", "INFO").upper(), logging.INFO)
    include_tb = _env_bool("RUNWATCH_LOG_INCLUDE_TRACEBACK", True)

    handler = logging.StreamHandler(stream=sys.stdout)
    if _env("RUNWATCH_LOG_FORMAT", "json").lower() == "text":
        handler.setFormatter(_TextLogFormatter(service=service, include_traceback=include_tb))
    else:
        handler.setFormatter(
            _JsonLogFormatter(
                service=service,
                use_utc=_env_bool("RUNWATCH_LOG_UTC", True),
                include_traceback=include_tb,
            )
        )

    root = logging.getLogger()
    root.setLevel(level)
    # Calling twice must not duplicate output.
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    http_level = logging.NOTSET if _env_bool("RUNWATCH_LOG_HTTP", False) else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(http_level)
