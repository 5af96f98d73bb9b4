"""
Logging for GenStack

Every log line emitted while a generation run or an API request is in
flight carries the run's context: the request that triggered it, the
session being generated and the pipeline stage currently executing. The
context lives in a single context variable so it follows asyncio tasks
spawned from the run.

Two output modes:
- ``json``: one object per line, context fields at the top level, anything
  passed through ``extra=`` nested under ``"extra"``
- ``dev``: a compact single line per record for local work
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

CONTEXT_FIELDS: Tuple[str, ...] = ("request_id", "session_id", "stage")

# Chatty client libraries whose INFO output drowns the generation timeline
QUIET_LOGGERS = ("docker", "urllib3", "httpx", "httpcore", "asyncpg")

_log_context: ContextVar[Dict[str, str]] = ContextVar("genstack_log_context", default={})

# Attributes every LogRecord has; anything else on a record came from extra=
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _bind(**fields: Optional[str]) -> None:
    context = dict(_log_context.get())
    for key, value in fields.items():
        if value is None:
            context.pop(key, None)
        else:
            context[key] = value
    _log_context.set(context)


def set_request_id(request_id: str) -> None:
    _bind(request_id=request_id)


def set_session_id(session_id: str) -> None:
    """Tag subsequent lines with the session; a new session drops the old stage."""
    _bind(session_id=session_id, stage=None)


def set_stage(stage: Optional[str]) -> None:
    _bind(stage=stage)


def current_context() -> Dict[str, str]:
    return dict(_log_context.get())


def clear_context() -> None:
    _log_context.set({})


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Context of the emitting task, overridden by fields passed via extra=."""
    context: Dict[str, Any] = current_context()
    for key in CONTEXT_FIELDS:
        value = record.__dict__.get(key)
        if value is not None:
            context[key] = value
    return context


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
    }


def to_json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return to_json_safe(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(v) for v in value]
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """
    One JSON object per record::

        {"ts": "2026-03-02T09:14:07.512Z", "level": "INFO",
         "logger": "genstack.generation.orchestrator",
         "msg": "Stage Planning started",
         "session_id": "b6f1...", "stage": "Planning",
         "extra": {"iteration": 2},
         "src": "orchestrator.py:201"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": self.timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(to_json_safe(_record_context(record)))

        extras = _record_extras(record)
        if extras:
            entry["extra"] = to_json_safe(extras)

        entry["src"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = {
                "type": record.exc_info[0].__name__,
                "detail": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)

    @staticmethod
    def timestamp(created: float) -> str:
        moment = datetime.fromtimestamp(created, tz=timezone.utc)
        return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class DevelopmentFormatter(logging.Formatter):
    """
    Compact single-line output::

        09:14:07.512 INFO  orchestrator   Stage Planning started  (b6f1c2d3/Planning) iteration=2
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"
    SESSION_PREFIX = 8

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        level = record.levelname[:5].ljust(5)
        if self.use_colors:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        # genstack.generation.orchestrator -> orchestrator
        source = record.name.rsplit(".", 1)[-1].ljust(14)
        parts = [clock, level, source, record.getMessage()]

        context = _record_context(record)
        scope = [context["session_id"][: self.SESSION_PREFIX]] if "session_id" in context else []
        if "stage" in context:
            scope.append(context["stage"])
        if scope:
            parts.append(f" ({'/'.join(scope)})")
        if "request_id" in context and "session_id" not in context:
            parts.append(f" (request {context['request_id']})")

        parts.extend(f"{key}={value}" for key, value in _record_extras(record).items())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


@contextmanager
def log_duration(
    logger: logging.Logger,
    operation: str,
    slow_threshold_ms: float = 1000.0,
    **fields: Any,
) -> Iterator[Dict[str, Any]]:
    """
    Log how long the wrapped block took.

    Slow blocks log at WARNING, failures at ERROR (the exception still
    propagates), everything else at DEBUG. The yielded dict receives
    ``duration_ms`` once the block exits.
    """
    timing: Dict[str, Any] = {}
    started = time.monotonic()
    try:
        yield timing
    except BaseException as e:
        timing["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        logger.error(
            f"{operation} failed after {timing['duration_ms']}ms: {e}",
            extra={"operation": operation, "duration_ms": timing["duration_ms"], **fields},
        )
        raise
    timing["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
    extra = {"operation": operation, "duration_ms": timing["duration_ms"], **fields}
    if timing["duration_ms"] > slow_threshold_ms:
        logger.warning(f"{operation} was slow ({timing['duration_ms']}ms)", extra=extra)
    else:
        logger.debug(f"{operation} took {timing['duration_ms']}ms", extra=extra)


def setup_structured_logging(
    level: str = "INFO",
    format_type: str = "json",
    log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Install GenStack's handlers on the root logger.

    Args:
        level: Root level name
        format_type: "json" or "dev"
        log_file: Also append JSON lines to this file

    Returns:
        The root logger
    """
    if format_type not in ("json", "dev"):
        raise ValueError(f"Unknown log format '{format_type}', expected 'json' or 'dev'")

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(StructuredLogFormatter() if format_type == "json" else DevelopmentFormatter())
    root_logger.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredLogFormatter())
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root_logger.level))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
