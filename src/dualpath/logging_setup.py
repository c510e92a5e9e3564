from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

from .settings import settings

LogFormat = Literal["text", "json"]

_CONFIGURED = False

STREAM_HANDLER_NAME = "dualpath.stderr"
FILE_HANDLER_NAME = "dualpath.file"

_RESERVED_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    }
)


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Produces entries like:
    {"timestamp": "...", "level": "INFO", "logger": "dualpath.cognitive.router", "message": "..."}
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS and not key.startswith("_")
            }
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


def _build_formatter(fmt: LogFormat) -> logging.Formatter:
    if fmt == "json":
        return JsonFormatter()
    return logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def configure_logging(
    *,
    level: str | None = None,
    log_path: Path | None = None,
    fmt: LogFormat | None = None,
) -> None:
    """Configure dualpath logging.

    - Logs to stderr.
    - Logs to a rotating file (``DUALPATH_LOG_PATH``) when it can be opened.

    Safe to call multiple times; it will not duplicate handlers.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    level_name = (level or settings.log_level).upper().strip()
    resolved_level = getattr(logging, level_name, logging.INFO)
    resolved_fmt: LogFormat = fmt or ("json" if settings.log_format == "json" else "text")

    root = logging.getLogger()
    root.setLevel(resolved_level)
    formatter = _build_formatter(resolved_fmt)

    if not any(h.get_name() == STREAM_HANDLER_NAME for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.set_name(STREAM_HANDLER_NAME)
        stream_handler.setLevel(resolved_level)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    resolved_log_path = log_path or settings.log_path
    try:
        resolved_log_path.parent.mkdir(parents=True, exist_ok=True)
        if not any(
            isinstance(h, RotatingFileHandler)
            and getattr(h, "baseFilename", None) == str(resolved_log_path)
            for h in root.handlers
        ):
            file_handler = RotatingFileHandler(
                filename=str(resolved_log_path),
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.set_name(FILE_HANDLER_NAME)
            file_handler.setLevel(resolved_level)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
    except OSError as exc:
        # Stderr logging still works; the file is best-effort.
        logging.getLogger(__name__).warning("File logging disabled (%s): %s", resolved_log_path, exc)

    _CONFIGURED = True
