import json
import logging
import sys
from typing import Any, Dict, Optional, TextIO
from datetime import datetime, timezone


class StructuredLogger:
    """
    A logger that writes one JSON object per record to stderr.

    Keyword arguments passed to the log methods become top-level fields of
    the record, so callers attach context (disk_id=..., helper=...) instead
    of formatting it into the message.
    """

    def __init__(
        self,
        name: str,
        level: int = logging.INFO,
        stream: Optional[TextIO] = None,
    ):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False

        if self.logger.handlers:
            self.logger.handlers.clear()

        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(self.JsonFormatter())
        self.logger.addHandler(handler)

    class JsonFormatter(logging.Formatter):
        # LogRecord attributes that are not caller-supplied context
        STANDARD_ATTRS = {
            "name",
            "msg",
            "args",
            "created",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "module",
            "msecs",
            "message",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "thread",
            "threadName",
            "exc_info",
            "exc_text",
            "stack_info",
            "taskName",
        }

        def format(self, record: logging.LogRecord) -> str:
            entry: Dict[str, Any] = {
                "timestamp": datetime.fromtimestamp(
                    record.created, timezone.utc
                ).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }

            if record.exc_info:
                entry["exception"] = self.formatException(record.exc_info)

            for key, value in record.__dict__.items():
                if key not in self.STANDARD_ATTRS:
                    entry[key] = value

            return json.dumps(entry, default=str)

    def set_level(self, level: str) -> None:
        """Set the level by name, e.g. ``"DEBUG"``."""
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    def is_debug(self) -> bool:
        return self.logger.isEnabledFor(logging.DEBUG)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=kwargs)

    def critical(self, message: str, exc_info: bool = True, **kwargs: Any) -> None:
        self.logger.critical(message, exc_info=exc_info, extra=kwargs)


logger = StructuredLogger("rhv_upload")
