import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

_RESERVED_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class StructuredLogFormatter(logging.Formatter):
    """JSON formatter that keeps ``extra`` fields (task_id, organization_id, ...)."""

    def __init__(
        self,
        *,
        include_timestamp: bool = True,
        default_fields: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__()
        self._include_timestamp = include_timestamp
        self._default_fields = dict(default_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            **self._default_fields,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self._include_timestamp:
            payload["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS or key in payload:
                continue
            payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(
    level: str = "INFO",
    *,
    structured: bool = False,
    default_fields: Optional[Mapping[str, Any]] = None,
) -> None:
    """
    Configure root logging for the worker process.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: When true, emit one JSON object per line with extras inlined.
        default_fields: Base fields added to every structured record
    """
    if structured:
        formatter: logging.Formatter = StructuredLogFormatter(
            default_fields=default_fields
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        level=numeric_level,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)

    # Chatty client libraries
    for noisy in ("httpx", "httpcore", "urllib3", "docker", "kombu", "amqp"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured", extra={"log_level": level.upper()}
    )
