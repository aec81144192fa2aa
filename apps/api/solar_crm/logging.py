from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from solar_crm.context import get_correlation_id
from solar_crm.core.config import get_settings


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__)

# request fields, then timeline and activity fields
_KNOWN_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "lead_id",
        "step_id",
        "actor_id",
        "actor_role",
        "action",
        "status",
        "attempt",
        "created_count",
        "missing_categories",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500

_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; only allow-listed ``extra`` keys are emitted."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        if self.service:
            payload["service"] = self.service
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_solar_crm_configured", False):
        return

    settings = get_settings()
    resolved = logging.getLevelName((level or settings.log_level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter(service=settings.app_name))

    root_logger.handlers.clear()
    root_logger.setLevel(resolved)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._solar_crm_configured = True  # type: ignore[attr-defined]
