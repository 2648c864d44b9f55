from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from dealgate.context import get_correlation_id
from dealgate.core.config import get_settings


_HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms"})
_ENFORCEMENT_FIELDS = frozenset(
    {
        "deal_id",
        "actor_id",
        "action",
        "outcome",
        "reason_code",
        "decision_id",
        "token_id",
        "token_status",
        "event_name",
        "error",
        "error_code",
        "snapshot",
    }
)
_LOGGED_FIELDS = _HTTP_FIELDS | _ENFORCEMENT_FIELDS
_QUIET_LOGGERS = ("sqlalchemy.engine", "alembic.runtime.migration")

_base_factory = logging.getLogRecordFactory()


def _stamp_correlation_id(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    """Renders one JSON object per line.

    Only whitelisted ``extra`` keys reach the ``fields`` object, so callers can
    pass request data around freely without leaking it into the log stream.
    """

    max_error_length = 500

    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in _LOGGED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][: self.max_error_length]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
                "fields": fields,
            },
            default=str,
        )


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler.formatter, JsonLogFormatter) for handler in root_logger.handlers):
        return

    resolved = logging.getLevelName((level or get_settings().log_level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(resolved)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_stamp_correlation_id)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
