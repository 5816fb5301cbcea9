"""JSON log lines for the API process.

Each record is stamped with the active correlation id. Only an allow-list of
``extra`` keys reaches the output, so request payloads and passwords never do.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from crm_api.core.context import get_correlation_id

LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "user_id",
        "entity",
        "entity_id",
        "client_id",
        "opportunity_id",
        "rfp_id",
        "sow_id",
        "approval_stage",
        "file_count",
        "total",
        "success",
        "failed",
        "status",
        "error",
    }
)
MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _stamp_correlation_id(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    if getattr(record, "correlation_id", None) is None:
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in LOG_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if getattr(root, "_crm_configured", False):
        return

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    logging.setLogRecordFactory(_stamp_correlation_id)
    root._crm_configured = True  # type: ignore[attr-defined]
