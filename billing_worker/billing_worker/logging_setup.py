"""Log formatting for the billing worker.

Emits each log record as a single-line JSON object when
``BILLING_STRUCTURED_LOGGING=true`` so that aggregators can index settlement
context without regex parsing.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "ERROR",
        "logger": "billing_worker.services.settlement_executor",
        "message": "Bookkeeping failed after settlement ...",
        "settlement": {"redemption_key": ..., "transaction_hash": ...},
        "exc_info": "Traceback ..."
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Attributes passed via ``extra=`` that are copied into the JSON payload.
_CONTEXT_FIELDS = ("settlement", "campaign", "change")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(*, structured: bool = False, level: str = "INFO") -> None:
    """Install a single root handler, JSON-formatted when *structured* is set."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
