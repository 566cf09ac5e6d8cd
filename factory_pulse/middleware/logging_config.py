"""
Structured logging configuration.

- Development / testing: one readable line per record, tagged with the
  workflow context (organization, project, stage move, event)
- Production: JSON lines for the log aggregator
- Log level: controlled via LOG_LEVEL env variable
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Record attributes set through ``extra=`` by the workflow services
_CONTEXT_FIELDS = (
    "organization_id",
    "project_id",
    "actor_id",
    "from_stage_id",
    "to_stage_id",
    "bypass",
    "error_kind",
    "event_type",
)
# Set by the request timing middleware
_REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")


def _context(record: logging.LogRecord, fields) -> dict:
    return {key: val for key in fields if (val := getattr(record, key, None)) is not None}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_context(record, _REQUEST_FIELDS))
        log_entry.update(_context(record, _CONTEXT_FIELDS))
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class WorkflowFormatter(logging.Formatter):
    """Readable formatter: ``HH:MM:SS LEVEL logger: message [org/project a->b] {event}``."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        ctx = _context(record, _CONTEXT_FIELDS)
        tags = []
        scope = "/".join(v for v in (ctx.get("organization_id"), ctx.get("project_id")) if v)
        if scope:
            move = ""
            if "to_stage_id" in ctx:
                move = f" {ctx.get('from_stage_id') or '-'}->{ctx['to_stage_id']}"
            tags.append(f"[{scope}{move}]")
        if "event_type" in ctx:
            tags.append(f"{{{ctx['event_type']}}}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            tags.append(f"[{duration:.0f}ms]")

        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if tags:
            line += " " + " ".join(tags)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Set up logging for the Flask app.

    Reads LOG_LEVEL from env (default: DEBUG in dev, INFO in prod).
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    # Single root stream handler; cleared first to prevent duplicates in tests
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else WorkflowFormatter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
