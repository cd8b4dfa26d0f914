import json, logging, os, sys
from datetime import datetime, timezone
from typing import Optional, TextIO

# Structured fields copied from `extra=` into the JSON line when present
_EXTRA_FIELDS = (
    "request_id", "route", "remote_addr",
    "ticket_id", "scope_id", "error_kind", "type", "action", "status",
)

# Libraries that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg plus known extras."""

    def format(self, record):
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (k, getattr(record, k)) for k in _EXTRA_FIELDS if hasattr(record, k)
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: Optional[str] = None, stream: Optional[TextIO] = None):
    """Route the root logger through JsonFormatter.

    Args:
        level: Level name; defaults to TICKETGATE_LOG_LEVEL, then INFO.
        stream: Console stream; stdout for the server, stderr for the CLI.
    """
    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(JsonFormatter())
    handlers = [console_handler]

    log_file = os.getenv("TICKETGATE_LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(JsonFormatter())
        handlers.append(file_handler)

    level_name = (level or os.getenv("TICKETGATE_LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers = handlers

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))
