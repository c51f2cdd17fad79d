"""Structured logs for the attempt engine.

Every record is one JSON line carrying the service name, and, while an HTTP
request is being served, the request id the tracing middleware stored. Engine
lines can then be joined to the request that caused them (start, answer,
complete, regrade).
"""

import logging, sys, json, time
from contextvars import ContextVar
from typing import Optional

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_id(rid: str | None) -> None:
    """Set or clear the request id attached to log records of this context."""
    _request_id.set(rid)


def get_request_id() -> str | None:
    return _request_id.get()


class JSONFormatter(logging.Formatter):
    """One compact JSON object per record: level, ts, service, logger, msg, request_id, exc_info."""

    def __init__(self, service: Optional[str] = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        base = {
            "level": record.levelname,
            "ts": round(time.time(), 3),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if self.service:
            base["service"] = self.service
        rid = get_request_id()
        if rid:
            base["request_id"] = rid
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def configure_logging(
    level: int | str = "INFO",
    json_logs: bool = True,
    service: Optional[str] = None,
) -> logging.Logger:
    """Route root logging to stdout and return the "attempts" logger.

    Args:
        level: Logging level as int or name.
        json_logs: JSON lines when True; a plain text layout for local runs otherwise.
        service: Name stamped on every JSON record (e.g. Settings.SERVICE_NAME).
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JSONFormatter(service))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    return logging.getLogger("attempts")
