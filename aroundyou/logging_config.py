"""Logging setup: JSON or plain-text records tagged with the active session id."""

import contextvars
import logging
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

from aroundyou import config

session_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("session_id", default="")

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(session_id)s] %(message)s"


class SessionIdFilter(logging.Filter):
    """Inject session_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = session_id_var.get("")  # type: ignore[attr-defined]
        return True


def setup_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> None:
    """Configure the root logger. Defaults come from LOG_LEVEL / LOG_JSON."""
    level = (level or config.LOG_LEVEL).upper()
    json_format = config.LOG_JSON if json_format is None else json_format

    handler = logging.StreamHandler()
    if json_format:
        formatter: logging.Formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s %(session_id)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    else:
        formatter = logging.Formatter(PLAIN_FORMAT)
    handler.setFormatter(formatter)
    handler.addFilter(SessionIdFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))

    # Provider SDKs are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("chromadb").setLevel(logging.WARNING)
