import logging
import json
import sys
from typing import Any, Dict, Optional, TextIO
from datetime import datetime, timezone

# set through `extra=` by the watch engine and the lock manager
CONTEXT_FIELDS = ("watch_target", "session_id")

# chatty transports, only their warnings are worth keeping
QUIET_LOGGERS = ("httpx", "httpcore", "redis", "asyncio")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per record, tagged with the node it came from and
    whichever watch target or lock session the record was logged for.
    """

    def __init__(self, node_id: str = "unknown", **kwargs):
        super().__init__(**kwargs)
        self.node_id = node_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "node_id": self.node_id,
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(
    level: str = "INFO",
    format_type: str = "json",
    node_id: str = "unknown",
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Replace the root logger's handlers with a single stream handler in
    json or text format. Returns the installed handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    if format_type.lower() == "json":
        handler.setFormatter(JsonFormatter(node_id=node_id))
    else:
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
