import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from pythonjsonlogger import jsonlogger

from orgtree.core.config import settings

# Correlation id shared by every record of one caller operation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


@contextmanager
def request_context(request_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag all log records emitted inside the block with one correlation id.
    Host applications pass their request id; scripts let one be generated.
    An id already set by an enclosing block is kept.
    """
    current = request_id_var.get()
    token = request_id_var.set(request_id or current or uuid.uuid4().hex)
    try:
        yield request_id_var.get()
    finally:
        request_id_var.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)

        req_id = request_id_var.get()
        if req_id:
            log_record["request_id"] = req_id

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()

        log_record["level"] = (log_record.get("level") or record.levelname).upper()
        log_record.setdefault("environment", settings.environment)


def setup_logging(level: str = None):
    logger = logging.getLogger()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(CustomJsonFormatter("%(timestamp) %(level) %(name) %(message)"))
    logger.addHandler(log_handler)
    logger.setLevel(level or settings.log_level)

    # Statement echo only when asked for explicitly
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    return logger
