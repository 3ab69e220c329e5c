"""Logging configuration with correlation ids and Betterstack support."""
import logging
import sys
import time
import uuid
from logging.handlers import RotatingFileHandler
from logtail import LogtailHandler

from docgen import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Guarantee every record carries a correlation_id attribute.

    Callers attach one with ``extra={"correlation_id": ...}``; records
    without it render as ``-`` instead of breaking the formatter.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = "-"
        return True


def new_correlation_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    return handler


def setup_logging():
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), level))

    # Rotating file under LOGS_DIR
    log_file = settings.LOGS_DIR / "docgen.log"
    root_logger.addHandler(
        _handler(RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5), logging.INFO)
    )

    if settings.BETTERSTACK_SOURCE_TOKEN:
        try:
            handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
            if settings.BETTERSTACK_INGEST_HOST:
                handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
            root_logger.addHandler(_handler(LogtailHandler(**handler_kwargs), logging.DEBUG))
            host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
            root_logger.info(f"BetterStack logging enabled (host: {host_info})")
        except Exception as e:
            root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    for noisy in ("urllib3", "docxtpl", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logging.getLogger("docgen")


logger = setup_logging()
