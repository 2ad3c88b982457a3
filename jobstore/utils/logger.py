import logging
import sys
from contextlib import contextmanager
from pythonjsonlogger import jsonlogger
import contextvars

# Correlation fields attached to every JSON record while set
ctx_resource = contextvars.ContextVar("resource", default=None)
ctx_worker_id = contextvars.ContextVar("worker_id", default=None)

_CORRELATION_VARS = {
    "resource": ctx_resource,
    "worker_id": ctx_worker_id,
}


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        for field_name, var in _CORRELATION_VARS.items():
            value = var.get()
            if value:
                log_record[field_name] = value


@contextmanager
def worker_context(worker_id: str):
    """Tag log records emitted inside the block with *worker_id*."""
    token = ctx_worker_id.set(worker_id)
    try:
        yield
    finally:
        ctx_worker_id.reset(token)


def setup_logger(log_format: str = "text", log_level: str = "INFO", stream=None):
    """Configure the root logger."""
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)

    if log_format.lower() == "json":
        formatter = CorrelationJsonFormatter(
            '%(asctime)s %(levelname)s %(name)s %(message)s',
            rename_fields={"levelname": "level", "asctime": "timestamp"}
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    # Driver chatter drowns out lock retries at DEBUG
    for noisy in ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncpg"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def configure_from_settings(cfg) -> logging.Logger:
    """Apply ``LOG_FORMAT`` / ``LOG_LEVEL`` (``DEBUG`` forces DEBUG level)."""
    level = "DEBUG" if cfg.DEBUG else cfg.LOG_LEVEL
    return setup_logger(cfg.LOG_FORMAT, level)
