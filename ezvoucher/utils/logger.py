import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

FILE_LOGGER_NAME = "ezvoucher.file"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5


class JsonFileSink:
    """Processor that mirrors every event as one JSON line into a size-rotated log file."""

    def __init__(self, path: str | Path, max_bytes: int = LOG_MAX_BYTES, backup_count: int = LOG_BACKUP_COUNT):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.handler = RotatingFileHandler(self.path, maxBytes=max_bytes, backupCount=backup_count,
                                           encoding="utf-8", mode="a")
        self.handler.setFormatter(logging.Formatter("%(message)s"))
        self.logger = logging.getLogger(FILE_LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        self.logger.addHandler(self.handler)
        self._renderer = structlog.processors.JSONRenderer(
            serializer=json.dumps, ensure_ascii=False, default=str
        )

    def __call__(self, logger, method_name: str, event_dict: dict) -> dict:
        self.logger.info(self._renderer(logger, method_name, dict(event_dict)))
        return event_dict

    def close(self):
        self.logger.removeHandler(self.handler)
        self.handler.close()


def close_file_logging():
    """Detach and close every handler a previous ``setup_logging`` attached."""
    file_logger = logging.getLogger(FILE_LOGGER_NAME)
    for handler in list(file_logger.handlers):
        file_logger.removeHandler(handler)
        handler.close()


def setup_logging(debug: bool = False, log_file: str | Path | None = None) -> structlog.BoundLogger:
    """Configure structured logging, optionally mirrored to a rotating JSON log file."""
    log_level = logging.DEBUG if debug else logging.INFO
    close_file_logging()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if log_file:
        processors.append(JsonFileSink(log_file))
    processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger()


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance with optional name binding."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(component=name)
    return logger
