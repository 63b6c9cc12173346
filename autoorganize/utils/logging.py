"""
Logging for AutoOrganize.

Module loggers come from ``get_logger(__name__)``. ``setup_logging`` wires the
root logger from the ``logging`` settings section, either as plain text or as
one JSON object per line. ``LogContext`` tags every record emitted inside a
block with the document, relationship, entity or model being worked on.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from autoorganize.config import LoggingConfig, get_settings


CONTEXT_ATTRIBUTES = ("document_id", "relationship_id", "entity_id", "model", "strategy")

QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "transformers", "asyncio")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Carries ``timestamp``, ``level``, ``logger`` and ``message``, an
    ``exception`` block when the record has one, and whichever context
    attributes the record was tagged with.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_context(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context attributes set on a record, skipping unset ones."""
    return {
        attr: getattr(record, attr)
        for attr in CONTEXT_ATTRIBUTES
        if getattr(record, attr, None) is not None
    }


def _build_handlers(config: LoggingConfig, formatter: logging.Formatter) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        path = Path(config.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(config: Optional[LoggingConfig] = None) -> list[logging.Handler]:
    """
    Configure the root logger.

    Args:
        config: Logging section to apply. Defaults to the active settings.

    Returns:
        The handlers installed on the root logger
    """
    config = config or get_settings().logging
    formatter = JSONFormatter() if config.json_format else logging.Formatter(config.format)
    handlers = _build_handlers(config, formatter)

    logging.basicConfig(level=config.level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handlers


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class LogContext:
    """
    Tag log records created inside a ``with`` block.

    Usage:
        with LogContext(document_id="doc_1", model="all-minilm"):
            logger.info("Embedding chunks")

    Blocks nest; the inner block's values win and the outer ones come back
    on exit.
    """

    def __init__(self, **context):
        unknown = set(context) - set(CONTEXT_ATTRIBUTES)
        if unknown:
            raise ValueError(f"Unknown log context attributes: {', '.join(sorted(unknown))}")
        self.context = context
        self._previous_factory = None

    def __enter__(self) -> "LogContext":
        previous = logging.getLogRecordFactory()
        context = self.context

        def factory(*args, **kwargs):
            record = previous(*args, **kwargs)
            record.__dict__.update(context)
            return record

        self._previous_factory = previous
        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, *exc_info) -> None:
        if self._previous_factory is not None:
            logging.setLogRecordFactory(self._previous_factory)
            self._previous_factory = None
