from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from livechat_fetcher.config import FetcherSettings

LOGGER_NAME = "livechat_fetcher"
LOG_FILE_NAME = "livechat-fetcher.log"

# Applied to stdlib records before either renderer sees them.
_RECORD_PRE_CHAIN: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
]


def configure_logging(settings: FetcherSettings, *, stream: TextIO | None = None) -> Path | None:
    """Route ``livechat_fetcher.*`` loggers to stderr and, optionally, a JSON file.

    stdout carries the JSON page output, so nothing here ever writes to it.
    Calling this again replaces the handlers installed by the previous call.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    root.propagate = False
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()

    console_stream = stream if stream is not None else sys.stderr
    root.addHandler(_stderr_handler(settings.log_level, console_stream))

    log_file = None
    if settings.log_dir is not None:
        log_file = settings.log_dir / LOG_FILE_NAME
        root.addHandler(_json_file_handler(log_file))

    root.debug("logging configured level=%s file=%s", settings.log_level.upper(), log_file)
    return log_file


def _stderr_handler(level_name: str, stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(_level_from_name(level_name))
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_RECORD_PRE_CHAIN,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=_is_terminal(stream)),
            ],
        )
    )
    return handler


def _json_file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_RECORD_PRE_CHAIN,
            processors=[
                _add_thread_and_location,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _level_from_name(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _add_thread_and_location(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    # The stream loop runs on its own thread; keep that visible in the file log.
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict.update(
            thread_name=record.threadName,
            func_name=record.funcName,
            lineno=record.lineno,
        )
    return event_dict


def _is_terminal(stream: TextIO) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, OSError, ValueError):
        return False
