"""Logging configuration for dc-migrate using structlog.

Events go through the standard library so one event reaches two handlers: the
rich console handler renders it for people, the file handler writes it as a
JSON line so long-running imports can be audited afterwards.
"""

import logging
import time
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.stdlib import ProcessorFormatter
from structlog.typing import EventDict, WrappedLogger

from dc_migration import __version__
from dc_migration.config import LoggingConfig

APP_NAME = "dc-migrate"

# Applied to stdlib records that did not come through structlog
_FOREIGN_PRE_CHAIN: list[Any] = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
]


def add_app_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp file log entries with the application name and version."""
    event_dict["app"] = APP_NAME
    event_dict["version"] = __version__
    return event_dict


def _file_formatter(log_format: str) -> ProcessorFormatter:
    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
        tail: list[Any] = [add_app_context, structlog.processors.format_exc_info, renderer]
    else:
        tail = [add_app_context, structlog.dev.ConsoleRenderer(colors=False)]
    return ProcessorFormatter(
        processors=[ProcessorFormatter.remove_processors_meta, *tail],
        foreign_pre_chain=_FOREIGN_PRE_CHAIN,
    )


def configure_logging(settings: LoggingConfig, enable_colors: bool = True) -> None:
    """Configure structured logging for the application.

    Replaces any handlers installed by an earlier call, so the CLI can
    configure logging from its options first and again once the configuration
    file has been read.

    Args:
        settings: Console level, file level, file format and file path
        enable_colors: Enable colored output on the console
    """
    console_level = getattr(logging, settings.level)
    file_level = getattr(logging, settings.file_level)

    # RichHandler keeps log lines from tearing the progress output
    rich_handler = RichHandler(
        console=Console(stderr=True, no_color=not enable_colors),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(console_level)
    rich_handler.setFormatter(
        ProcessorFormatter(
            processors=[
                ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=False),
            ],
            foreign_pre_chain=_FOREIGN_PRE_CHAIN,
        )
    )

    handlers: list[logging.Handler] = [rich_handler]
    min_level = console_level
    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(_file_formatter(settings.format))
        handlers.append(file_handler)
        min_level = min(console_level, file_level)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(min_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            ProcessorFormatter.wrap_for_formatter,
        ],
        # Filtering happens on the handlers, which may be reconfigured later
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, typically with __name__."""
    return structlog.get_logger(name)


def log_migration_progress(
    logger: structlog.stdlib.BoundLogger,
    phase: str,
    resource_type: str,
    completed: int,
    total: int,
    **extra: Any,
) -> None:
    """Log how far a phase has got, as completed/total and a percentage."""
    logger.info(
        "migration_progress",
        phase=phase,
        resource_type=resource_type,
        completed=completed,
        total=total,
        percentage=round(completed / total * 100, 2) if total > 0 else 0,
        **extra,
    )


def log_resource_completed(
    logger: structlog.stdlib.BoundLogger,
    event: str,
    resource_type: str,
    resource_name: str | None,
    started: float,
    **extra: Any,
) -> None:
    """Log completion of a single resource operation with its elapsed time.

    Args:
        logger: Logger instance
        event: Event name (e.g. "affinity_group_created")
        resource_type: Type of resource
        resource_name: Name of resource
        started: time.monotonic() value taken when the operation began
        **extra: Additional context to log
    """
    logger.info(
        event,
        resource_type=resource_type,
        resource_name=resource_name,
        elapsed_seconds=round(time.monotonic() - started, 2),
        **extra,
    )


def log_error(
    logger: structlog.stdlib.BoundLogger,
    error: BaseException,
    context: str,
    **extra: Any,
) -> None:
    """Log an error with its type, the operation it interrupted and a traceback."""
    logger.error(
        "error_occurred",
        error_type=type(error).__name__,
        error_message=str(error),
        context=context,
        exc_info=error,
        **extra,
    )
