"""
Structured logging for spine-devops.

Configures structlog once per process and routes the stdlib loggers used by
the deploy modules (``logging.getLogger(__name__)`` with ``extra={...}``)
through the same processor chain, so a deploy run produces one consistent
stream: colored key/value lines on a terminal, ECS-compatible JSON in CI.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="spine-devops")
            │
            ▼
        shared processors:
          1. merge_contextvars      (run_id / env / service bound per run)
          2. add_log_level, add_logger_name
          3. TimeStamper(iso)
          4. ExtraAdder             (stdlib ``extra=`` fields)
          5. service metadata
            │
            ▼
        JSONRenderer (+ @timestamp, log.level)   or   ConsoleRenderer

    Operator milestones (``✓`` / ``✗``) are not logs; they go through
    :class:`spine_devops.deploy.progress.ProgressReporter`.

Examples:
    >>> from spine_devops.core.logging import configure_logging, LogContext
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> with LogContext(run_id="abc123", env="dev"):
    ...     logging.getLogger("spine_devops.deploy").info("network.ready")

Tags:
    logging, structlog, observability, ecs, json-logging
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "spine-devops"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Make field names Elasticsearch/ECS compatible."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "spine-devops",
    stream: Any = None,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        stream: Output stream, stderr by default so stdout stays free for
            operator milestones and ``--json`` results
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    stream = stream or sys.stderr
    if json_format is None:
        json_format = not stream.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        _add_service_metadata,
    ]

    renderer: Processor
    if json_format:
        renderer = structlog.processors.JSONRenderer()
        final_processors: list[Processor] = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _elasticsearch_compatible,
            renderer,
        ]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())
        final_processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=final_processors,
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper()))

    # SDK loggers never go below INFO.
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(max(logging.INFO, root.level))


def get_logger(name: str | None = None) -> Any:
    """Get a structlog bound logger."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(run_id="abc123", service="web-api"):
            logger.info("deploy.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
