"""
Structured logging for the billing core.

Modules log through ``structlog.get_logger(__name__)``; this only wires the
processor chain once per process (CLI entry point or host application).
"""

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from dotmac.billing_core.settings import Settings


def _service_name(service: str) -> structlog.types.Processor:
    def add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def setup_logging(settings: "Settings") -> None:
    """
    Configure structlog from the observability settings.

    Entries go to stderr so command output on stdout stays machine-readable.
    Context bound with ``structlog.contextvars.bind_contextvars`` (for example
    the lifecycle pass id) is merged into every entry.
    """
    level = getattr(logging, settings.observability.log_level.value)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _service_name(settings.observability.service_name),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
