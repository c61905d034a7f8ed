"""
Shared logging configuration for ClawCloud services.
"""

import sys
import structlog
import logging
import time
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation
entitlement_id_var: ContextVar[Optional[int]] = ContextVar('entitlement_id', default=None)
event_sequence_var: ContextVar[Optional[int]] = ContextVar('event_sequence', default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add entitlement/event correlation to log events."""
    entitlement_id = entitlement_id_var.get()
    if entitlement_id is not None:
        event_dict.setdefault("entitlement_id", entitlement_id)

    sequence = event_sequence_var.get()
    if sequence is not None:
        event_dict.setdefault("event_sequence", sequence)

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_entitlement_context(entitlement_id: Optional[int] = None, event_sequence: Optional[int] = None):
    """Bind entitlement and event correlation for the current task."""
    entitlement_id_var.set(entitlement_id)
    event_sequence_var.set(event_sequence)


def clear_context():
    """Clear all context variables."""
    entitlement_id_var.set(None)
    event_sequence_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
