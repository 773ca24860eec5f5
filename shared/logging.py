"""
Shared logging configuration for the Membership Access Layer.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation IDs
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
principal_id_var: ContextVar[Optional[str]] = ContextVar('principal_id', default=None)
member_id_var: ContextVar[Optional[str]] = ContextVar('member_id', default=None)


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
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    # Logger names are "<service>.<component>"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add correlation context to log events."""
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)

    principal_id = principal_id_var.get()
    if principal_id:
        event_dict.setdefault("principal_id", principal_id)

    member_id = member_id_var.get()
    if member_id:
        event_dict.setdefault("member_id", member_id)

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def new_correlation_id() -> str:
    """Mint a correlation ID."""
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set correlation ID in context."""
    if not correlation_id:
        correlation_id = new_correlation_id()
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Current correlation ID, if any."""
    return correlation_id_var.get()


def set_principal_context(principal_id: Optional[str] = None, member_id: Optional[str] = None):
    """Set caller context in logging."""
    if principal_id:
        principal_id_var.set(principal_id)
    if member_id:
        member_id_var.set(member_id)


def clear_context():
    """Clear all context variables."""
    correlation_id_var.set(None)
    principal_id_var.set(None)
    member_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
