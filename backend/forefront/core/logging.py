"""
Structured logging configuration for the orchestration core.

JSON-structured logging with correlation IDs, shared by every stage of the
pipeline so that one request can be followed from classification to the
final quality report.

All logs include:
- timestamp (ISO 8601 format)
- level
- service (service name identifier)
- trace_id / request_id / user_id / session_id (when bound for the current request)

The orchestrator binds the ids once per request with bind_request_context; the
trace id is the OpenTelemetry id of the request's root span, so log lines and
spans can be joined.
"""
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from structlog.types import Processor

# Request-scoped correlation context
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

SERVICE_NAME = "forefront_orchestrator"

# Provider clients log one line per HTTP call
NOISY_LOGGERS = ("httpx", "httpcore")


def add_request_context(
    logger: structlog.BoundLogger,
    method_name: str,
    event_dict: Dict[str, Any],
) -> Dict[str, Any]:
    """Add the bound correlation ids and the service name to every log entry."""
    for key, var in (
        ("trace_id", trace_id_var),
        ("request_id", request_id_var),
        ("user_id", user_id_var),
        ("session_id", session_id_var),
    ):
        value = var.get()
        if value:
            event_dict[key] = value

    event_dict["service"] = SERVICE_NAME

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    service_name: Optional[str] = None,
    json_output: bool = True,
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name identifier (defaults to SERVICE_NAME)
        json_output: JSON lines when True, coloured console output otherwise
    """
    global SERVICE_NAME
    if service_name:
        SERVICE_NAME = service_name

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_request_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger (typically ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def set_trace_id(trace_id: Optional[str]) -> None:
    trace_id_var.set(trace_id)


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def get_user_id() -> Optional[str]:
    return user_id_var.get()


def get_session_id() -> Optional[str]:
    return session_id_var.get()


def bind_request_context(
    request_id: Optional[str],
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> None:
    """Bind the correlation ids of one request to the current task."""
    request_id_var.set(request_id)
    user_id_var.set(user_id)
    session_id_var.set(session_id)
    trace_id_var.set(None)


def generate_request_id() -> str:
    """Generate a new unique request ID (UUID4 string)."""
    return str(uuid.uuid4())