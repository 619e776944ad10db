"""
Structured Logging

Features:
- JSON-formatted logs
- Log levels
- Contact-detail (PHI) redaction before rendering
- Current workplace attached to entries logged inside a request
"""

import logging
import re
import sys

import structlog

from rxcare.tenancy import get_current_tenant

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE = re.compile(r"(?<![\w-])\+?(?:\d{1,3}[\s.-])?\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}\b")

# Keys whose values are structural and never carry PHI
_SKIP_KEYS = {"level", "logger", "timestamp", "event_id", "intervention_number"}


def redact_contact_details(text: str, replacement: str = "[REDACTED]") -> str:
    """Mask e-mail addresses and phone numbers in free text."""
    text = _EMAIL.sub(replacement, text)
    return _PHONE.sub(replacement, text)


def phi_redaction_processor(logger, method_name, event_dict):
    """Redact contact details from every string value."""
    for key, value in event_dict.items():
        if isinstance(value, str) and key not in _SKIP_KEYS:
            event_dict[key] = redact_contact_details(value)
    return event_dict


def add_tenant_context(logger, method_name, event_dict):
    """Attach the bound workplace unless the entry already names one."""
    scope = get_current_tenant()
    if scope is not None:
        event_dict.setdefault("tenant_id", scope.tenant_id)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog for the whole process.

    Args:
        level: Minimum log level name
        json_output: Render JSON lines (production) or console output (dev)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_tenant_context,
            phi_redaction_processor,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
