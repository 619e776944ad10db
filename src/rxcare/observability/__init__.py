"""
RxCare Observability Module

Structured logging with PHI redaction.
"""

from rxcare.observability.logging import configure_logging, redact_contact_details

__all__ = [
    "configure_logging",
    "redact_contact_details",
]
