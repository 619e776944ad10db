"""
Error Taxonomy

Every failure surfaced to callers is one of these kinds. Each carries a
stable code, a human-readable message and, for validation failures, the
offending fields.
"""

from typing import Any


class RxCareError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the stable error body."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"success": False, "error": body}


class ValidationError(RxCareError):
    """Malformed input: bad id, bad date, missing or out-of-range field."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: str | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if errors:
            details["errors"] = errors
        super().__init__(message, details)
        self.field = field
        self.errors = errors or []


class NotFoundError(RxCareError):
    """Entity absent or not visible in the caller's tenant."""

    code = "NOT_FOUND"
    status_code = 404


class BusinessRuleError(RxCareError):
    """Well-formed request that violates a domain rule."""

    code = "BUSINESS_RULE_VIOLATION"
    status_code = 409


class ConflictError(BusinessRuleError):
    """Lost an optimistic-concurrency race on the same document."""

    code = "CONCURRENT_MODIFICATION"


class InternalError(RxCareError):
    """Unexpected failure. The message never carries internals."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(message)


# =============================================================================
# Store-level errors (never leave the service layer)
# =============================================================================

class StoreError(Exception):
    """Base class for persistence adapter failures."""
    pass


class DuplicateKeyError(StoreError):
    """A unique index rejected the write."""
    pass


class StoreUnavailableError(StoreError):
    """The backing store could not be reached."""
    pass


def from_pydantic(exc: Exception, message: str = "Invalid input") -> ValidationError:
    """Convert a pydantic ValidationError into ours, keeping field paths."""
    errors = []
    for err in getattr(exc, "errors", lambda: [])():
        errors.append({
            "field": ".".join(str(p) for p in err.get("loc", ())),
            "message": err.get("msg", ""),
        })
    field = errors[0]["field"] if errors else None
    return ValidationError(message, field=field, errors=errors)
