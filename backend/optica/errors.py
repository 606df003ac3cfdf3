# Overview: Error taxonomy shared by services and routes.

"""
Service-layer exceptions.

Every error knows the HTTP status it maps to, so routes can render any of
them with a single except clause:

    {"success": false, "message": str(e), "details": e.details}

Services raise these; they never build responses themselves.
"""

from __future__ import annotations


class OpticaError(Exception):
    """Base class for expected, user-reportable failures."""
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"success": False, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(OpticaError, ValueError):
    """400-level input problem (malformed, missing or out-of-range)."""
    status_code = 400


class ForbiddenFieldError(ValidationError):
    """Client sent a field that is always derived on the server."""

    def __init__(self, fields: list[str], details: dict | None = None):
        merged = {"fields": list(fields)}
        merged.update(details or {})
        super().__init__(f"Fields not allowed: {', '.join(fields)}", merged)
        self.fields = list(fields)


class NotFoundError(OpticaError, LookupError):
    """Dangling reference to a patient, store, product, variant, measure, zone or sale."""
    status_code = 404


class ZoneRequiredError(ValidationError):
    """Line targets a zone-subdivided item but names no zone."""


class ZoneNotStockedError(ValidationError):
    """Line targets a zone where the variant/measure has no stock tuple."""


class AmountExceedsTotalError(ValidationError):
    """Cumulative payments would exceed the sale total."""


class ConcurrencyConflictError(OpticaError):
    """Transient write conflict that outlived the retry budget."""
    status_code = 500


class PersistenceError(OpticaError):
    """Unexpected storage failure."""
    status_code = 500
