# Overview: Domain error taxonomy shared by services and routes.

"""
CSMS error types.

Every service raises one of these; routes turn them into
{"error": message, "details": {...}} with the class's status_code.
Anything that is not a CSMSError is an internal failure (500).
"""

from __future__ import annotations


class CSMSError(Exception):
    """Base class for expected business failures."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CSMSError, ValueError):
    """400-level input problem."""


class ConflictError(CSMSError, ValueError):
    """409-level business rule conflict (e.g., duplicate SKU)."""

    status_code = 409


class NotFoundError(CSMSError):
    status_code = 404


class ProductNotFoundError(NotFoundError):
    pass


class ProductInactiveError(CSMSError):
    pass


class OutOfStockError(CSMSError):
    pass


class InsufficientStockError(CSMSError):
    pass


class InvalidTransitionError(CSMSError):
    """Requested status change is not allowed from the current status."""


class AlreadySettledError(CSMSError):
    """Amount exceeds what is still owed or refundable."""


class InvalidSignatureError(CSMSError):
    """Webhook payload failed processor signature verification."""


class ProcessorError(CSMSError):
    """The payment processor rejected a request."""

    status_code = 502


class ProcessorUnavailableError(ProcessorError):
    """The payment processor could not be reached in time."""

    status_code = 503


class ImmutableRecordError(CSMSError):
    """Raised when code tries to modify an append-only row."""

    status_code = 500
