"""Domain exceptions raised by the POS services.

The API layer maps each class to an HTTP status code. Services never raise
HTTPException directly so they can be reused from scripts and tests.
"""


class PosError(Exception):
    """Base class for all POS domain errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PosError):
    """Raised when input breaks a business rule (bad quantity, percent, tender...)."""

    status_code = 400


class NotFoundError(PosError):
    """Raised when a referenced row does not exist."""

    status_code = 404


class ConflictError(PosError):
    """Raised when the request clashes with current state (duplicate SKU, already inactive)."""

    status_code = 409


class InsufficientStockError(ConflictError):
    """Raised when a sale or adjustment would take stock below zero."""


class InvalidTransitionError(ConflictError):
    """Raised when a sale, purchase or return status change is not allowed."""


class InsufficientPointsError(ValidationError):
    """Raised when a customer does not hold enough loyalty points."""
