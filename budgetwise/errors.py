from __future__ import annotations


class ValidationError(ValueError):
    """Raised when caller input fails a ledger rule (month, year, amount, category)."""


class NotFoundError(LookupError):
    """Raised when a user, transaction, budget or savings record does not exist."""


class AuthorizationError(PermissionError):
    """Raised when a record belongs to a different user than the caller."""


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class TextProviderError(RuntimeError):
    """Raised when the text-generation provider returns an API error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceeded(TextProviderError):
    """Raised when the text-generation provider rejects a call for quota reasons."""


class IdentityConflict(RuntimeError):
    """Raised when a user row cannot be created or re-read after a uniqueness violation."""
