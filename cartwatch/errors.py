"""Exception hierarchy shared by the check pipeline and its collaborators."""

from __future__ import annotations


class CartwatchError(RuntimeError):
    """Base class for all service errors."""


class FetchError(CartwatchError):
    """Raised when a page could not be retrieved by any fetch strategy."""

    def __init__(self, message: str, *, http_status: int = 0) -> None:
        super().__init__(message)
        self.http_status = http_status


class BlockedError(CartwatchError):
    """Raised when bot protection kept the real page out of reach."""

    def __init__(self, vendor: str, *, http_status: int = 0, message: str | None = None) -> None:
        super().__init__(message or f"Blocked by {vendor}")
        self.vendor = vendor
        self.http_status = http_status


class EvaluationError(CartwatchError):
    """Raised when a stock check cannot be evaluated against a page."""


class ConfigurationError(EvaluationError):
    """Raised when agent or notification settings are invalid."""


class PersistenceError(CartwatchError):
    """Raised when a store read or write fails."""


class NotificationError(CartwatchError):
    """Raised when an alert could not be delivered."""


class SecretResolutionError(CartwatchError):
    """Raised when a secret or its project context cannot be resolved."""


class CheckoutError(CartwatchError):
    """Raised when the auto-checkout hand-off cannot proceed."""


class NotFoundError(CartwatchError):
    """Raised when a user-owned record does not exist for that user."""


class DecryptionError(CartwatchError):
    """Raised when ciphertext cannot be decrypted with the configured key."""
