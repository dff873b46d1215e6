"""Exception hierarchy for the pricing engine."""

from __future__ import annotations


class PriceSyncError(Exception):
    """Base exception for pricesync errors."""


class ErpError(PriceSyncError):
    """The ERP could not be used as a data source."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ErpAuthError(ErpError):
    """ERP rejected our credentials."""


class ErpTimeoutError(ErpError):
    """ERP did not answer within the request timeout."""


class ErpUnavailableError(ErpError):
    """ERP unreachable or returned a server error."""


class RuleError(PriceSyncError):
    """A pricing rule is malformed."""


class InvalidTransitionError(PriceSyncError):
    """Raised when attempting an invalid job state transition."""


class EntityNotFoundError(PriceSyncError):
    """The local entity vanished before a write could be applied."""


class ConcurrentModificationError(PriceSyncError):
    """The local entity changed between read and write."""


class JobNotFoundError(PriceSyncError):
    """No sync job with the given id."""


class ConflictNotFoundError(PriceSyncError):
    """No conflict with the given id."""


class ConflictStateError(PriceSyncError):
    """The conflict is not pending and cannot be acted on."""


class RuleNotFoundError(PriceSyncError):
    """No pricing rule with the given id."""
