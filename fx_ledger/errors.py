"""Exception hierarchy for fx_ledger."""

from __future__ import annotations


class FxLedgerError(Exception):
    """Base exception for all fx_ledger errors."""


class ValidationError(FxLedgerError, ValueError):
    """Raised when caller supplied data is rejected before any mutation."""


class RuleValidationError(ValidationError):
    """Raised when a rule's stage, operator or entries are invalid."""


class ScheduleTransferError(ValidationError):
    """Raised when a schedules export file cannot be imported at all."""


class ScheduleNotFoundError(FxLedgerError, LookupError):
    """Raised when a schedule id does not resolve to an active schedule."""


class ProviderError(FxLedgerError):
    """Raised inside exchange rate providers; never escapes their public methods."""


__all__ = [
    "FxLedgerError",
    "ProviderError",
    "RuleValidationError",
    "ScheduleNotFoundError",
    "ScheduleTransferError",
    "ValidationError",
]
