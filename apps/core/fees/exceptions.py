"""
Domain errors for the fee ledger.

Every error carries a stable ``code`` and a ``details`` dict with the counts,
amounts or identifiers a caller needs to explain the failure.
"""
from functools import wraps

from django.db import DatabaseError


class FeeLedgerError(Exception):
    """Base exception for all fee ledger failures."""

    code = 'fee_ledger_error'

    def __init__(self, message='', **details):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.details = details

    def as_dict(self):
        return {'code': self.code, 'message': self.message, **self.details}


class DuplicateReceiptNumber(FeeLedgerError):
    """Receipt number is already in use."""

    code = 'duplicate_receipt_number'


class InvalidAmount(FeeLedgerError):
    """Amounts do not satisfy the ledger rules."""

    code = 'invalid_amount'


class NotFound(FeeLedgerError):
    """Requested record does not exist."""

    code = 'not_found'


class AlreadyCancelled(FeeLedgerError):
    """Receipt is already cancelled."""

    code = 'already_cancelled'


class AlreadyPromoted(FeeLedgerError):
    """Target session was already produced by a promotion."""

    code = 'already_promoted'


class AlreadyReverted(FeeLedgerError):
    """Promotion was already reverted."""

    code = 'already_reverted'


class UnsafeRevert(FeeLedgerError):
    """Reverting would destroy data entered after the promotion."""

    code = 'unsafe_revert'

    def __init__(self, message='', safety=None, **details):
        self.safety = safety
        if safety is not None:
            details.setdefault('safety', safety.as_dict())
        super().__init__(message, **details)


class StorageFailure(FeeLedgerError):
    """The database rejected the operation; nothing was applied. Retry the whole call."""

    code = 'storage_failure'


def storage_guard(func):
    """Surface database errors from a service call as StorageFailure.

    Place it outside ``transaction.atomic`` so the rollback has already
    happened when the error is translated.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError as exc:
            raise StorageFailure(
                f"{func.__name__} failed in the database: {exc}",
                operation=func.__name__,
            ) from exc

    return wrapper
