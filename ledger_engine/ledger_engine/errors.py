"""Failure taxonomy for ledger operations.

Money-affecting failures are raised as :class:`LedgerError` subclasses
inside a transaction callback so the transaction wrapper rolls back every
partial balance mutation.  The public entry points then convert them into
a :class:`LedgerFailure` value.  :class:`OwnerNotFoundError` is the one
exception that is never converted: it signals a caller bug, not a business
outcome.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class FailureCode(str, Enum):
    """Typed failure categories surfaced to callers."""

    INSUFFICIENT_GRANTS = "INSUFFICIENT_GRANTS"
    NO_REPOSITORY_URL = "NO_REPOSITORY_URL"
    MALFORMED_REPOSITORY_URL = "MALFORMED_REPOSITORY_URL"
    NO_ORGANIZATION_FOUND = "NO_ORGANIZATION_FOUND"
    WRITE_FAILURE = "WRITE_FAILURE"


class LedgerFailure(BaseModel):
    """A typed, human-readable failure returned instead of raised."""

    code: FailureCode
    message: str = Field(..., min_length=1)
    cause: str | None = Field(
        default=None,
        description="Repr of the underlying exception, kept for logging.",
    )


class LedgerError(Exception):
    """Base class for recoverable ledger failures."""

    code: FailureCode = FailureCode.WRITE_FAILURE

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_failure(self) -> LedgerFailure:
        return LedgerFailure(
            code=self.code,
            message=self.message,
            cause=repr(self.cause) if self.cause is not None else None,
        )


class InsufficientGrantsError(LedgerError):
    """The owner has no eligible (unexpired) grants to consume from."""

    code = FailureCode.INSUFFICIENT_GRANTS


class LedgerWriteError(LedgerError):
    """A persistence error occurred while mutating the ledger."""

    code = FailureCode.WRITE_FAILURE


class DuplicateOperationError(LedgerWriteError):
    """A grant was requested with an ``operation_id`` that already exists."""

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Operation {operation_id} already exists in the ledger")
        self.operation_id = operation_id


class OwnerNotFoundError(Exception):
    """The owner record required for a cycle reset does not exist."""

    def __init__(self, owner_id: str) -> None:
        super().__init__(f"User {owner_id} not found")
        self.owner_id = owner_id
