"""Exception hierarchy for the lending engine."""

from typing import Iterable, List, Optional


class LendingError(Exception):
    """Base exception for all lending errors."""

    def __init__(self, message: str, reasons: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.message = message
        self.reasons: List[str] = list(reasons or [])


# Validation

class ValidationError(LendingError):
    """Raised when a request field is missing or out of range."""


class InvalidInput(ValidationError):
    """Raised when a calculation receives a non-positive principal, rate or tenure."""


# Not found

class NotFoundError(LendingError):
    """Raised when a referenced entity does not exist."""


class LoanNotFound(NotFoundError):
    """Raised when no loan matches the given loan id."""


class CustomerNotFound(NotFoundError):
    """Raised when no customer matches the given customer id."""


class AccountNotFound(NotFoundError):
    """Raised when no account matches the given account number or id."""


# Business rules

class BusinessRuleViolation(LendingError):
    """Raised when a request is well-formed but not allowed by a business rule."""


class EligibilityRejected(BusinessRuleViolation):
    """Raised when a loan application fails eligibility; `reasons` lists why."""


class InvalidLoanState(BusinessRuleViolation):
    """Raised when a transition is attempted from the wrong loan state."""


class AlreadyDisbursed(BusinessRuleViolation):
    """Raised when disbursing a loan whose disbursement already completed."""


class InsufficientBalance(BusinessRuleViolation):
    """Raised when an account cannot cover a withdrawal."""


class AccountInactive(BusinessRuleViolation):
    """Raised when money movement targets an account that is not active."""


# Security

class UnauthorizedAccess(LendingError):
    """Raised when the caller's role or branch does not grant access."""


class AuthenticationError(LendingError):
    """Raised when a bearer token is missing, expired or invalid."""


# Concurrency

class ConcurrencyConflict(LendingError):
    """Raised when a loan lock cannot be acquired within the configured timeout."""
