"""Exception hierarchy for the loan servicing ledger.

Callers can catch a whole category (``NotFoundError``, ``IneligibleError``,
``ConflictError``) or a specific failure to render a targeted message.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class InvalidInputError(LedgerError, ValueError):
    """Raised when operation arguments are malformed."""


# Not found

class NotFoundError(LedgerError, ValueError):
    """Raised when a referenced entity does not exist."""


class CustomerNotFoundError(NotFoundError):
    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} not found")


class ItemNotFoundError(NotFoundError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found")


class LoanNotFoundError(NotFoundError):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found")


# Business rule rejections

class IneligibleError(LedgerError, ValueError):
    """Raised when a business rule rejects the requested operation."""


class CustomerIneligibleError(IneligibleError):
    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} cannot take loans")


class ItemUnavailableError(IneligibleError):
    def __init__(self, item_id: str, status: str):
        self.item_id = item_id
        self.status = status
        super().__init__(f"Item {item_id} is not available for loan (status: {status})")


class AmountExceedsCollateralError(IneligibleError):
    def __init__(self, requested: str, maximum: str):
        self.requested = requested
        self.maximum = maximum
        super().__init__(f"Loan amount {requested} cannot exceed item loan value {maximum}")


class InvalidLoanStatusError(IneligibleError):
    """Raised when a loan's status does not allow the requested operation."""

    def __init__(self, message: str, status: Optional[str] = None):
        self.status = status
        super().__init__(message)


class LoanAlreadyPaidError(InvalidLoanStatusError):
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} is already fully paid", "paid")


class LoanConfiscatedError(InvalidLoanStatusError):
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} has been confiscated", "confiscated")


class LoanRenewedError(InvalidLoanStatusError):
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} has been renewed into a new loan", "renewed")


class InterestNotPaidError(IneligibleError):
    def __init__(self, loan_id: str, interest_remaining: str):
        self.interest_remaining = interest_remaining
        super().__init__(
            f"Interest must be paid before renewal of loan {loan_id} "
            f"(outstanding: {interest_remaining})"
        )


class InvalidStatusTransitionError(IneligibleError):
    def __init__(self, item_id: str, from_status: str, to_status: str):
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition for item {item_id}: {from_status} -> {to_status}")


class PaymentNotReversibleError(IneligibleError):
    def __init__(self, payment_id: str, status: str):
        self.status = status
        super().__init__(f"Payment {payment_id} cannot be reversed (status: {status})")


# Conflicts

class ConflictError(LedgerError):
    """Raised when the operation conflicts with existing state."""


class ItemAlreadyPledgedError(ConflictError):
    def __init__(self, item_id: str, loan_number: str):
        self.item_id = item_id
        self.loan_number = loan_number
        super().__init__(f"Item {item_id} already secures active loan {loan_number}")


class ConcurrentModificationError(ConflictError):
    def __init__(self, table: str, record_id: str, expected_version: int):
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"{table} record {record_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


# Store-level failures

class NumberGenerationError(LedgerError):
    def __init__(self, kind: str, cause: Optional[BaseException] = None):
        self.kind = kind
        self.cause = cause
        message = f"Failed to generate {kind} number"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class PersistenceError(LedgerError):
    """Raised when an underlying write fails. Always names the operation."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Failed to {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class TransactionError(LedgerError):
    """Raised when a transaction cannot begin or commit."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        message = f"Failed to {stage} transaction"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
