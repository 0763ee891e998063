"""
Installment Schedule Module

Splits a loan's principal and interest into equal monthly installments and
derives how far the amount paid so far has covered them.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional
import calendar

from .currency import Money


@dataclass(frozen=True)
class LoanInstallment:
    """One scheduled installment. Immutable once written."""
    loan_id: Optional[str]
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money


@dataclass(frozen=True)
class InstallmentProgress:
    """How much of an installment the loan's payments have covered"""
    installment: LoanInstallment
    amount_covered: Money

    @property
    def is_paid(self) -> bool:
        return self.amount_covered >= self.installment.total_amount

    @property
    def amount_outstanding(self) -> Money:
        return self.installment.total_amount - self.amount_covered


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_installments(loan_id: Optional[str], principal: Money, interest: Money,
                           start_date: date, count: int) -> List[LoanInstallment]:
    """
    Generate ``count`` monthly installments starting one month after start_date.

    Each installment carries principal/count and interest/count rounded to the
    currency precision. The rounding residue is not pushed into the last
    installment, so the rows can sum to slightly less or more than the loan
    total.

    Raises:
        ValueError: If count is less than 1
    """
    if count < 1:
        raise ValueError("Number of installments must be at least 1")

    divisor = Decimal(count)
    principal_share = principal / divisor
    interest_share = interest / divisor

    installments = []
    for number in range(1, count + 1):
        installments.append(LoanInstallment(
            loan_id=loan_id,
            installment_number=number,
            due_date=add_months(start_date, number),
            principal_amount=principal_share,
            interest_amount=interest_share,
            total_amount=principal_share + interest_share,
        ))
    return installments


def installment_progress(installments: List[LoanInstallment], amount_paid: Money) -> List[InstallmentProgress]:
    """Spread amount_paid over the installments in order"""
    remaining = amount_paid
    zero = Money.zero(amount_paid.currency)
    progress = []
    for installment in sorted(installments, key=lambda i: i.installment_number):
        covered = min(remaining, installment.total_amount) if remaining.is_positive() else zero
        remaining = remaining - covered
        progress.append(InstallmentProgress(installment=installment, amount_covered=covered))
    return progress
