"""
Payment Allocation Module

Distributes a payment over a loan's outstanding buckets in fixed priority:
late fee first, then interest, then principal.
"""

from dataclasses import dataclass

from .currency import Money


@dataclass(frozen=True)
class PaymentAllocation:
    """Breakdown of a single payment across loan buckets"""
    late_fee: Money
    interest: Money
    principal: Money
    excess: Money  # part of ``principal`` beyond the outstanding principal

    @property
    def total(self) -> Money:
        return self.late_fee + self.interest + self.principal


def allocate_payment(amount: Money, late_fee_due: Money, interest_due: Money,
                     principal_due: Money) -> PaymentAllocation:
    """
    Allocate a payment using the late fee -> interest -> principal waterfall.

    Whatever remains after the late fee and interest is attributed to
    principal, including any amount beyond the outstanding principal. That
    overflow is reported separately as ``excess`` so the loan balance can be
    floored at zero and a reversal can restore exactly what was consumed.

    Args:
        amount: Payment amount (must be positive)
        late_fee_due: Outstanding late fee
        interest_due: Outstanding interest
        principal_due: Outstanding principal

    Returns:
        PaymentAllocation whose buckets sum exactly to ``amount``

    Raises:
        ValueError: If the amount is not positive or currencies differ
    """
    if not amount.is_positive():
        raise ValueError("Payment amount must be positive")

    remaining = amount

    late_fee = min(remaining, late_fee_due) if late_fee_due.is_positive() else Money.zero(amount.currency)
    remaining = remaining - late_fee

    interest = min(remaining, interest_due) if interest_due.is_positive() else Money.zero(amount.currency)
    remaining = remaining - interest

    principal = remaining
    excess = Money.zero(amount.currency)
    if principal > principal_due:
        excess = principal - max(principal_due, Money.zero(amount.currency))

    return PaymentAllocation(
        late_fee=late_fee,
        interest=interest,
        principal=principal,
        excess=excess,
    )
