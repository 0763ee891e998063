"""
Pydantic schemas for ledger operation inputs
"""

from decimal import Decimal
from datetime import date
from typing import Optional
from pydantic import BaseModel, Field

from .loans import PaymentPlanType
from .payments import PaymentMethod


class LoanTermsInput(BaseModel):
    """Fields shared by loan creation and the calculation preview"""
    item_id: str
    loan_amount: Decimal = Field(..., gt=0, description="Principal to lend")
    interest_rate: Decimal = Field(..., ge=0, le=100, description="Flat interest, percent of principal")
    loan_term_days: int = Field(..., gt=0)
    payment_plan_type: PaymentPlanType = PaymentPlanType.SINGLE
    number_of_installments: int = Field(0, ge=0)
    start_date: Optional[date] = None  # defaults to today


class CalculateLoanInput(LoanTermsInput):
    pass


class CreateLoanInput(LoanTermsInput):
    customer_id: str
    branch_id: str
    grace_period_days: Optional[int] = Field(None, ge=0, le=30, description="Defaults to configuration")
    requires_minimum_payment: bool = False
    minimum_payment_amount: Optional[Decimal] = Field(None, ge=0)
    late_fee_rate: Decimal = Field(Decimal("0"), ge=0, description="Percent of principal per day overdue")
    notes: Optional[str] = None
    created_by: Optional[str] = None


class CreatePaymentInput(BaseModel):
    loan_id: str
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference_number: Optional[str] = None
    branch_id: Optional[str] = None  # defaults to the loan's branch
    notes: Optional[str] = None
    created_by: Optional[str] = None


class RenewLoanInput(BaseModel):
    loan_id: str
    new_term_days: int = Field(..., gt=0)
    new_interest_rate: Decimal = Field(Decimal("0"), ge=0, le=100, description="0 keeps the current rate")
    pay_interest: bool = Field(False, description="Require interest to be fully paid before renewal")
    created_by: Optional[str] = None


class ReversePaymentInput(BaseModel):
    payment_id: str
    reason: str = Field(..., min_length=1)
    reversed_by: Optional[str] = None
