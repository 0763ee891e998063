"""
Payment Module

Applies payments to pawn loans through the late fee -> interest -> principal
waterfall, reverses them exactly, and answers payoff and summary queries.
"""

from dataclasses import dataclass
from datetime import datetime, date
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, TypeVar, TYPE_CHECKING
import uuid

from .allocation import allocate_payment
from .config import LedgerConfig, get_config
from .currency import Money, Currency, money_from_storage
from .customers import CustomerCreditUpdate, update_credit_best_effort
from .exceptions import (
    LoanNotFoundError, PaymentNotFoundError, LoanAlreadyPaidError, LoanConfiscatedError,
    LoanRenewedError, PaymentNotReversibleError, ItemNotFoundError, ItemAlreadyPledgedError,
    InvalidStatusTransitionError, ConcurrentModificationError,
)
from .items import ItemStatus
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .storage import (
    StorageInterface, StorageRecord, next_document_number, persistence_errors, utc_now, parse_datetime,
)

if TYPE_CHECKING:
    from .schemas import CreatePaymentInput, ReversePaymentInput


T = TypeVar("T")


class PaymentStatus(Enum):
    COMPLETED = "completed"
    REVERSED = "reversed"


class PaymentMethod(Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHECK = "check"
    OTHER = "other"


_MONEY_FIELDS = (
    'amount', 'principal_amount', 'interest_amount', 'late_fee_amount', 'excess_amount',
    'loan_balance_after', 'interest_balance_after',
)


@dataclass
class Payment(StorageRecord):
    """A payment against a loan and how it was allocated"""
    payment_number: str
    branch_id: str
    loan_id: str
    customer_id: str
    amount: Money
    principal_amount: Money
    interest_amount: Money
    late_fee_amount: Money
    payment_date: datetime
    loan_balance_after: Money
    interest_balance_after: Money
    excess_amount: Money = None  # share of principal_amount beyond the outstanding principal
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference_number: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED
    notes: Optional[str] = None
    created_by: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    reversal_reason: Optional[str] = None

    def __post_init__(self):
        if self.excess_amount is None:
            self.excess_amount = Money.zero(self.amount.currency)

        # Breakdown must account for the whole amount
        allocated = self.principal_amount + self.interest_amount + self.late_fee_amount
        if allocated != self.amount:
            raise ValueError(f"Payment amount {self.amount.to_string()} does not equal "
                             f"principal {self.principal_amount.to_string()} + "
                             f"interest {self.interest_amount.to_string()} + "
                             f"late fee {self.late_fee_amount.to_string()}")


@dataclass
class PaymentResult:
    payment: Payment
    loan: Loan
    is_fully_paid: bool
    remaining_balance: Money


@dataclass
class PaymentSummary:
    """Totals over a set of payments. Bucket totals count completed payments only."""
    payment_count: int
    completed_count: int
    reversed_count: int
    total_collected: Money
    total_reversed: Money
    principal_collected: Money
    interest_collected: Money
    late_fee_collected: Money


class PaymentStore:
    """Persistence for payments plus the summary queries reports need"""

    def __init__(self, storage: StorageInterface, currency: Currency):
        self.storage = storage
        self.currency = currency
        self.table_name = "payments"

    def get(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.table_name, payment_id)
        if not data:
            return None
        return self._payment_from_dict(data)

    def create(self, payment: Payment) -> None:
        with persistence_errors("create payment"):
            self.storage.save(self.table_name, payment.id, self._payment_to_dict(payment))

    def update(self, payment: Payment) -> None:
        payment.updated_at = utc_now()
        with persistence_errors("update payment"):
            self.storage.save(self.table_name, payment.id, self._payment_to_dict(payment))

    def list_by_loan(self, loan_id: str) -> List[Payment]:
        records = self.storage.find(self.table_name, {'loan_id': loan_id})
        payments = [self._payment_from_dict(data) for data in records]
        return sorted(payments, key=lambda p: (p.payment_date, p.payment_number))

    def generate_number(self, prefix: str) -> str:
        return next_document_number(self.storage, "payment", prefix)

    def summarize_loan(self, loan_id: str) -> PaymentSummary:
        return self._summarize(self.list_by_loan(loan_id))

    def summarize_branch(self, branch_id: str, start_date: Optional[date] = None,
                         end_date: Optional[date] = None) -> PaymentSummary:
        """Summary of a branch's payments dated within [start_date, end_date]"""
        payments = []
        for data in self.storage.find(self.table_name, {'branch_id': branch_id}):
            payment = self._payment_from_dict(data)
            payment_day = payment.payment_date.date()
            if start_date and payment_day < start_date:
                continue
            if end_date and payment_day > end_date:
                continue
            payments.append(payment)
        return self._summarize(payments)

    def _summarize(self, payments: List[Payment]) -> PaymentSummary:
        zero = Money.zero(self.currency)
        summary = PaymentSummary(
            payment_count=len(payments),
            completed_count=0,
            reversed_count=0,
            total_collected=zero,
            total_reversed=zero,
            principal_collected=zero,
            interest_collected=zero,
            late_fee_collected=zero,
        )
        for payment in payments:
            if payment.status == PaymentStatus.REVERSED:
                summary.reversed_count += 1
                summary.total_reversed = summary.total_reversed + payment.amount
                continue
            summary.completed_count += 1
            summary.total_collected = summary.total_collected + payment.amount
            summary.principal_collected = summary.principal_collected + payment.principal_amount
            summary.interest_collected = summary.interest_collected + payment.interest_amount
            summary.late_fee_collected = summary.late_fee_collected + payment.late_fee_amount
        return summary

    def _payment_to_dict(self, payment: Payment) -> Dict:
        """Convert payment to dictionary"""
        result = payment.base_dict()
        result.update({
            'payment_number': payment.payment_number,
            'branch_id': payment.branch_id,
            'loan_id': payment.loan_id,
            'customer_id': payment.customer_id,
            'currency': payment.amount.currency.code,
            'payment_method': payment.payment_method.value,
            'reference_number': payment.reference_number,
            'status': payment.status.value,
            'payment_date': payment.payment_date.isoformat(),
            'notes': payment.notes,
            'created_by': payment.created_by,
            'reversed_at': payment.reversed_at.isoformat() if payment.reversed_at else None,
            'reversed_by': payment.reversed_by,
            'reversal_reason': payment.reversal_reason,
        })

        # Convert money amounts
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(payment, name).amount)

        return result

    def _payment_from_dict(self, data: Dict) -> Payment:
        """Convert dictionary to payment"""
        currency_code = data['currency']

        def get_money(name: str) -> Money:
            return money_from_storage(data[name], currency_code)

        return Payment(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            payment_number=data['payment_number'],
            branch_id=data['branch_id'],
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            amount=get_money('amount'),
            principal_amount=get_money('principal_amount'),
            interest_amount=get_money('interest_amount'),
            late_fee_amount=get_money('late_fee_amount'),
            excess_amount=get_money('excess_amount'),
            payment_date=parse_datetime(data['payment_date']),
            loan_balance_after=get_money('loan_balance_after'),
            interest_balance_after=get_money('interest_balance_after'),
            payment_method=PaymentMethod(data['payment_method']),
            reference_number=data.get('reference_number'),
            status=PaymentStatus(data['status']),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            reversed_at=parse_datetime(data.get('reversed_at')),
            reversed_by=data.get('reversed_by'),
            reversal_reason=data.get('reversal_reason'),
        )


class PaymentLedger:
    """
    Applies and reverses loan payments.

    Each operation runs in one storage transaction. Loan writes are versioned,
    and a version conflict is retried up to ``optimistic_retry_attempts`` times.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.loan_store = loan_manager.loan_store
        self.item_state = loan_manager.item_state
        self.customer_store = loan_manager.customer_store
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        self.payment_store = PaymentStore(storage, self.currency)
        self.logger = get_logger("pawn_ledger.payments")

    def apply_payment(self, payment_input: 'CreatePaymentInput') -> PaymentResult:
        """
        Apply a payment to a loan.

        Raises:
            LoanNotFoundError: If the loan does not exist
            LoanAlreadyPaidError, LoanConfiscatedError, LoanRenewedError:
                If the loan no longer accepts payments
            ConcurrentModificationError: If retries are exhausted
        """
        amount = Money(payment_input.amount, self.currency)

        log_action(self.logger, "info", "Processing payment",
                   user_id=payment_input.created_by, action="payment_create",
                   resource=f"loan:{payment_input.loan_id}",
                   extra={"amount": str(amount.amount),
                          "payment_method": payment_input.payment_method.value})

        payment, loan, is_fully_paid = self._with_retry(
            "payment_create", payment_input.loan_id,
            lambda: self._apply_once(payment_input, amount),
        )

        update_credit_best_effort(
            self.customer_store, loan.customer_id,
            lambda current: CustomerCreditUpdate(total_paid=current.total_paid + amount),
            self.logger, action="payment_create", user_id=payment_input.created_by,
        )

        log_action(self.logger, "info", f"Payment {payment.payment_number} processed successfully",
                   user_id=payment_input.created_by, action="payment_create",
                   resource=f"payment:{payment.id}",
                   extra={
                       "loan_number": loan.loan_number,
                       "late_fee_paid": str(payment.late_fee_amount.amount),
                       "interest_paid": str(payment.interest_amount.amount),
                       "principal_paid": str(payment.principal_amount.amount),
                       "excess": str(payment.excess_amount.amount),
                       "fully_paid": is_fully_paid,
                   })

        return PaymentResult(
            payment=payment,
            loan=loan,
            is_fully_paid=is_fully_paid,
            remaining_balance=loan.remaining_balance(),
        )

    def reverse_payment(self, reverse_input: 'ReversePaymentInput') -> Payment:
        """
        Undo a completed payment by restoring exactly what it consumed.

        Raises:
            PaymentNotFoundError: If the payment does not exist
            PaymentNotReversibleError: If the payment is already reversed
            ItemAlreadyPledgedError: If reopening a paid loan would pledge an item
                that already secures another loan
            InvalidStatusTransitionError: If the released item cannot return to collateral
            ConcurrentModificationError: If retries are exhausted
        """
        payment, loan = self._with_retry(
            "payment_reverse", reverse_input.payment_id,
            lambda: self._reverse_once(reverse_input),
        )

        update_credit_best_effort(
            self.customer_store, loan.customer_id,
            lambda current: CustomerCreditUpdate(
                total_paid=max(current.total_paid - payment.amount, Money.zero(current.total_paid.currency))
            ),
            self.logger, action="payment_reverse", user_id=reverse_input.reversed_by,
        )

        log_action(self.logger, "info", f"Payment {payment.payment_number} reversed",
                   user_id=reverse_input.reversed_by, action="payment_reverse",
                   resource=f"payment:{payment.id}",
                   extra={"loan_number": loan.loan_number, "reason": reverse_input.reason,
                          "amount": str(payment.amount.amount)})
        return payment

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.payment_store.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    def list_payments(self, loan_id: str) -> List[Payment]:
        return self.payment_store.list_by_loan(loan_id)

    def calculate_payoff(self, loan_id: str) -> Money:
        """Amount that closes the loan today"""
        return self._require_loan(loan_id).remaining_balance()

    def calculate_minimum_payment(self, loan_id: str) -> Money:
        """Minimum payment plus outstanding late fee, or the payoff when smaller"""
        loan = self._require_loan(loan_id)
        remaining = loan.remaining_balance()

        if not loan.requires_minimum_payment or loan.minimum_payment_amount is None:
            return remaining

        if remaining < loan.minimum_payment_amount:
            return remaining

        return loan.minimum_payment_amount + loan.late_fee_amount

    def get_loan_payment_summary(self, loan_id: str) -> PaymentSummary:
        self._require_loan(loan_id)
        return self.payment_store.summarize_loan(loan_id)

    def get_branch_payment_summary(self, branch_id: str, start_date: Optional[date] = None,
                                   end_date: Optional[date] = None) -> PaymentSummary:
        return self.payment_store.summarize_branch(branch_id, start_date, end_date)

    def _apply_once(self, payment_input: 'CreatePaymentInput', amount: Money) -> Tuple[Payment, Loan, bool]:
        # Reads happen inside the transaction so they see a consistent loan
        with self.storage.atomic():
            loan = self._require_loan(payment_input.loan_id)
            self._check_accepts_payments(loan)

            allocation = allocate_payment(
                amount, loan.late_fee_amount, loan.interest_remaining, loan.principal_remaining
            )

            loan.late_fee_amount = loan.late_fee_amount - allocation.late_fee
            loan.interest_remaining = loan.interest_remaining - allocation.interest
            loan.principal_remaining = loan.principal_remaining - (allocation.principal - allocation.excess)
            loan.amount_paid = loan.amount_paid + amount
            loan.updated_by = payment_input.created_by

            is_fully_paid = loan.principal_remaining.is_zero() and loan.interest_remaining.is_zero()
            if is_fully_paid:
                loan.status = LoanStatus.PAID
                loan.paid_date = utc_now()

            now = utc_now()
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_number=self.payment_store.generate_number(self.config.payment_number_prefix),
                branch_id=payment_input.branch_id or loan.branch_id,
                loan_id=loan.id,
                customer_id=loan.customer_id,
                amount=amount,
                principal_amount=allocation.principal,
                interest_amount=allocation.interest,
                late_fee_amount=allocation.late_fee,
                excess_amount=allocation.excess,
                payment_date=now,
                loan_balance_after=loan.principal_remaining,
                interest_balance_after=loan.interest_remaining,
                payment_method=payment_input.payment_method,
                reference_number=payment_input.reference_number,
                notes=payment_input.notes,
                created_by=payment_input.created_by,
            )

            self.loan_store.update(loan)
            self.payment_store.create(payment)

            if is_fully_paid:
                self._move_item(loan, ItemStatus.AVAILABLE, payment_input.created_by,
                                f"Released after payoff of loan {loan.loan_number}", "released")

        return payment, loan, is_fully_paid

    def _reverse_once(self, reverse_input: 'ReversePaymentInput') -> Tuple[Payment, Loan]:
        with self.storage.atomic():
            payment = self.get_payment(reverse_input.payment_id)
            if payment.status != PaymentStatus.COMPLETED:
                raise PaymentNotReversibleError(payment.id, payment.status.value)

            loan = self._require_loan(payment.loan_id)
            was_paid = loan.status == LoanStatus.PAID
            if was_paid:
                pledged = self.loan_store.find_active_for_item(loan.item_id)
                if pledged is not None:
                    raise ItemAlreadyPledgedError(loan.item_id, pledged.loan_number)

            loan.principal_remaining = loan.principal_remaining + (payment.principal_amount - payment.excess_amount)
            loan.interest_remaining = loan.interest_remaining + payment.interest_amount
            loan.late_fee_amount = loan.late_fee_amount + payment.late_fee_amount
            loan.amount_paid = loan.amount_paid - payment.amount
            loan.updated_by = reverse_input.reversed_by
            if was_paid:
                loan.status = LoanStatus.ACTIVE
                loan.paid_date = None

            payment.status = PaymentStatus.REVERSED
            payment.reversed_at = utc_now()
            payment.reversed_by = reverse_input.reversed_by
            payment.reversal_reason = reverse_input.reason

            self.loan_store.update(loan)
            self.payment_store.update(payment)

            if was_paid:
                # A rejected transition rolls the whole reversal back
                self.item_state.transition(
                    loan.item_id, ItemStatus.COLLATERAL, actor=reverse_input.reversed_by,
                    notes=f"Pledged again after reversal of payment {payment.payment_number}",
                    action="repledged", reference_type="loan", reference_id=loan.id,
                )

        return payment, loan

    def _with_retry(self, action: str, resource_id: str, operation: Callable[[], T]) -> T:
        attempts = max(1, self.config.optimistic_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except ConcurrentModificationError:
                if attempt == attempts:
                    log_action(self.logger, "error",
                               f"Giving up after {attempts} concurrent modification conflicts",
                               action=action, resource=resource_id)
                    raise
                log_action(self.logger, "warning", "Concurrent modification, retrying",
                           action=action, resource=resource_id, extra={"attempt": attempt})

    def _move_item(self, loan: Loan, status: ItemStatus, actor: Optional[str], notes: str, action: str) -> None:
        """Item follow-up of a payment. A rejected transition never fails the payment."""
        try:
            self.item_state.transition(
                loan.item_id, status, actor=actor, notes=notes, action=action,
                reference_type="loan", reference_id=loan.id,
            )
        except (ItemNotFoundError, InvalidStatusTransitionError):
            log_action(self.logger, "warning",
                       f"Could not move item {loan.item_id} to {status.value}",
                       user_id=actor, action=action, resource=f"item:{loan.item_id}",
                       exc_info=True)

    def _check_accepts_payments(self, loan: Loan) -> None:
        if loan.status == LoanStatus.PAID:
            raise LoanAlreadyPaidError(loan.id)
        if loan.status == LoanStatus.CONFISCATED:
            raise LoanConfiscatedError(loan.id)
        if loan.status == LoanStatus.RENEWED:
            raise LoanRenewedError(loan.id)

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.loan_store.get(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan
