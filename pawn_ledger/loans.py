"""
Loan Module

Handles pawn loan origination, installment schedules, renewal, confiscation
and the periodic overdue sweep. Payments live in the payments module.
"""

from decimal import Decimal
from datetime import datetime, timedelta, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from .config import LedgerConfig, get_config
from .currency import Money, Currency, money_from_storage
from .customers import Customer, CustomerStore, CustomerCreditUpdate, update_credit_best_effort
from .exceptions import (
    LedgerError, CustomerNotFoundError, CustomerIneligibleError, ItemNotFoundError,
    ItemUnavailableError, ItemAlreadyPledgedError, AmountExceedsCollateralError,
    LoanNotFoundError, InvalidLoanStatusError, InterestNotPaidError,
    ConcurrentModificationError,
)
from .items import Item, ItemStatus, ItemStore, ItemStateMachine
from .logging_config import get_logger, log_action
from .schedule import (
    LoanInstallment, InstallmentProgress, add_months, calculate_installments, installment_progress,
)
from .storage import (
    StorageInterface, StorageRecord, next_document_number, persistence_errors, utc_now, parse_datetime,
)

if TYPE_CHECKING:
    from .schemas import CalculateLoanInput, CreateLoanInput, RenewLoanInput


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"              # Within term
    OVERDUE = "overdue"            # Past due date, inside grace period
    DEFAULTED = "defaulted"        # Past grace period
    PAID = "paid"                  # Principal and interest fully paid
    RENEWED = "renewed"            # Replaced by a renewal loan
    CONFISCATED = "confiscated"    # Collateral kept by the shop


TERMINAL_STATUSES = frozenset({LoanStatus.PAID, LoanStatus.RENEWED, LoanStatus.CONFISCATED})
SWEEP_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})


class PaymentPlanType(Enum):
    """How the borrower repays"""
    SINGLE = "single"                      # Everything on the due date
    MINIMUM_PAYMENT = "minimum_payment"    # Monthly minimum until the due date
    INSTALLMENTS = "installments"          # Equal monthly installments


_MONEY_FIELDS = (
    'loan_amount', 'interest_amount', 'principal_remaining', 'interest_remaining',
    'total_amount', 'late_fee_amount', 'late_fee_charged', 'amount_paid',
)
_OPTIONAL_MONEY_FIELDS = ('minimum_payment_amount', 'installment_amount')
_DATE_FIELDS = ('start_date', 'due_date', 'next_payment_due_date')
_DATETIME_FIELDS = ('paid_date', 'confiscated_date')


@dataclass
class Loan(StorageRecord):
    """Collateral-backed loan with its running balances"""
    loan_number: str
    branch_id: str
    customer_id: str
    item_id: str

    loan_amount: Money
    interest_rate: Decimal              # percent of principal, e.g. 10 for 10%
    interest_amount: Money              # fixed for the life of the loan
    principal_remaining: Money
    interest_remaining: Money
    total_amount: Money

    start_date: date
    due_date: date
    loan_term_days: int

    late_fee_rate: Decimal = Decimal('0')   # percent of principal per day overdue
    late_fee_amount: Money = None           # outstanding late fee
    late_fee_charged: Money = None          # cumulative late fee ever accrued
    amount_paid: Money = None

    payment_plan_type: PaymentPlanType = PaymentPlanType.SINGLE
    grace_period_days: int = 0
    requires_minimum_payment: bool = False
    minimum_payment_amount: Optional[Money] = None
    next_payment_due_date: Optional[date] = None
    number_of_installments: int = 0
    installment_amount: Optional[Money] = None

    status: LoanStatus = LoanStatus.ACTIVE
    days_overdue: int = 0
    paid_date: Optional[datetime] = None
    confiscated_date: Optional[datetime] = None

    renewed_from_id: Optional[str] = None
    renewal_count: int = 0

    notes: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    version: int = 1

    # Relations, never persisted
    customer: Optional[Customer] = field(default=None, repr=False, compare=False)
    item: Optional[Item] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        zero_amount = Money.zero(self.loan_amount.currency)
        if self.late_fee_amount is None:
            self.late_fee_amount = zero_amount
        if self.late_fee_charged is None:
            self.late_fee_charged = zero_amount
        if self.amount_paid is None:
            self.amount_paid = zero_amount

    @property
    def currency(self) -> Currency:
        return self.loan_amount.currency

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def remaining_balance(self) -> Money:
        """Payoff amount: principal, interest and late fee still owed"""
        return self.principal_remaining + self.interest_remaining + self.late_fee_amount

    def calculate_days_overdue(self, as_of: date) -> int:
        return max(0, (as_of - self.due_date).days)

    def is_in_grace_period(self, as_of: date) -> bool:
        """True while as_of is still within due date + grace period"""
        return self.calculate_days_overdue(as_of) <= self.grace_period_days


@dataclass
class LoanCalculation:
    """Preview of loan terms, nothing persisted"""
    loan_amount: Money
    interest_rate: Decimal
    interest_amount: Money
    total_amount: Money
    installment_amount: Optional[Money] = None
    installments: List[LoanInstallment] = field(default_factory=list)


@dataclass
class SweepResult:
    """Outcome of one overdue sweep"""
    processed: int = 0
    marked_overdue: int = 0
    marked_defaulted: int = 0
    conflicts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'processed': self.processed,
            'marked_overdue': self.marked_overdue,
            'marked_defaulted': self.marked_defaulted,
            'conflicts': list(self.conflicts),
        }


class LoanStore:
    """Persistence for loans and their installment rows"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loans"
        self.installments_table = "loan_installments"

    def get(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        if not data:
            return None
        return self._loan_from_dict(data)

    def get_by_number(self, loan_number: str) -> Optional[Loan]:
        records = self.storage.find(self.table_name, {'loan_number': loan_number})
        if not records:
            return None
        return self._loan_from_dict(records[0])

    def create(self, loan: Loan) -> None:
        with persistence_errors("create loan"):
            self.storage.save(self.table_name, loan.id, self._loan_to_dict(loan))

    def update(self, loan: Loan) -> None:
        """
        Versioned write. Bumps ``loan.version`` on success.

        Raises:
            ConcurrentModificationError: If the stored version moved on
        """
        expected_version = loan.version
        loan.version = expected_version + 1
        loan.updated_at = utc_now()
        try:
            with persistence_errors("update loan"):
                saved = self.storage.save_if_version(
                    self.table_name, loan.id, self._loan_to_dict(loan), expected_version
                )
        except LedgerError:
            loan.version = expected_version
            raise
        if not saved:
            loan.version = expected_version
            raise ConcurrentModificationError(self.table_name, loan.id, expected_version)

    def generate_number(self, prefix: str) -> str:
        return next_document_number(self.storage, "loan", prefix)

    def list(self, branch_id: Optional[str] = None, customer_id: Optional[str] = None,
             status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {}
        if branch_id is not None:
            filters['branch_id'] = branch_id
        if customer_id is not None:
            filters['customer_id'] = customer_id
        if status is not None:
            filters['status'] = status.value
        records = self.storage.find(self.table_name, filters)
        loans = [self._loan_from_dict(data) for data in records]
        return sorted(loans, key=lambda loan: loan.created_at)

    def list_overdue(self, branch_id: Optional[str], as_of: date) -> List[Loan]:
        """Active or overdue loans whose due date is before as_of"""
        return [
            loan for loan in self.list(branch_id=branch_id)
            if loan.status in SWEEP_STATUSES and loan.due_date < as_of
        ]

    def find_active_for_item(self, item_id: str) -> Optional[Loan]:
        for loan in self.list():
            if loan.item_id == item_id and not loan.is_terminal:
                return loan
        return None

    def create_installments(self, installments: List[LoanInstallment]) -> None:
        with persistence_errors("create installments"):
            for installment in installments:
                record_id = f"{installment.loan_id}-{installment.installment_number:03d}"
                self.storage.save(self.installments_table, record_id, {
                    'id': record_id,
                    'loan_id': installment.loan_id,
                    'installment_number': installment.installment_number,
                    'due_date': installment.due_date.isoformat(),
                    'principal_amount': str(installment.principal_amount.amount),
                    'interest_amount': str(installment.interest_amount.amount),
                    'total_amount': str(installment.total_amount.amount),
                    'currency': installment.total_amount.currency.code,
                })

    def get_installments(self, loan_id: str) -> List[LoanInstallment]:
        records = self.storage.find(self.installments_table, {'loan_id': loan_id})
        installments = [
            LoanInstallment(
                loan_id=data['loan_id'],
                installment_number=data['installment_number'],
                due_date=date.fromisoformat(data['due_date']),
                principal_amount=money_from_storage(data['principal_amount'], data['currency']),
                interest_amount=money_from_storage(data['interest_amount'], data['currency']),
                total_amount=money_from_storage(data['total_amount'], data['currency']),
            )
            for data in records
        ]
        return sorted(installments, key=lambda i: i.installment_number)

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = loan.base_dict()
        result.update({
            'loan_number': loan.loan_number,
            'branch_id': loan.branch_id,
            'customer_id': loan.customer_id,
            'item_id': loan.item_id,
            'currency': loan.currency.code,
            'interest_rate': str(loan.interest_rate),
            'late_fee_rate': str(loan.late_fee_rate),
            'loan_term_days': loan.loan_term_days,
            'payment_plan_type': loan.payment_plan_type.value,
            'grace_period_days': loan.grace_period_days,
            'requires_minimum_payment': loan.requires_minimum_payment,
            'number_of_installments': loan.number_of_installments,
            'status': loan.status.value,
            'days_overdue': loan.days_overdue,
            'renewed_from_id': loan.renewed_from_id,
            'renewal_count': loan.renewal_count,
            'notes': loan.notes,
            'created_by': loan.created_by,
            'updated_by': loan.updated_by,
            'version': loan.version,
        })

        # Convert money amounts
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(loan, name).amount)
        for name in _OPTIONAL_MONEY_FIELDS:
            amount = getattr(loan, name)
            result[name] = str(amount.amount) if amount is not None else None

        # Convert dates
        for name in _DATE_FIELDS + _DATETIME_FIELDS:
            value = getattr(loan, name)
            result[name] = value.isoformat() if value else None

        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency_code = data['currency']

        def get_money(name: str) -> Optional[Money]:
            if data.get(name) is None:
                return None
            return money_from_storage(data[name], currency_code)

        def get_date(name: str) -> Optional[date]:
            if data.get(name):
                return date.fromisoformat(data[name])
            return None

        return Loan(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_number=data['loan_number'],
            branch_id=data['branch_id'],
            customer_id=data['customer_id'],
            item_id=data['item_id'],
            loan_amount=get_money('loan_amount'),
            interest_rate=Decimal(data['interest_rate']),
            interest_amount=get_money('interest_amount'),
            principal_remaining=get_money('principal_remaining'),
            interest_remaining=get_money('interest_remaining'),
            total_amount=get_money('total_amount'),
            start_date=get_date('start_date'),
            due_date=get_date('due_date'),
            loan_term_days=data['loan_term_days'],
            late_fee_rate=Decimal(data['late_fee_rate']),
            late_fee_amount=get_money('late_fee_amount'),
            late_fee_charged=get_money('late_fee_charged'),
            amount_paid=get_money('amount_paid'),
            payment_plan_type=PaymentPlanType(data['payment_plan_type']),
            grace_period_days=data['grace_period_days'],
            requires_minimum_payment=data['requires_minimum_payment'],
            minimum_payment_amount=get_money('minimum_payment_amount'),
            next_payment_due_date=get_date('next_payment_due_date'),
            number_of_installments=data['number_of_installments'],
            installment_amount=get_money('installment_amount'),
            status=LoanStatus(data['status']),
            days_overdue=data.get('days_overdue', 0),
            paid_date=parse_datetime(data.get('paid_date')),
            confiscated_date=parse_datetime(data.get('confiscated_date')),
            renewed_from_id=data.get('renewed_from_id'),
            renewal_count=data.get('renewal_count', 0),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by'),
            version=data['version'],
        )


def calculate_interest(principal: Money, rate: Decimal) -> Money:
    """Flat interest: principal x rate / 100"""
    return principal * (rate / Decimal('100'))


class LoanManager:
    """
    Manages pawn loans from origination through payoff, renewal or confiscation
    """

    def __init__(
        self,
        storage: StorageInterface,
        item_store: ItemStore,
        customer_store: CustomerStore,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.loan_store = LoanStore(storage)
        self.item_store = item_store
        self.item_state = ItemStateMachine(item_store)
        self.customer_store = customer_store
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        self.logger = get_logger("pawn_ledger.loans")

    def create_loan(self, loan_input: 'CreateLoanInput') -> Loan:
        """
        Originate a loan against an available item.

        The loan, the item's move to Collateral and the installment rows are
        written in one transaction. The customer's loan counter is updated
        afterwards on a best-effort basis.

        Returns:
            The new loan with customer and item attached

        Raises:
            CustomerNotFoundError, CustomerIneligibleError, ItemNotFoundError,
            ItemUnavailableError, ItemAlreadyPledgedError,
            AmountExceedsCollateralError: Checked in that order, before any write
        """
        log_action(self.logger, "info", "Creating new loan",
                   user_id=loan_input.created_by, action="loan_create",
                   resource=f"item:{loan_input.item_id}",
                   extra={
                       "customer_id": loan_input.customer_id,
                       "loan_amount": str(loan_input.loan_amount),
                       "interest_rate": str(loan_input.interest_rate),
                       "loan_term_days": loan_input.loan_term_days,
                       "payment_plan_type": loan_input.payment_plan_type.value,
                   })

        customer = self.customer_store.get(loan_input.customer_id)
        if customer is None:
            raise CustomerNotFoundError(loan_input.customer_id)
        if not customer.can_take_loan():
            log_action(self.logger, "warning", "Loan rejected: customer cannot take loans",
                       user_id=loan_input.created_by, action="loan_create",
                       resource=f"customer:{customer.id}",
                       extra={"is_active": customer.is_active, "is_blocked": customer.is_blocked})
            raise CustomerIneligibleError(customer.id)

        item = self._validate_collateral(loan_input.item_id, loan_input.loan_amount, check_availability=True)

        loan_amount = Money(loan_input.loan_amount, self.currency)
        interest_amount = calculate_interest(loan_amount, loan_input.interest_rate)
        total_amount = loan_amount + interest_amount

        start_date = loan_input.start_date or date.today()
        installment_count = self._installment_count(loan_input)
        if installment_count:
            # Due date is the last installment date
            due_date = add_months(start_date, installment_count)
            loan_term_days = (due_date - start_date).days
        else:
            due_date = start_date + timedelta(days=loan_input.loan_term_days)
            loan_term_days = loan_input.loan_term_days

        minimum_payment_amount = None
        next_payment_due_date = None
        if loan_input.requires_minimum_payment and loan_input.minimum_payment_amount and loan_input.minimum_payment_amount > 0:
            minimum_payment_amount = Money(loan_input.minimum_payment_amount, self.currency)
            next_payment_due_date = add_months(start_date, 1)

        grace_period_days = loan_input.grace_period_days
        if grace_period_days is None:
            grace_period_days = self.config.default_grace_period_days

        now = utc_now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number="",
            branch_id=loan_input.branch_id,
            customer_id=customer.id,
            item_id=item.id,
            loan_amount=loan_amount,
            interest_rate=loan_input.interest_rate,
            interest_amount=interest_amount,
            principal_remaining=loan_amount,
            interest_remaining=interest_amount,
            total_amount=total_amount,
            start_date=start_date,
            due_date=due_date,
            loan_term_days=loan_term_days,
            late_fee_rate=loan_input.late_fee_rate,
            payment_plan_type=loan_input.payment_plan_type,
            grace_period_days=grace_period_days,
            requires_minimum_payment=loan_input.requires_minimum_payment,
            minimum_payment_amount=minimum_payment_amount,
            next_payment_due_date=next_payment_due_date,
            number_of_installments=installment_count,
            installment_amount=total_amount / installment_count if installment_count else None,
            notes=loan_input.notes,
            created_by=loan_input.created_by,
        )

        try:
            with self.storage.atomic():
                loan.loan_number = self.loan_store.generate_number(self.config.loan_number_prefix)
                self.loan_store.create(loan)
                self.item_state.transition(
                    item.id, ItemStatus.COLLATERAL, actor=loan_input.created_by,
                    notes=f"Pledged as collateral for loan {loan.loan_number}",
                    action="pledged", reference_type="loan", reference_id=loan.id,
                )
                if installment_count:
                    self.loan_store.create_installments(calculate_installments(
                        loan.id, loan_amount, interest_amount, start_date, installment_count
                    ))
        except LedgerError:
            log_action(self.logger, "error", "Failed to create loan",
                       user_id=loan_input.created_by, action="loan_create",
                       resource=f"item:{item.id}", exc_info=True)
            raise

        update_credit_best_effort(
            self.customer_store, customer.id,
            lambda current: CustomerCreditUpdate(total_loans=current.total_loans + 1),
            self.logger, action="loan_create", user_id=loan_input.created_by,
        )

        self._attach_relations(loan)

        log_action(self.logger, "info", f"Loan {loan.loan_number} created successfully",
                   user_id=loan_input.created_by, action="loan_create",
                   resource=f"loan:{loan.id}",
                   extra={
                       "loan_number": loan.loan_number,
                       "loan_amount": str(loan.loan_amount.amount),
                       "interest_amount": str(loan.interest_amount.amount),
                       "total_amount": str(loan.total_amount.amount),
                       "due_date": loan.due_date.isoformat(),
                   })
        return loan

    def calculate_loan(self, calc_input: 'CalculateLoanInput') -> LoanCalculation:
        """Preview loan terms for an item without persisting anything"""
        self._validate_collateral(calc_input.item_id, calc_input.loan_amount, check_availability=False)

        loan_amount = Money(calc_input.loan_amount, self.currency)
        interest_amount = calculate_interest(loan_amount, calc_input.interest_rate)
        total_amount = loan_amount + interest_amount

        result = LoanCalculation(
            loan_amount=loan_amount,
            interest_rate=calc_input.interest_rate,
            interest_amount=interest_amount,
            total_amount=total_amount,
        )

        installment_count = self._installment_count(calc_input)
        if installment_count:
            start_date = calc_input.start_date or date.today()
            result.installment_amount = total_amount / installment_count
            result.installments = calculate_installments(
                None, loan_amount, interest_amount, start_date, installment_count
            )

        return result

    def get_loan(self, loan_id: str) -> Loan:
        loan = self._require_loan(loan_id)
        return self._attach_relations(loan)

    def get_loan_by_number(self, loan_number: str) -> Loan:
        loan = self.loan_store.get_by_number(loan_number)
        if loan is None:
            raise LoanNotFoundError(loan_number)
        return self._attach_relations(loan)

    def list_loans(self, branch_id: Optional[str] = None, customer_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.loan_store.list(branch_id=branch_id, customer_id=customer_id, status=status)

    def get_installments(self, loan_id: str) -> List[LoanInstallment]:
        self._require_loan(loan_id)
        return self.loan_store.get_installments(loan_id)

    def get_installment_progress(self, loan_id: str) -> List[InstallmentProgress]:
        """Installments with how much of each the loan's payments have covered"""
        loan = self._require_loan(loan_id)
        return installment_progress(self.loan_store.get_installments(loan_id), loan.amount_paid)

    def get_overdue_loans(self, branch_id: Optional[str] = None,
                          as_of: Optional[date] = None) -> List[Loan]:
        """Sweep candidates for a branch (all branches when branch_id is None)"""
        loans = self.loan_store.list_overdue(branch_id, as_of or date.today())
        return [self._attach_relations(loan) for loan in loans]

    def renew_loan(self, renew_input: 'RenewLoanInput') -> Loan:
        """
        Close a loan and open a new one against its remaining principal.

        Both writes happen in one transaction. The item stays in Collateral.
        An outstanding late fee is not carried over to the new loan.

        Raises:
            LoanNotFoundError: If the loan does not exist
            InvalidLoanStatusError: If the loan is not active or overdue
            InterestNotPaidError: If pay_interest is set and interest is outstanding
            ConcurrentModificationError: If the source loan changed underneath
        """
        source = self._require_loan(renew_input.loan_id)

        if source.status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
            raise InvalidLoanStatusError(
                f"Only active or overdue loans can be renewed (loan {source.id} is {source.status.value})",
                source.status.value,
            )

        if renew_input.pay_interest and source.interest_remaining.is_positive():
            raise InterestNotPaidError(source.id, source.interest_remaining.to_string())

        interest_rate = renew_input.new_interest_rate
        if interest_rate == 0:
            interest_rate = source.interest_rate

        principal = source.principal_remaining
        interest_amount = calculate_interest(principal, interest_rate)
        start_date = date.today()
        now = utc_now()

        next_payment_due_date = None
        if source.minimum_payment_amount is not None:
            next_payment_due_date = add_months(start_date, 1)

        renewal = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number="",
            branch_id=source.branch_id,
            customer_id=source.customer_id,
            item_id=source.item_id,
            loan_amount=principal,
            interest_rate=interest_rate,
            interest_amount=interest_amount,
            principal_remaining=principal,
            interest_remaining=interest_amount,
            total_amount=principal + interest_amount,
            start_date=start_date,
            due_date=start_date + timedelta(days=renew_input.new_term_days),
            loan_term_days=renew_input.new_term_days,
            late_fee_rate=source.late_fee_rate,
            payment_plan_type=source.payment_plan_type,
            grace_period_days=source.grace_period_days,
            requires_minimum_payment=source.requires_minimum_payment,
            minimum_payment_amount=source.minimum_payment_amount,
            next_payment_due_date=next_payment_due_date,
            renewed_from_id=source.id,
            renewal_count=source.renewal_count + 1,
            created_by=renew_input.created_by,
        )

        with self.storage.atomic():
            source.status = LoanStatus.RENEWED
            source.updated_by = renew_input.created_by
            self.loan_store.update(source)

            renewal.loan_number = self.loan_store.generate_number(self.config.loan_number_prefix)
            self.loan_store.create(renewal)

        log_action(self.logger, "info", f"Loan {source.loan_number} renewed as {renewal.loan_number}",
                   user_id=renew_input.created_by, action="loan_renew",
                   resource=f"loan:{renewal.id}",
                   extra={
                       "renewed_from_id": source.id,
                       "renewal_count": renewal.renewal_count,
                       "loan_amount": str(renewal.loan_amount.amount),
                       "interest_rate": str(renewal.interest_rate),
                   })
        return self._attach_relations(renewal)

    def confiscate_loan(self, loan_id: str, actor: Optional[str] = None,
                        notes: Optional[str] = None) -> Loan:
        """
        Keep the collateral of an overdue or defaulted loan.

        The loan and item updates share one transaction. The customer's
        defaulted total grows by the remaining balance afterwards, best-effort.
        """
        loan = self._require_loan(loan_id)

        if loan.status not in (LoanStatus.DEFAULTED, LoanStatus.OVERDUE):
            raise InvalidLoanStatusError(
                f"Only defaulted or overdue loans can be confiscated (loan {loan.id} is {loan.status.value})",
                loan.status.value,
            )

        remaining = loan.remaining_balance()

        with self.storage.atomic():
            loan.status = LoanStatus.CONFISCATED
            loan.confiscated_date = utc_now()
            if notes is not None:
                loan.notes = notes
            loan.updated_by = actor
            self.loan_store.update(loan)

            self.item_state.transition(
                loan.item_id, ItemStatus.CONFISCATED, actor=actor,
                notes=f"Confiscated for loan {loan.loan_number}",
                action="confiscated", reference_type="loan", reference_id=loan.id,
            )

        update_credit_best_effort(
            self.customer_store, loan.customer_id,
            lambda current: CustomerCreditUpdate(total_defaulted=current.total_defaulted + remaining),
            self.logger, action="loan_confiscate", user_id=actor,
        )

        log_action(self.logger, "info", f"Loan {loan.loan_number} confiscated",
                   user_id=actor, action="loan_confiscate", resource=f"loan:{loan.id}",
                   extra={"remaining_balance": str(remaining.amount), "item_id": loan.item_id})
        return self._attach_relations(loan)

    def update_overdue_status(self, branch_id: Optional[str] = None,
                              as_of: Optional[date] = None) -> SweepResult:
        """
        Re-derive overdue/defaulted status for loans past their due date.

        Safe to repeat. A loan modified concurrently is logged and skipped.
        """
        as_of = as_of or date.today()
        result = SweepResult()

        for loan in self.loan_store.list_overdue(branch_id, as_of):
            days_overdue = loan.calculate_days_overdue(as_of)
            if loan.is_in_grace_period(as_of):
                new_status = LoanStatus.OVERDUE
            else:
                new_status = LoanStatus.DEFAULTED

            if loan.status != new_status or loan.days_overdue != days_overdue:
                loan.status = new_status
                loan.days_overdue = days_overdue
                try:
                    self.loan_store.update(loan)
                except ConcurrentModificationError:
                    log_action(self.logger, "warning",
                               f"Skipping loan {loan.loan_number}: modified during overdue sweep",
                               action="overdue_sweep", resource=f"loan:{loan.id}")
                    result.conflicts.append(loan.id)
                    continue

            result.processed += 1
            if new_status == LoanStatus.OVERDUE:
                result.marked_overdue += 1
            else:
                result.marked_defaulted += 1

        log_action(self.logger, "info", "Overdue sweep completed",
                   action="overdue_sweep", resource=f"branch:{branch_id or 'all'}",
                   extra=dict(result.to_dict(), as_of=as_of.isoformat()))
        return result

    def accrue_late_fees(self, branch_id: Optional[str] = None,
                         as_of: Optional[date] = None) -> int:
        """
        Bring late fees of overdue loans up to rate x principal x days overdue.

        Only the increase over what was already charged is added, so running
        twice for the same day changes nothing.

        Returns:
            Number of loans whose late fee grew
        """
        as_of = as_of or date.today()
        updated = 0

        for loan in self.loan_store.list(branch_id=branch_id, status=LoanStatus.OVERDUE):
            days_overdue = loan.calculate_days_overdue(as_of)
            if days_overdue <= 0 or loan.late_fee_rate <= 0:
                continue

            target = loan.loan_amount * (loan.late_fee_rate / Decimal('100') * days_overdue)
            if target <= loan.late_fee_charged:
                continue

            increase = target - loan.late_fee_charged
            loan.late_fee_amount = loan.late_fee_amount + increase
            loan.late_fee_charged = target
            try:
                self.loan_store.update(loan)
            except ConcurrentModificationError:
                log_action(self.logger, "warning",
                           f"Skipping loan {loan.loan_number}: modified during late fee accrual",
                           action="late_fee_accrual", resource=f"loan:{loan.id}")
                continue
            updated += 1

        log_action(self.logger, "info", "Late fee calculation completed",
                   action="late_fee_accrual", resource=f"branch:{branch_id or 'all'}",
                   extra={"updated": updated, "as_of": as_of.isoformat()})
        return updated

    def _validate_collateral(self, item_id: str, amount: Decimal, check_availability: bool) -> Item:
        item = self.item_store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        if check_availability:
            if not item.is_available:
                log_action(self.logger, "warning", "Loan rejected: item not available",
                           action="loan_create", resource=f"item:{item_id}",
                           extra={"status": item.status.value})
                raise ItemUnavailableError(item_id, item.status.value)

            pledged = self.loan_store.find_active_for_item(item_id)
            if pledged is not None:
                raise ItemAlreadyPledgedError(item_id, pledged.loan_number)

        requested = Money(amount, item.loan_value.currency)
        if requested > item.loan_value:
            log_action(self.logger, "warning", "Loan rejected: amount exceeds item loan value",
                       action="loan_create", resource=f"item:{item_id}",
                       extra={"requested_amount": str(requested.amount),
                              "max_loan_value": str(item.loan_value.amount)})
            raise AmountExceedsCollateralError(requested.to_string(), item.loan_value.to_string())
        return item

    @staticmethod
    def _installment_count(terms_input) -> int:
        if terms_input.payment_plan_type == PaymentPlanType.INSTALLMENTS and terms_input.number_of_installments > 0:
            return terms_input.number_of_installments
        return 0

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.loan_store.get(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def _attach_relations(self, loan: Loan) -> Loan:
        loan.customer = self.customer_store.get(loan.customer_id)
        loan.item = self.item_store.get(loan.item_id)
        return loan
