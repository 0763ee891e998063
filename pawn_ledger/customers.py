"""
Customer Module

The ledger's narrow view of a customer: eligibility to borrow and the
aggregate credit counters loans and payments keep up to date.
"""

from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional
import logging

from .currency import Money, Currency, money_from_storage
from .exceptions import CustomerNotFoundError, LedgerError
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord, persistence_errors, utc_now, parse_datetime


ADULT_AGE = 18


@dataclass
class Customer(StorageRecord):
    """Borrower with aggregate credit information"""
    branch_id: str
    first_name: str
    last_name: str
    birth_date: Optional[date] = None
    is_active: bool = True
    is_blocked: bool = False
    blocked_reason: Optional[str] = None
    total_loans: int = 0
    total_paid: Money = None
    total_defaulted: Money = None
    credit_score: int = 0  # 0-100
    currency: Currency = Currency.GTQ

    def __post_init__(self):
        if self.total_paid is None:
            self.total_paid = Money.zero(self.currency)
        if self.total_defaulted is None:
            self.total_defaulted = Money.zero(self.currency)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def age(self, as_of: Optional[date] = None) -> Optional[int]:
        """Age in whole years, None when the birth date is unknown"""
        if self.birth_date is None:
            return None
        as_of = as_of or date.today()
        years = as_of.year - self.birth_date.year
        if (as_of.month, as_of.day) < (self.birth_date.month, self.birth_date.day):
            years -= 1
        return years

    def can_take_loan(self, as_of: Optional[date] = None) -> bool:
        """Active, not blocked, and adult when a birth date is known"""
        if not self.is_active or self.is_blocked:
            return False
        age = self.age(as_of)
        return age is None or age >= ADULT_AGE


@dataclass
class CustomerCreditUpdate:
    """Partial update of customer aggregates. Only non-None fields change."""
    total_loans: Optional[int] = None
    total_paid: Optional[Money] = None
    total_defaulted: Optional[Money] = None
    credit_score: Optional[int] = None


class CustomerStore:
    """Persistence for the customer aggregate view"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "customers"

    def get(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.table_name, customer_id)
        if not data:
            return None
        return self._customer_from_dict(data)

    def save(self, customer: Customer) -> None:
        with persistence_errors("save customer"):
            self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))

    def update_credit_info(self, customer_id: str, update: CustomerCreditUpdate) -> Customer:
        """
        Apply a partial aggregate update.

        Raises:
            CustomerNotFoundError: If the customer does not exist
        """
        with persistence_errors("load customer"):
            customer = self.get(customer_id)
        if customer is None:
            raise CustomerNotFoundError(customer_id)

        if update.total_loans is not None:
            customer.total_loans = update.total_loans
        if update.total_paid is not None:
            customer.total_paid = update.total_paid
        if update.total_defaulted is not None:
            customer.total_defaulted = update.total_defaulted
        if update.credit_score is not None:
            customer.credit_score = update.credit_score

        customer.updated_at = utc_now()
        with persistence_errors("update customer credit info"):
            self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))
        return customer

    def _customer_to_dict(self, customer: Customer) -> Dict:
        result = customer.base_dict()
        result.update({
            'branch_id': customer.branch_id,
            'first_name': customer.first_name,
            'last_name': customer.last_name,
            'birth_date': customer.birth_date.isoformat() if customer.birth_date else None,
            'is_active': customer.is_active,
            'is_blocked': customer.is_blocked,
            'blocked_reason': customer.blocked_reason,
            'total_loans': customer.total_loans,
            'total_paid': str(customer.total_paid.amount),
            'total_defaulted': str(customer.total_defaulted.amount),
            'credit_score': customer.credit_score,
            'currency': customer.currency.code,
        })
        return result

    def _customer_from_dict(self, data: Dict) -> Customer:
        currency_code = data['currency']
        return Customer(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            branch_id=data['branch_id'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            birth_date=date.fromisoformat(data['birth_date']) if data.get('birth_date') else None,
            is_active=data['is_active'],
            is_blocked=data['is_blocked'],
            blocked_reason=data.get('blocked_reason'),
            total_loans=data.get('total_loans', 0),
            total_paid=money_from_storage(data.get('total_paid', '0'), currency_code),
            total_defaulted=money_from_storage(data.get('total_defaulted', '0'), currency_code),
            credit_score=data.get('credit_score', 0),
            currency=Currency[currency_code],
        )


def update_credit_best_effort(store: CustomerStore, customer_id: str,
                              build_update: Callable[[Customer], CustomerCreditUpdate],
                              logger: logging.Logger, action: str,
                              user_id: Optional[str] = None) -> Optional[Customer]:
    """
    Apply an aggregate update computed from the customer's current values.

    Runs after the main operation has committed, so failures (including a
    customer kept in another currency) are logged and swallowed instead of raised.
    """
    try:
        with store.storage.atomic():
            with persistence_errors("load customer"):
                customer = store.get(customer_id)
            if customer is None:
                raise CustomerNotFoundError(customer_id)
            return store.update_credit_info(customer_id, build_update(customer))
    except (LedgerError, ValueError):
        log_action(logger, "error", f"Failed to update credit info for customer {customer_id}",
                   user_id=user_id, action=action, resource=f"customer:{customer_id}",
                   exc_info=True)
        return None
