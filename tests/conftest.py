"""Shared fixtures: a ledger on each storage backend and a seeder for test data."""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from pawn_ledger.config import LedgerConfig
from pawn_ledger.currency import Money, Currency
from pawn_ledger.customers import Customer
from pawn_ledger.items import Item, ItemStatus
from pawn_ledger.loans import Loan
from pawn_ledger.schemas import CreateLoanInput
from pawn_ledger.storage import InMemoryStorage, SQLiteStorage, utc_now
from pawn_ledger.system import PawnLedger, create_ledger


BRANCH_ID = "branch-zona-1"


def gtq(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.GTQ)


def make_config(**overrides) -> LedgerConfig:
    return LedgerConfig(_env_file=None, **overrides)


class LedgerSeeder:
    """Creates customers, items and loans directly through the ledger's stores"""

    def __init__(self, ledger: PawnLedger):
        self.ledger = ledger

    def customer(self, **overrides) -> Customer:
        now = utc_now()
        fields = dict(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            branch_id=BRANCH_ID,
            first_name="Ana",
            last_name="Morales",
            birth_date=date(1990, 5, 17),
        )
        fields.update(overrides)
        customer = Customer(**fields)
        self.ledger.customer_store.save(customer)
        return customer

    def item(self, loan_value="1000.00", status: ItemStatus = ItemStatus.AVAILABLE, **overrides) -> Item:
        now = utc_now()
        fields = dict(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            branch_id=BRANCH_ID,
            name="Anillo de oro 14k",
            sku=f"SKU-{uuid.uuid4().hex[:8]}",
            appraised_value=gtq(Decimal(loan_value) * 2),
            loan_value=gtq(loan_value),
            status=status,
        )
        fields.update(overrides)
        item = Item(**fields)
        self.ledger.item_store.save(item)
        return item

    def loan(self, amount="800", rate="10", term_days=30, customer: Optional[Customer] = None,
             item: Optional[Item] = None, **overrides) -> Loan:
        customer = customer or self.customer()
        item = item or self.item()
        fields = dict(
            customer_id=customer.id,
            item_id=item.id,
            branch_id=BRANCH_ID,
            loan_amount=Decimal(amount),
            interest_rate=Decimal(rate),
            loan_term_days=term_days,
            created_by="clerk-1",
        )
        fields.update(overrides)
        return self.ledger.loans.create_loan(CreateLoanInput(**fields))

    def set_balances(self, loan_id: str, late_fee=None, interest=None, principal=None) -> Loan:
        """Overwrite outstanding buckets, keeping the loan's accounting identity intact"""
        store = self.ledger.loans.loan_store
        loan = store.get(loan_id)
        if late_fee is not None:
            loan.late_fee_amount = gtq(late_fee)
            loan.late_fee_charged = gtq(late_fee)
        if interest is not None:
            loan.interest_remaining = gtq(interest)
            loan.interest_amount = gtq(interest)
        if principal is not None:
            loan.principal_remaining = gtq(principal)
            loan.loan_amount = gtq(principal)
        store.update(loan)
        return store.get(loan_id)


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    """Ledger on each storage backend"""
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "ledger.db")
    ledger = create_ledger(storage=storage, config=make_config())
    yield ledger
    ledger.close()


@pytest.fixture
def seed(ledger) -> LedgerSeeder:
    return LedgerSeeder(ledger)


@pytest.fixture(autouse=True)
def restore_package_logger():
    """setup_logging() disables propagation; put it back so caplog keeps working"""
    logger = logging.getLogger("pawn_ledger")
    handlers = logger.handlers[:]
    level = logger.level
    propagate = logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate
