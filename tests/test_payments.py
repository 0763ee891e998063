"""
Test suite for payment application, reversal, payoff and summaries
"""

import re
import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BRANCH_ID, gtq
from pawn_ledger.currency import Currency
from pawn_ledger.exceptions import (
    ConcurrentModificationError, InvalidStatusTransitionError, ItemAlreadyPledgedError,
    LoanAlreadyPaidError, LoanNotFoundError, PaymentNotFoundError, PaymentNotReversibleError,
)
from pawn_ledger.items import ItemStatus
from pawn_ledger.loans import LoanStatus
from pawn_ledger.payments import Payment, PaymentMethod, PaymentStatus
from pawn_ledger.schemas import CreatePaymentInput, ReversePaymentInput
from pawn_ledger.storage import utc_now


def pay(ledger, loan_id, amount, **overrides):
    fields = dict(loan_id=loan_id, amount=Decimal(str(amount)), created_by="cashier-1")
    fields.update(overrides)
    return ledger.payments.apply_payment(CreatePaymentInput(**fields))


def reverse(ledger, payment_id, reason="Duplicate receipt"):
    return ledger.payments.reverse_payment(ReversePaymentInput(
        payment_id=payment_id, reason=reason, reversed_by="supervisor-1",
    ))


class TestApplyPayment:

    def test_late_fee_paid_before_interest(self, ledger, seed):
        loan = seed.loan()
        seed.set_balances(loan.id, late_fee=20, interest=100, principal=500)

        result = pay(ledger, loan.id, 50)

        assert result.payment.late_fee_amount == gtq(20)
        assert result.payment.interest_amount == gtq(30)
        assert result.payment.principal_amount == gtq(0)
        assert result.loan.late_fee_amount == gtq(0)
        assert result.loan.interest_remaining == gtq(70)
        assert result.loan.principal_remaining == gtq(500)
        assert not result.is_fully_paid
        assert result.remaining_balance == gtq(570)

    def test_payment_reaches_principal(self, ledger, seed):
        loan = seed.loan()
        seed.set_balances(loan.id, late_fee=50, interest=100, principal=500)

        result = pay(ledger, loan.id, 200)

        assert result.payment.late_fee_amount == gtq(50)
        assert result.payment.interest_amount == gtq(100)
        assert result.payment.principal_amount == gtq(50)
        assert result.loan.principal_remaining == gtq(450)
        assert result.loan.interest_remaining == gtq(0)
        assert result.payment.loan_balance_after == gtq(450)
        assert result.payment.interest_balance_after == gtq(0)

    def test_exact_payoff(self, ledger, seed):
        loan = seed.loan(amount="800", rate="10")

        result = pay(ledger, loan.id, 880)

        assert result.is_fully_paid
        assert result.remaining_balance == gtq(0)
        assert result.loan.status == LoanStatus.PAID
        assert result.loan.paid_date is not None
        assert result.loan.amount_paid == gtq(880)

        assert ledger.item_store.get(loan.item_id).status == ItemStatus.AVAILABLE
        history = ledger.items.history(loan.item_id)
        assert history[-1].action == "released"
        assert history[-1].reference_id == loan.id

    def test_paid_loan_rejects_payment(self, ledger, seed):
        loan = seed.loan()
        pay(ledger, loan.id, 880)

        with pytest.raises(LoanAlreadyPaidError):
            pay(ledger, loan.id, 10)

        assert len(ledger.payments.list_payments(loan.id)) == 1

    def test_overpayment_is_recorded_as_excess(self, ledger, seed):
        loan = seed.loan(amount="800", rate="10")

        result = pay(ledger, loan.id, 900)

        assert result.payment.principal_amount == gtq(820)
        assert result.payment.excess_amount == gtq(20)
        assert result.loan.principal_remaining == gtq(0)
        assert result.loan.status == LoanStatus.PAID

    def test_breakdown_always_sums_to_amount(self, ledger, seed):
        loan = seed.loan()
        seed.set_balances(loan.id, late_fee="12.34", interest="80", principal="800")

        for amount in ("5.55", "40", "100.01", "300"):
            payment = pay(ledger, loan.id, amount).payment
            assert payment.principal_amount + payment.interest_amount + payment.late_fee_amount == payment.amount

    def test_partial_payments_accumulate(self, ledger, seed):
        loan = seed.loan(amount="800", rate="10")

        pay(ledger, loan.id, 100)
        pay(ledger, loan.id, 200)
        result = pay(ledger, loan.id, 580)

        assert result.is_fully_paid
        assert result.loan.amount_paid == gtq(880)
        assert [p.payment_number[-6:] for p in ledger.payments.list_payments(loan.id)] == [
            "000001", "000002", "000003",
        ]

    def test_payment_fields(self, ledger, seed):
        loan = seed.loan()

        payment = pay(ledger, loan.id, 50, payment_method=PaymentMethod.CARD,
                      reference_number="AUTH-9912", notes="Counter 2").payment

        stored = ledger.payments.get_payment(payment.id)
        assert re.fullmatch(r"PY-\d{4}-000001", stored.payment_number)
        assert stored.payment_method == PaymentMethod.CARD
        assert stored.reference_number == "AUTH-9912"
        assert stored.branch_id == BRANCH_ID
        assert stored.customer_id == loan.customer_id
        assert stored.status == PaymentStatus.COMPLETED
        assert stored.created_by == "cashier-1"
        assert stored.amount.currency == Currency.GTQ

    def test_missing_loan(self, ledger):
        with pytest.raises(LoanNotFoundError):
            pay(ledger, "no-such-loan", 10)

    def test_non_positive_amount_is_rejected_by_input(self):
        with pytest.raises(ValueError):
            CreatePaymentInput(loan_id="x", amount=Decimal("0"))

    def test_customer_total_paid(self, ledger, seed):
        customer = seed.customer()
        loan = seed.loan(customer=customer)

        pay(ledger, loan.id, 100)
        pay(ledger, loan.id, "25.50")

        assert ledger.customer_store.get(customer.id).total_paid == gtq("125.50")

    def test_inconsistent_breakdown_cannot_be_built(self):
        now = utc_now()
        with pytest.raises(ValueError, match="does not equal"):
            Payment(
                id="p", created_at=now, updated_at=now, payment_number="PY-2024-000001",
                branch_id=BRANCH_ID, loan_id="l", customer_id="c",
                amount=gtq(100), principal_amount=gtq(50), interest_amount=gtq(30),
                late_fee_amount=gtq(0), payment_date=now,
                loan_balance_after=gtq(0), interest_balance_after=gtq(0),
            )


class TestReversePayment:

    def test_reversal_restores_buckets(self, ledger, seed):
        loan = seed.loan()
        seed.set_balances(loan.id, late_fee=50, interest=100, principal=500)
        payment = pay(ledger, loan.id, 200).payment

        reversed_payment = reverse(ledger, payment.id)

        assert reversed_payment.status == PaymentStatus.REVERSED
        assert reversed_payment.reversed_by == "supervisor-1"
        assert reversed_payment.reversal_reason == "Duplicate receipt"
        assert reversed_payment.reversed_at is not None

        restored = ledger.loans.get_loan(loan.id)
        assert restored.late_fee_amount == gtq(50)
        assert restored.interest_remaining == gtq(100)
        assert restored.principal_remaining == gtq(500)
        assert restored.amount_paid == gtq(0)

    def test_reversing_payoff_reopens_loan(self, ledger, seed):
        loan = seed.loan()
        payment = pay(ledger, loan.id, 880).payment

        reverse(ledger, payment.id)

        reopened = ledger.loans.get_loan(loan.id)
        assert reopened.status == LoanStatus.ACTIVE
        assert reopened.paid_date is None
        assert reopened.item.status == ItemStatus.COLLATERAL
        assert [h.action for h in ledger.items.history(loan.item_id)] == ["pledged", "released", "repledged"]

    def test_payoff_cannot_be_reversed_once_item_is_pledged_again(self, ledger, seed):
        loan = seed.loan()
        payment = pay(ledger, loan.id, 880).payment
        successor = seed.loan(item=ledger.item_store.get(loan.item_id))

        with pytest.raises(ItemAlreadyPledgedError):
            reverse(ledger, payment.id)

        assert ledger.payments.get_payment(payment.id).status == PaymentStatus.COMPLETED
        assert ledger.loans.get_loan(loan.id).status == LoanStatus.PAID
        active = [other for other in ledger.loans.loan_store.list()
                  if other.item_id == loan.item_id and not other.is_terminal]
        assert [other.id for other in active] == [successor.id]

    def test_payoff_cannot_be_reversed_once_item_is_sold(self, ledger, seed):
        loan = seed.loan()
        payment = pay(ledger, loan.id, 880).payment
        ledger.items.transition(loan.item_id, ItemStatus.SOLD, actor="clerk-1")

        with pytest.raises(InvalidStatusTransitionError):
            reverse(ledger, payment.id)

        unchanged = ledger.loans.get_loan(loan.id)
        assert unchanged.status == LoanStatus.PAID
        assert unchanged.principal_remaining == gtq(0)
        assert ledger.payments.get_payment(payment.id).status == PaymentStatus.COMPLETED
        assert ledger.items.history(loan.item_id)[-1].action != "repledged"

    def test_reversing_overpayment_ignores_excess(self, ledger, seed):
        loan = seed.loan(amount="800", rate="10")
        payment = pay(ledger, loan.id, 900).payment

        reverse(ledger, payment.id)

        restored = ledger.loans.get_loan(loan.id)
        assert restored.principal_remaining == gtq(800)
        assert restored.interest_remaining == gtq(80)
        assert restored.amount_paid == gtq(0)

    def test_cannot_reverse_twice(self, ledger, seed):
        loan = seed.loan()
        payment = pay(ledger, loan.id, 100).payment
        reverse(ledger, payment.id)

        with pytest.raises(PaymentNotReversibleError):
            reverse(ledger, payment.id)

        assert ledger.loans.get_loan(loan.id).interest_remaining == gtq(80)

    def test_missing_payment(self, ledger):
        with pytest.raises(PaymentNotFoundError):
            reverse(ledger, "no-such-payment")

    def test_reason_is_required(self):
        with pytest.raises(ValueError):
            ReversePaymentInput(payment_id="p", reason="")

    def test_customer_total_paid_is_reduced(self, ledger, seed):
        customer = seed.customer()
        loan = seed.loan(customer=customer)
        first = pay(ledger, loan.id, 100).payment
        pay(ledger, loan.id, 40)

        reverse(ledger, first.id)

        assert ledger.customer_store.get(customer.id).total_paid == gtq(40)


class TestOptimisticRetry:

    def test_conflict_is_retried(self, ledger, seed, monkeypatch):
        loan = seed.loan()
        store = ledger.loans.loan_store
        original_update = store.update
        calls = []

        def flaky_update(target):
            calls.append(target.id)
            if len(calls) == 1:
                raise ConcurrentModificationError("loans", target.id, target.version)
            original_update(target)

        monkeypatch.setattr(store, "update", flaky_update)

        result = pay(ledger, loan.id, 100)

        assert len(calls) == 2
        assert result.payment.payment_number.endswith("-000001")
        assert ledger.loans.get_loan(loan.id).interest_remaining == gtq(0)
        assert len(ledger.payments.list_payments(loan.id)) == 1

    def test_retries_exhausted(self, ledger, seed, monkeypatch):
        loan = seed.loan()
        store = ledger.loans.loan_store
        calls = []

        def always_conflicts(target):
            calls.append(target.id)
            raise ConcurrentModificationError("loans", target.id, target.version)

        monkeypatch.setattr(store, "update", always_conflicts)

        with pytest.raises(ConcurrentModificationError):
            pay(ledger, loan.id, 100)

        assert len(calls) == ledger.config.optimistic_retry_attempts
        monkeypatch.undo()
        assert ledger.payments.list_payments(loan.id) == []
        assert ledger.loans.get_loan(loan.id).amount_paid == gtq(0)

    def test_stale_copy_is_rejected(self, ledger, seed):
        loan = seed.loan()
        store = ledger.loans.loan_store
        first_copy = store.get(loan.id)
        second_copy = store.get(loan.id)

        first_copy.notes = "updated by first clerk"
        store.update(first_copy)

        second_copy.notes = "updated by second clerk"
        with pytest.raises(ConcurrentModificationError):
            store.update(second_copy)

        assert second_copy.version == 1
        assert store.get(loan.id).notes == "updated by first clerk"
        assert store.get(loan.id).version == 2

    def test_concurrent_payments_are_all_applied(self, ledger, seed):
        loan = seed.loan(amount="800", rate="10")
        errors = []

        def worker():
            try:
                pay(ledger, loan.id, 10)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        final = ledger.loans.get_loan(loan.id)
        assert final.amount_paid == gtq(50)
        assert final.interest_remaining == gtq(30)
        assert final.version == 6

        numbers = [p.payment_number for p in ledger.payments.list_payments(loan.id)]
        assert len(set(numbers)) == 5


class TestPayoffQueries:

    def test_payoff_amount(self, ledger, seed):
        loan = seed.loan()
        seed.set_balances(loan.id, late_fee=15)

        assert ledger.payments.calculate_payoff(loan.id) == gtq(895)

    def test_minimum_payment_without_plan_is_payoff(self, ledger, seed):
        loan = seed.loan()
        assert ledger.payments.calculate_minimum_payment(loan.id) == gtq(880)

    def test_minimum_payment_includes_late_fee(self, ledger, seed):
        loan = seed.loan(requires_minimum_payment=True, minimum_payment_amount=Decimal("100"))
        seed.set_balances(loan.id, late_fee=12)

        assert ledger.payments.calculate_minimum_payment(loan.id) == gtq(112)

    def test_minimum_payment_capped_at_balance(self, ledger, seed):
        loan = seed.loan(requires_minimum_payment=True, minimum_payment_amount=Decimal("100"))
        pay(ledger, loan.id, 820)

        assert ledger.payments.calculate_minimum_payment(loan.id) == gtq(60)

    def test_missing_loan(self, ledger):
        with pytest.raises(LoanNotFoundError):
            ledger.payments.calculate_payoff("no-such-loan")


class TestPaymentSummaries:

    def test_loan_summary(self, ledger, seed):
        loan = seed.loan()
        seed.set_balances(loan.id, late_fee=10)
        pay(ledger, loan.id, 50)
        second = pay(ledger, loan.id, 100).payment
        pay(ledger, loan.id, 200)
        reverse(ledger, second.id)

        summary = ledger.payments.get_loan_payment_summary(loan.id)

        assert summary.payment_count == 3
        assert summary.completed_count == 2
        assert summary.reversed_count == 1
        assert summary.total_collected == gtq(250)
        assert summary.total_reversed == gtq(100)
        assert summary.late_fee_collected == gtq(10)
        assert (summary.principal_collected + summary.interest_collected
                + summary.late_fee_collected) == summary.total_collected

    def test_branch_summary_date_range(self, ledger, seed):
        pay(ledger, seed.loan().id, 100)
        pay(ledger, seed.loan().id, 50)
        pay(ledger, seed.loan(branch_id="branch-zona-10").id, 70)
        today = utc_now().date()

        summary = ledger.payments.get_branch_payment_summary(BRANCH_ID, today, today)
        assert summary.completed_count == 2
        assert summary.total_collected == gtq(150)

        yesterday = today - timedelta(days=1)
        empty = ledger.payments.get_branch_payment_summary(BRANCH_ID, None, yesterday)
        assert empty.payment_count == 0
        assert empty.total_collected == gtq(0)

    def test_summary_for_missing_loan(self, ledger):
        with pytest.raises(LoanNotFoundError):
            ledger.payments.get_loan_payment_summary("no-such-loan")
