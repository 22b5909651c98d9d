"""
Test suite for the loan ledger engine

Tests loan creation, date-gated daily accrual, statement-day capitalization,
payment application and closure, deletion, and the atomicity and
fault-tolerance of each operation. All expected values are exact Decimals.
"""

import pytest
import random
import logging
from decimal import Decimal, localcontext
from datetime import datetime, timezone, date, timedelta

from loan_ledger.clock import FixedClock
from loan_ledger.errors import (
    ValidationError, NotFoundError, InvalidStateError, PersistenceError
)
from loan_ledger.ledger import LoanLedger
from loan_ledger.models import LoanStatus, TransactionType, MIN_STATEMENT_DAY, MAX_STATEMENT_DAY
from loan_ledger.storage import InMemoryLoanStore


START = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def daily_interest(balance: str, rate: str) -> Decimal:
    return Decimal(balance) * (Decimal(rate) / Decimal('365'))


def exactly(*terms) -> Decimal:
    """Sum far above ledger precision so nothing is rounded"""
    with localcontext() as ctx:
        ctx.prec = 200
        return sum(terms, Decimal('0'))


class FailingStore(InMemoryLoanStore):
    """In-memory store that fails selected writes"""

    def __init__(self):
        super().__init__()
        self.fail_update_for = set()
        self.fail_transaction_types = set()
        self.fail_listing = False
        self.interrupt_update_for = set()
        self.crash_update_for = set()

    def update_loan(self, loan):
        if loan.id in self.interrupt_update_for:
            raise KeyboardInterrupt()
        if loan.id in self.crash_update_for:
            raise RuntimeError(f"corrupt row for {loan.id}")
        if loan.id in self.fail_update_for:
            raise PersistenceError(f"disk full while writing {loan.id}")
        super().update_loan(loan)

    def create_transaction(self, transaction):
        if transaction.type in self.fail_transaction_types:
            raise PersistenceError("transaction log unavailable")
        super().create_transaction(transaction)

    def list_active_loans(self):
        if self.fail_listing:
            raise PersistenceError("connection lost")
        return super().list_active_loans()


class LedgerTestCase:
    """Shared setup: in-memory store, fixed clock, seeded random source"""

    def setup_method(self):
        """Set up test fixtures"""
        self.store = FailingStore()
        self.clock = FixedClock(START)
        self.ledger = LoanLedger(self.store, clock=self.clock, rng=random.Random(7))

    def new_loan(self, principal='1000.00', base_rate='0.12', variance='-0.02'):
        return self.ledger.create_loan("CUST-1", principal, base_rate, variance)

    def move_to_statement_day(self, loan, month: int = 3):
        self.clock.set(datetime(2024, month, loan.statement_cycle_day, 10, 0, tzinfo=timezone.utc))

    def set_accrued(self, loan_id: str, amount: str):
        loan = self.store.get_loan(loan_id)
        self.store.update_loan(loan.copy(accrued_interest=Decimal(amount)))


class TestLoanCreation(LedgerTestCase):
    """Test loan disbursement"""

    def test_create_loan_scenario(self):
        """principal 1000.00, base 0.12, variance -0.02 gives effective 0.10"""
        loan = self.new_loan()

        assert loan.effective_rate == Decimal('0.10')
        assert loan.principal == Decimal('1000.00')
        assert loan.balance == Decimal('1000.00')
        assert loan.accrued_interest == Decimal('0')
        assert loan.status == LoanStatus.ACTIVE
        assert loan.last_accrual_date is None
        assert loan.created_at == START
        assert loan.updated_at == START

        transactions = self.ledger.get_transactions(loan.id)
        assert len(transactions) == 1
        assert transactions[0].type == TransactionType.DISBURSEMENT
        assert transactions[0].amount == Decimal('1000.00')
        assert transactions[0].loan_id == loan.id

    def test_loan_is_persisted(self):
        loan = self.new_loan()
        assert self.ledger.get_loan(loan.id) == loan

    def test_statement_day_in_range(self):
        days = {self.new_loan().statement_cycle_day for _ in range(200)}
        assert all(MIN_STATEMENT_DAY <= day <= MAX_STATEMENT_DAY for day in days)
        assert len(days) > 1

    def test_statement_day_follows_injected_random_source(self):
        first = LoanLedger(InMemoryLoanStore(), clock=self.clock, rng=random.Random(99))
        second = LoanLedger(InMemoryLoanStore(), clock=self.clock, rng=random.Random(99))
        days_first = [first.create_loan("C", "10", "0.1", "0").statement_cycle_day for _ in range(10)]
        days_second = [second.create_loan("C", "10", "0.1", "0").statement_cycle_day for _ in range(10)]
        assert days_first == days_second

    def test_unique_ids(self):
        assert self.new_loan().id != self.new_loan().id

    def test_accepts_decimal_arguments(self):
        loan = self.ledger.create_loan("CUST-2", Decimal('250.50'), Decimal('0.05'), Decimal('0.015'))
        assert loan.effective_rate == Decimal('0.065')

    @pytest.mark.parametrize("principal", ["0", "-100.00", "0.00"])
    def test_non_positive_principal_rejected(self, principal):
        with pytest.raises(ValidationError, match="Principal must be positive"):
            self.new_loan(principal=principal)
        assert self.ledger.list_loans() == []

    def test_float_principal_rejected(self):
        with pytest.raises(ValidationError):
            self.ledger.create_loan("CUST-1", 1000.0, "0.1", "0")

    def test_missing_customer_key_rejected(self):
        with pytest.raises(ValidationError, match="Customer key"):
            self.ledger.create_loan("  ", "1000", "0.1", "0")

    def test_failed_disbursement_record_leaves_no_loan(self):
        self.store.fail_transaction_types.add(TransactionType.DISBURSEMENT)
        with pytest.raises(PersistenceError):
            self.new_loan()
        assert self.ledger.list_loans() == []


class TestDailyAccrual(LedgerTestCase):
    """Test once-per-day interest accrual"""

    def test_one_day_of_interest(self):
        """balance 1000.00 at 0.10 accrues 1000.00 * (0.10 / 365) exactly"""
        loan = self.new_loan()
        self.ledger.run_daily_accrual()

        accrued = self.ledger.get_loan(loan.id)
        assert accrued.accrued_interest == daily_interest('1000.00', '0.10')
        assert accrued.last_accrual_date == date(2024, 3, 1)
        assert accrued.balance == Decimal('1000.00')

    def test_accrual_records_no_transaction(self):
        loan = self.new_loan()
        self.ledger.run_daily_accrual()
        assert len(self.ledger.get_transactions(loan.id)) == 1

    def test_repeated_runs_same_day_are_noops(self):
        loan = self.new_loan()
        self.ledger.run_daily_accrual()
        after_first = self.ledger.get_loan(loan.id)

        self.clock.advance(seconds=3600)
        self.ledger.run_daily_accrual()
        self.clock.advance(seconds=3600)
        self.ledger.run_daily_accrual()

        assert self.ledger.get_loan(loan.id) == after_first

    def test_accrues_again_next_day(self):
        loan = self.new_loan()
        self.ledger.run_daily_accrual()
        self.clock.advance(days=1)
        self.ledger.run_daily_accrual()

        one_day = daily_interest('1000.00', '0.10')
        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.accrued_interest == exactly(one_day, one_day)
        assert refreshed.last_accrual_date == date(2024, 3, 2)

    def test_day_boundary_is_utc(self):
        self.clock.set(datetime(2024, 3, 1, 23, 59, 59, tzinfo=timezone.utc))
        loan = self.new_loan()
        self.ledger.run_daily_accrual()
        self.clock.advance(seconds=2)
        self.ledger.run_daily_accrual()
        assert self.ledger.get_loan(loan.id).last_accrual_date == date(2024, 3, 2)

    def test_zero_rate_accrues_nothing(self):
        loan = self.ledger.create_loan("CUST-1", "1000.00", "0.05", "-0.05")
        self.ledger.run_daily_accrual()
        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.accrued_interest == Decimal('0')
        assert refreshed.last_accrual_date is None

    def test_closed_loans_are_skipped(self):
        loan = self.new_loan()
        self.ledger.record_payment(loan.id, "1000.00")
        self.ledger.run_daily_accrual()
        assert self.ledger.get_loan(loan.id).accrued_interest == Decimal('0')

    def test_failure_on_one_loan_does_not_stop_batch(self, caplog):
        bad = self.new_loan()
        good = self.new_loan()
        self.store.fail_update_for.add(bad.id)

        with caplog.at_level(logging.ERROR, logger="loan_ledger"):
            self.ledger.run_daily_accrual()

        assert self.ledger.get_loan(bad.id).accrued_interest == Decimal('0')
        assert self.ledger.get_loan(good.id).accrued_interest == daily_interest('1000.00', '0.10')
        assert any(getattr(record, 'loan_id', None) == bad.id for record in caplog.records)

    def test_arithmetic_overflow_on_one_loan_does_not_stop_batch(self, caplog):
        huge = self.ledger.create_loan("CUST-X", "9E+999999", "1000", "0")
        good = self.new_loan()

        with caplog.at_level(logging.ERROR, logger="loan_ledger"):
            self.ledger.run_daily_accrual()

        assert self.ledger.get_loan(huge.id).accrued_interest == Decimal('0')
        assert self.ledger.get_loan(good.id).accrued_interest == daily_interest('1000.00', '0.10')
        failures = [record for record in caplog.records if getattr(record, 'loan_id', None) == huge.id]
        assert failures and failures[0].exc_info is not None

    def test_unexpected_error_on_one_loan_does_not_stop_batch(self):
        crashing = self.new_loan()
        good = self.new_loan()
        self.store.crash_update_for.add(crashing.id)

        self.ledger.run_daily_accrual()

        assert self.ledger.get_loan(crashing.id).last_accrual_date is None
        assert self.ledger.get_loan(good.id).last_accrual_date == date(2024, 3, 1)

    def test_listing_failure_is_logged_not_raised(self, caplog):
        self.new_loan()
        self.store.fail_listing = True
        with caplog.at_level(logging.ERROR, logger="loan_ledger"):
            assert self.ledger.run_daily_accrual() is None
        assert "Could not list active loans" in caplog.text

    def test_interrupted_pass_resumes_cleanly(self):
        first = self.new_loan()
        second = self.new_loan()
        third = self.new_loan()
        self.store.interrupt_update_for.add(second.id)

        with pytest.raises(KeyboardInterrupt):
            self.ledger.run_daily_accrual()

        one_day = daily_interest('1000.00', '0.10')
        assert self.ledger.get_loan(first.id).accrued_interest == one_day
        assert self.ledger.get_loan(second.id).accrued_interest == Decimal('0')
        assert self.ledger.get_loan(third.id).accrued_interest == Decimal('0')

        self.store.interrupt_update_for.clear()
        self.ledger.run_daily_accrual()

        for loan in (first, second, third):
            assert self.ledger.get_loan(loan.id).accrued_interest == one_day


class TestMonthlyCapitalization(LedgerTestCase):
    """Test statement-day capitalization"""

    def test_capitalization_scenario(self):
        """accrued 5.00 on balance 1000.00 capitalizes to 1005.00"""
        loan = self.new_loan()
        self.set_accrued(loan.id, '5.00')
        self.move_to_statement_day(loan)

        self.ledger.run_monthly_capitalization()

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('1005.00')
        assert refreshed.accrued_interest == Decimal('0')
        assert refreshed.last_capitalization_date == self.clock.today()

        interest = [tx for tx in self.ledger.get_transactions(loan.id)
                    if tx.type == TransactionType.INTEREST]
        assert len(interest) == 1
        assert interest[0].amount == Decimal('5.00')

    def test_other_days_do_nothing(self):
        loan = self.new_loan()
        self.set_accrued(loan.id, '5.00')
        other_day = loan.statement_cycle_day % 28 + 1
        self.clock.set(datetime(2024, 3, other_day, 10, 0, tzinfo=timezone.utc))

        self.ledger.run_monthly_capitalization()

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('1000.00')
        assert refreshed.accrued_interest == Decimal('5.00')

    def test_zero_accrual_on_statement_day_leaves_loan_unchanged(self):
        loan = self.new_loan()
        self.move_to_statement_day(loan)
        before = self.ledger.get_loan(loan.id)

        self.ledger.run_monthly_capitalization()

        assert self.ledger.get_loan(loan.id) == before
        assert len(self.ledger.get_transactions(loan.id)) == 1

    def test_second_run_same_day_is_noop(self):
        loan = self.new_loan()
        self.set_accrued(loan.id, '5.00')
        self.move_to_statement_day(loan)

        self.ledger.run_monthly_capitalization()
        self.ledger.run_daily_accrual()
        self.ledger.run_monthly_capitalization()

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('1005.00')
        assert refreshed.accrued_interest == daily_interest('1005.00', '0.10')
        interest = [tx for tx in self.ledger.get_transactions(loan.id)
                    if tx.type == TransactionType.INTEREST]
        assert len(interest) == 1

    def test_accrual_before_capitalization_is_included(self):
        loan = self.new_loan()
        self.set_accrued(loan.id, '5.00')
        self.move_to_statement_day(loan)

        self.ledger.run_daily_accrual()
        self.ledger.run_monthly_capitalization()

        expected = exactly(Decimal('5.00'), daily_interest('1000.00', '0.10'))
        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == exactly(Decimal('1000.00'), expected)
        assert refreshed.accrued_interest == Decimal('0')
        assert self.ledger.get_transactions(loan.id)[-1].amount == expected

    def test_balance_equals_sum_of_transactions_after_capitalization(self):
        """No digit of capitalized interest is lost from the balance"""
        loan = self.new_loan()
        self.move_to_statement_day(loan)

        self.ledger.run_daily_accrual()
        self.ledger.run_monthly_capitalization()

        refreshed = self.ledger.get_loan(loan.id)
        transactions = self.ledger.get_transactions(loan.id)
        assert [tx.type for tx in transactions] == [TransactionType.DISBURSEMENT, TransactionType.INTEREST]
        assert transactions[1].amount == daily_interest('1000.00', '0.10')
        assert refreshed.balance == exactly(*(tx.amount for tx in transactions))
        assert refreshed.balance == exactly(Decimal('1000.00'), Decimal('0.2739726027397260273972602740'))

    def test_capitalizes_again_next_month(self):
        loan = self.new_loan()
        self.set_accrued(loan.id, '5.00')
        self.move_to_statement_day(loan, month=3)
        self.ledger.run_monthly_capitalization()

        self.set_accrued(loan.id, '3.25')
        self.move_to_statement_day(loan, month=4)
        self.ledger.run_monthly_capitalization()

        assert self.ledger.get_loan(loan.id).balance == Decimal('1008.25')
        amounts = [tx.amount for tx in self.ledger.get_transactions(loan.id)
                   if tx.type == TransactionType.INTEREST]
        assert amounts == [Decimal('5.00'), Decimal('3.25')]

    def test_failed_interest_record_rolls_back_loan(self):
        loan = self.new_loan()
        self.set_accrued(loan.id, '5.00')
        self.move_to_statement_day(loan)
        self.store.fail_transaction_types.add(TransactionType.INTEREST)

        self.ledger.run_monthly_capitalization()

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('1000.00')
        assert refreshed.accrued_interest == Decimal('5.00')
        assert refreshed.last_capitalization_date is None

        self.store.fail_transaction_types.clear()
        self.ledger.run_monthly_capitalization()
        assert self.ledger.get_loan(loan.id).balance == Decimal('1005.00')

    def test_closed_loans_are_skipped(self):
        loan = self.new_loan()
        self.move_to_statement_day(loan)
        self.ledger.record_payment(loan.id, "1000.00")
        self.ledger.run_monthly_capitalization()
        assert self.ledger.get_loan(loan.id).balance == Decimal('0')


class TestPayments(LedgerTestCase):
    """Test payment application and closure"""

    def test_partial_payment(self):
        loan = self.new_loan()
        tx = self.ledger.record_payment(loan.id, "200.00")

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('800.00')
        assert refreshed.status == LoanStatus.ACTIVE
        assert tx.type == TransactionType.PAYMENT
        assert tx.amount == Decimal('200.00')

    def test_full_payment_closes_loan(self):
        loan = self.new_loan(principal='600.00')
        self.clock.advance(seconds=60)
        tx = self.ledger.record_payment(loan.id, "600.00")

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('0')
        assert refreshed.status == LoanStatus.CLOSED
        assert refreshed.updated_at == START + timedelta(seconds=60)
        assert tx.amount == Decimal('600.00')

        payments = [t for t in self.ledger.get_transactions(loan.id)
                    if t.type == TransactionType.PAYMENT]
        assert len(payments) == 1

        with pytest.raises(InvalidStateError):
            self.ledger.record_payment(loan.id, "1.00")

    def test_overpayment_is_clamped_and_recorded_in_full(self):
        loan = self.new_loan()
        tx = self.ledger.record_payment(loan.id, "1500.00")

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('0')
        assert refreshed.status == LoanStatus.CLOSED
        assert tx.amount == Decimal('1500.00')

    @pytest.mark.parametrize("amount", ["0", "-50.00", "abc"])
    def test_invalid_amount_rejected_without_side_effects(self, amount):
        loan = self.new_loan()
        with pytest.raises(ValidationError):
            self.ledger.record_payment(loan.id, amount)
        assert self.ledger.get_loan(loan.id).balance == Decimal('1000.00')
        assert len(self.ledger.get_transactions(loan.id)) == 1

    def test_validation_precedes_lookup(self):
        with pytest.raises(ValidationError):
            self.ledger.record_payment("missing", "0")

    def test_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.ledger.record_payment("missing", "10.00")

    def test_failed_payment_record_leaves_balance(self):
        loan = self.new_loan()
        self.store.fail_transaction_types.add(TransactionType.PAYMENT)
        with pytest.raises(PersistenceError):
            self.ledger.record_payment(loan.id, "1000.00")

        refreshed = self.ledger.get_loan(loan.id)
        assert refreshed.balance == Decimal('1000.00')
        assert refreshed.status == LoanStatus.ACTIVE

    def test_small_payment_on_large_balance_is_not_rounded_away(self):
        loan = self.new_loan(principal="100000000000000000000.00")
        tx = self.ledger.record_payment(loan.id, "0.000000001")

        refreshed = self.ledger.get_loan(loan.id)
        assert tx.amount == Decimal('0.000000001')
        assert refreshed.balance == Decimal('99999999999999999999.999999999')
        assert refreshed.balance != Decimal('100000000000000000000')

    def test_payment_after_capitalization_keeps_every_digit(self):
        loan = self.new_loan()
        self.move_to_statement_day(loan)
        self.ledger.run_daily_accrual()
        self.ledger.run_monthly_capitalization()

        self.ledger.record_payment(loan.id, "5.01")

        transactions = self.ledger.get_transactions(loan.id)
        signed = [-tx.amount if tx.type == TransactionType.PAYMENT else tx.amount
                  for tx in transactions]
        assert self.ledger.get_loan(loan.id).balance == exactly(*signed)

    def test_accrued_interest_untouched_by_payment(self):
        loan = self.new_loan()
        self.ledger.run_daily_accrual()
        self.ledger.record_payment(loan.id, "100.00")
        assert self.ledger.get_loan(loan.id).accrued_interest == daily_interest('1000.00', '0.10')


class TestRetrievalUpdateDelete(LedgerTestCase):
    """Test CRUD pass-throughs and their engine rules"""

    def test_list_loans(self):
        first = self.new_loan()
        second = self.new_loan()
        assert {loan.id for loan in self.ledger.list_loans()} == {first.id, second.id}

    def test_get_missing_loan(self):
        with pytest.raises(NotFoundError):
            self.ledger.get_loan("missing")

    def test_update_terms_refreshes_updated_at(self):
        loan = self.new_loan()
        self.clock.advance(days=1)
        candidate = loan.copy(
            customer_key="CUST-9",
            base_rate=Decimal('0.11'),
            rate_variance=Decimal('0.01'),
            effective_rate=Decimal('0.12')
        )

        updated = self.ledger.update_loan(candidate)

        assert updated.customer_key == "CUST-9"
        assert updated.effective_rate == Decimal('0.12')
        assert updated.updated_at == START + timedelta(days=1)
        assert updated.created_at == START
        assert self.ledger.get_loan(loan.id) == updated

    def test_update_cannot_change_balance_or_schedule(self):
        loan = self.new_loan()
        tampered = loan.copy(
            balance=Decimal('1.00'),
            accrued_interest=Decimal('99'),
            statement_cycle_day=loan.statement_cycle_day % 28 + 1
        )

        updated = self.ledger.update_loan(tampered)

        assert updated.balance == Decimal('1000.00')
        assert updated.accrued_interest == Decimal('0')
        assert updated.statement_cycle_day == loan.statement_cycle_day

    def test_inconsistent_rates_rejected(self):
        loan = self.new_loan()
        with pytest.raises(ValidationError, match="Effective rate"):
            self.ledger.update_loan(loan.copy(base_rate=Decimal('0.20')))

    def test_update_missing_loan(self):
        loan = self.new_loan()
        self.ledger.delete_loan(loan.id)
        with pytest.raises(NotFoundError):
            self.ledger.update_loan(loan)

    def test_update_closed_loan_is_noop(self):
        loan = self.new_loan()
        self.ledger.record_payment(loan.id, "1000.00")
        closed = self.ledger.get_loan(loan.id)

        result = self.ledger.update_loan(closed.copy(customer_key="OTHER"))

        assert result == closed
        assert self.ledger.get_loan(loan.id).customer_key == "CUST-1"

    def test_delete_removes_loan_and_transactions(self):
        loan = self.new_loan()
        self.ledger.record_payment(loan.id, "100.00")
        other = self.new_loan()

        assert self.ledger.delete_loan(loan.id) is True

        with pytest.raises(NotFoundError):
            self.ledger.get_loan(loan.id)
        with pytest.raises(NotFoundError):
            self.ledger.get_transactions(loan.id)
        assert self.store.list_transactions_for_loan(loan.id) == []
        assert len(self.ledger.get_transactions(other.id)) == 1

    def test_delete_missing_loan(self):
        with pytest.raises(NotFoundError):
            self.ledger.delete_loan("missing")

    def test_delete_closed_loan_is_noop(self):
        loan = self.new_loan()
        self.ledger.record_payment(loan.id, "1000.00")

        assert self.ledger.delete_loan(loan.id) is False

        assert self.ledger.get_loan(loan.id).status == LoanStatus.CLOSED
        assert len(self.ledger.get_transactions(loan.id)) == 2
