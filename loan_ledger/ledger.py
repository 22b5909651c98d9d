"""
Loan Ledger Engine

Owns loan creation, daily interest accrual, monthly capitalization and
payment application. Every balance-affecting event is written together with
its Transaction record inside one atomic storage scope.
"""

from decimal import Context, Inexact, localcontext, MAX_PREC, MAX_EMAX, MIN_EMIN
from datetime import date
from typing import List, Optional, Any
import logging
import random
import uuid

from .clock import Clock, SystemClock
from .errors import LedgerError, ValidationError, InvalidStateError, NotFoundError
from .logging_config import log_action
from .models import (
    Loan, LoanStatus, Transaction, TransactionType, parse_decimal,
    MIN_STATEMENT_DAY, MAX_STATEMENT_DAY, DAYS_IN_YEAR, ZERO
)
from .storage import LoanStore


logger = logging.getLogger("loan_ledger.ledger")

# Money is only ever added and subtracted under this context. Sums of
# finite decimals are exact here; anything that would round raises Inexact.
EXACT_CONTEXT = Context(prec=MAX_PREC, Emax=MAX_EMAX, Emin=MIN_EMIN)
EXACT_CONTEXT.traps[Inexact] = True


class LoanLedger:
    """
    Manages loan lifecycle from disbursement through closure.

    The engine holds no state shared between loans. The clock and random
    source are injected so date-gated passes and statement day assignment
    are reproducible.
    """

    def __init__(
        self,
        store: LoanStore,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        precision: int = 28
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.precision = precision

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def assign_statement_cycle_day(self) -> int:
        """Pick a statement day to spread monthly batch load across the calendar"""
        return self.rng.randint(MIN_STATEMENT_DAY, MAX_STATEMENT_DAY)

    def create_loan(
        self,
        customer_key: str,
        principal: Any,
        base_rate: Any,
        rate_variance: Any
    ) -> Loan:
        """
        Disburse a new loan.

        Args:
            customer_key: External customer reference
            principal: Amount disbursed, must be positive
            base_rate: Product annual rate, e.g. Decimal('0.12')
            rate_variance: Per-customer adjustment, may be negative

        Returns:
            The persisted Loan
        """
        if not isinstance(customer_key, str) or not customer_key.strip():
            raise ValidationError("Customer key is required")

        principal = parse_decimal(principal, "principal")
        base_rate = parse_decimal(base_rate, "base_rate")
        rate_variance = parse_decimal(rate_variance, "rate_variance")

        if principal <= ZERO:
            raise ValidationError("Principal must be positive")

        now = self.clock.now()
        with localcontext(EXACT_CONTEXT):
            effective_rate = base_rate + rate_variance

        loan = Loan(
            id=self._new_id(),
            created_at=now,
            updated_at=now,
            customer_key=customer_key,
            principal=principal,
            balance=principal,
            base_rate=base_rate,
            rate_variance=rate_variance,
            effective_rate=effective_rate,
            statement_cycle_day=self.assign_statement_cycle_day()
        )

        disbursement = Transaction(
            id=self._new_id(),
            loan_id=loan.id,
            amount=principal,
            type=TransactionType.DISBURSEMENT,
            timestamp=now
        )

        with self.store.atomic():
            self.store.create_loan(loan)
            self.store.create_transaction(disbursement)

        log_action(
            logger, "info", "Loan created",
            action="create_loan", loan_id=loan.id,
            extra={
                "customer_key": customer_key,
                "principal": str(principal),
                "effective_rate": str(effective_rate),
                "statement_cycle_day": loan.statement_cycle_day
            }
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID"""
        return self.store.get_loan(loan_id)

    def list_loans(self) -> List[Loan]:
        """Get all loans"""
        return self.store.list_all_loans()

    def list_active_loans(self) -> List[Loan]:
        return self.store.list_active_loans()

    def get_transactions(self, loan_id: str) -> List[Transaction]:
        """Transaction history for a loan, oldest first"""
        self.store.get_loan(loan_id)
        return self.store.list_transactions_for_loan(loan_id)

    def update_loan(self, loan: Loan) -> Loan:
        """
        Update a loan's customer reference and rate terms.

        Balance, accrual state, principal, statement day and status always
        come from the stored record; those change only through ledger events.
        The rate triple must satisfy effective_rate == base_rate + rate_variance.
        A closed loan is returned unchanged.
        """
        with localcontext(EXACT_CONTEXT):
            if loan.effective_rate != loan.base_rate + loan.rate_variance:
                raise ValidationError(
                    f"Effective rate {loan.effective_rate} does not equal base rate "
                    f"{loan.base_rate} plus variance {loan.rate_variance}"
                )
        if not isinstance(loan.customer_key, str) or not loan.customer_key.strip():
            raise ValidationError("Customer key is required")

        with self.store.atomic():
            current = self.store.get_loan(loan.id)
            if not current.is_active:
                log_action(logger, "warning", "Update ignored for closed loan",
                           action="update_loan", loan_id=loan.id)
                return current

            updated = current.copy(
                customer_key=loan.customer_key,
                base_rate=loan.base_rate,
                rate_variance=loan.rate_variance,
                effective_rate=loan.effective_rate,
                updated_at=self.clock.now()
            )
            self.store.update_loan(updated)

        log_action(logger, "info", "Loan updated", action="update_loan", loan_id=loan.id)
        return updated

    def delete_loan(self, loan_id: str) -> bool:
        """
        Delete an active loan and its transaction history.

        Closed loans are kept with their audit trail; the call is a no-op.

        Returns:
            True if the loan was deleted, False if it was closed and kept
        """
        with self.store.atomic():
            current = self.store.get_loan(loan_id)
            if not current.is_active:
                log_action(logger, "warning", "Delete ignored for closed loan",
                           action="delete_loan", loan_id=loan_id)
                return False
            self.store.delete_loan(loan_id)

        log_action(logger, "info", "Loan deleted", action="delete_loan", loan_id=loan_id)
        return True

    def record_payment(self, loan_id: str, amount: Any) -> Transaction:
        """
        Apply a payment to a loan.

        A payment that brings the balance to zero or below closes the loan.
        Any excess over the balance is absorbed: the balance is clamped to
        zero and the transaction records the full amount paid.

        Returns:
            The payment Transaction
        """
        amount = parse_decimal(amount, "amount")
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive")

        with self.store.atomic():
            loan = self.store.get_loan(loan_id)
            if not loan.is_active:
                raise InvalidStateError(f"Loan {loan_id} is {loan.status.value}, payments require an active loan")

            now = self.clock.now()
            with localcontext(EXACT_CONTEXT):
                new_balance = loan.balance - amount

            status = LoanStatus.ACTIVE
            if new_balance <= ZERO:
                new_balance = ZERO
                status = LoanStatus.CLOSED

            payment = Transaction(
                id=self._new_id(),
                loan_id=loan.id,
                amount=amount,
                type=TransactionType.PAYMENT,
                timestamp=now
            )
            self.store.update_loan(loan.copy(balance=new_balance, status=status, updated_at=now))
            self.store.create_transaction(payment)

        log_action(
            logger, "info", "Payment recorded",
            action="record_payment", loan_id=loan_id,
            extra={"amount": str(amount), "remaining_balance": str(new_balance)}
        )
        if status == LoanStatus.CLOSED:
            log_action(logger, "info", "Loan closed", action="close_loan", loan_id=loan_id)
        return payment

    def run_daily_accrual(self) -> None:
        """
        Accrue one day of interest on every active loan.

        A loan already accrued today is skipped, so the pass can be re-run
        or resumed after interruption. Failures on one loan are logged and
        the pass moves on.
        """
        today = self.clock.today()
        try:
            loans = self.store.list_active_loans()
        except LedgerError:
            logger.exception("Could not list active loans for daily accrual")
            return

        results = {"accrued": 0, "skipped": 0, "failed": 0}
        for loan in loans:
            try:
                if self._accrue_loan(loan.id, today):
                    results["accrued"] += 1
                else:
                    results["skipped"] += 1
            except Exception:
                results["failed"] += 1
                log_action(logger, "error", "Daily accrual failed",
                           action="daily_accrual", loan_id=loan.id, exc_info=True)

        log_action(logger, "info", "Daily accrual completed", action="daily_accrual",
                   extra={"date": today.isoformat(), **results})

    def _accrue_loan(self, loan_id: str, today: date) -> bool:
        with self.store.atomic():
            try:
                loan = self.store.get_loan(loan_id)
            except NotFoundError:
                # Deleted since the pass started
                return False
            if not loan.is_active or loan.last_accrual_date == today:
                return False

            # Only the day's interest is rounded, to the configured precision
            with localcontext() as ctx:
                ctx.prec = self.precision
                daily_interest = loan.balance * (loan.effective_rate / DAYS_IN_YEAR)
            if daily_interest <= ZERO:
                return False
            with localcontext(EXACT_CONTEXT):
                accrued = loan.accrued_interest + daily_interest

            self.store.update_loan(loan.copy(
                accrued_interest=accrued,
                last_accrual_date=today,
                updated_at=self.clock.now()
            ))

        log_action(logger, "debug", "Interest accrued", action="daily_accrual", loan_id=loan_id,
                   extra={"daily_interest": str(daily_interest), "accrued_interest": str(accrued)})
        return True

    def run_monthly_capitalization(self) -> None:
        """
        Fold accrued interest into the balance for loans whose statement
        cycle day is today. Each capitalization writes one interest
        transaction. Failures on one loan are logged and the pass moves on.
        """
        today = self.clock.today()
        try:
            loans = self.store.list_active_loans()
        except LedgerError:
            logger.exception("Could not list active loans for monthly capitalization")
            return

        results = {"capitalized": 0, "skipped": 0, "failed": 0}
        for loan in loans:
            if loan.statement_cycle_day != today.day:
                continue
            try:
                if self._capitalize_loan(loan.id, today):
                    results["capitalized"] += 1
                else:
                    results["skipped"] += 1
            except Exception:
                results["failed"] += 1
                log_action(logger, "error", "Monthly capitalization failed",
                           action="monthly_capitalization", loan_id=loan.id, exc_info=True)

        log_action(logger, "info", "Monthly capitalization completed", action="monthly_capitalization",
                   extra={"date": today.isoformat(), **results})

    def _capitalize_loan(self, loan_id: str, today: date) -> bool:
        with self.store.atomic():
            try:
                loan = self.store.get_loan(loan_id)
            except NotFoundError:
                return False
            if (not loan.is_active
                    or loan.statement_cycle_day != today.day
                    or loan.last_capitalization_date == today
                    or loan.accrued_interest <= ZERO):
                return False

            interest = loan.accrued_interest
            now = self.clock.now()
            with localcontext(EXACT_CONTEXT):
                new_balance = loan.balance + interest

            self.store.update_loan(loan.copy(
                balance=new_balance,
                accrued_interest=ZERO,
                last_capitalization_date=today,
                updated_at=now
            ))
            self.store.create_transaction(Transaction(
                id=self._new_id(),
                loan_id=loan.id,
                amount=interest,
                type=TransactionType.INTEREST,
                timestamp=now
            ))

        log_action(logger, "info", "Interest capitalized", action="monthly_capitalization",
                   loan_id=loan_id, extra={"interest": str(interest), "balance": str(new_balance)})
        return True
