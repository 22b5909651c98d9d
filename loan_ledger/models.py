"""
Loan Ledger Data Model

Loan and Transaction records with their invariants. Monetary and rate values
are always Decimal and are serialized as exact decimal text, never float.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, date
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional
from enum import Enum

from .errors import ValidationError


MIN_STATEMENT_DAY = 1
MAX_STATEMENT_DAY = 28
DAYS_IN_YEAR = Decimal('365')
ZERO = Decimal('0')


class LoanStatus(Enum):
    """Loan lifecycle states. CLOSED is terminal."""
    ACTIVE = "active"
    CLOSED = "closed"


class TransactionType(Enum):
    """Balance-affecting events recorded in the audit trail"""
    DISBURSEMENT = "disbursement"   # Principal paid out at creation
    PAYMENT = "payment"             # Reduces balance
    INTEREST = "interest"           # Capitalized accrued interest


def parse_decimal(value: Any, field_name: str = "value") -> Decimal:
    """
    Convert input to a finite Decimal.

    Accepts Decimal, int or decimal text. Floats are rejected because they
    cannot carry an exact base-10 value.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field_name} must be a decimal string or Decimal, not {type(value).__name__}")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation:
            raise ValidationError(f"{field_name} is not a valid decimal: {value!r}")
    else:
        raise ValidationError(f"{field_name} must be a decimal string or Decimal, not {type(value).__name__}")

    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite, got {value!r}")
    return result


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    return date.fromisoformat(value)


@dataclass
class Loan:
    """Personal loan account with current balance and accrual state"""
    id: str
    created_at: datetime
    updated_at: datetime
    customer_key: str                   # Opaque reference to external customer system
    principal: Decimal                  # Disbursed amount, immutable
    balance: Decimal                    # Outstanding principal incl. capitalized interest
    base_rate: Decimal                  # Product rate, e.g. 0.12 for 12% APR
    rate_variance: Decimal              # Per-customer adjustment, may be negative
    effective_rate: Decimal             # base_rate + rate_variance, fixed at creation
    statement_cycle_day: int            # Day of month (1-28) interest is capitalized
    accrued_interest: Decimal = ZERO    # Earned since last capitalization
    status: LoanStatus = LoanStatus.ACTIVE
    last_accrual_date: Optional[date] = None
    last_capitalization_date: Optional[date] = None

    def __post_init__(self):
        for name in ('principal', 'balance', 'base_rate', 'rate_variance',
                     'effective_rate', 'accrued_interest'):
            value = getattr(self, name)
            if not isinstance(value, Decimal) or not value.is_finite():
                raise ValidationError(f"Loan.{name} must be a finite Decimal, got {value!r}")

        if isinstance(self.status, str):
            self.status = LoanStatus(self.status)

        if self.principal <= ZERO:
            raise ValidationError("Principal must be positive")
        if self.balance < ZERO:
            raise ValidationError("Balance cannot be negative")
        if self.accrued_interest < ZERO:
            raise ValidationError("Accrued interest cannot be negative")
        if not MIN_STATEMENT_DAY <= self.statement_cycle_day <= MAX_STATEMENT_DAY:
            raise ValidationError(
                f"Statement cycle day must be between {MIN_STATEMENT_DAY} and "
                f"{MAX_STATEMENT_DAY}, got {self.statement_cycle_day}"
            )
        if self.status == LoanStatus.CLOSED and self.balance != ZERO:
            raise ValidationError("A closed loan must have a zero balance")

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def copy(self, **changes) -> 'Loan':
        """Return a validated copy with the given fields replaced"""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and transport"""
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "customer_key": self.customer_key,
            "principal": str(self.principal),
            "balance": str(self.balance),
            "base_rate": str(self.base_rate),
            "rate_variance": str(self.rate_variance),
            "effective_rate": str(self.effective_rate),
            "statement_cycle_day": self.statement_cycle_day,
            "accrued_interest": str(self.accrued_interest),
            "status": self.status.value,
            "last_accrual_date": self.last_accrual_date.isoformat() if self.last_accrual_date else None,
            "last_capitalization_date": (
                self.last_capitalization_date.isoformat() if self.last_capitalization_date else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create instance from dictionary"""
        try:
            return cls(
                id=data['id'],
                created_at=datetime.fromisoformat(data['created_at']),
                updated_at=datetime.fromisoformat(data['updated_at']),
                customer_key=data['customer_key'],
                principal=Decimal(data['principal']),
                balance=Decimal(data['balance']),
                base_rate=Decimal(data['base_rate']),
                rate_variance=Decimal(data['rate_variance']),
                effective_rate=Decimal(data['effective_rate']),
                statement_cycle_day=int(data['statement_cycle_day']),
                accrued_interest=Decimal(data.get('accrued_interest') or '0'),
                status=LoanStatus(data['status']),
                last_accrual_date=_parse_date(data.get('last_accrual_date')),
                last_capitalization_date=_parse_date(data.get('last_capitalization_date')),
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"Malformed loan record: {e}") from e


@dataclass(frozen=True)
class Transaction:
    """Immutable audit record of a balance-affecting event"""
    id: str
    loan_id: str
    amount: Decimal                     # Always positive; direction implied by type
    type: TransactionType
    timestamp: datetime

    def __post_init__(self):
        if not isinstance(self.amount, Decimal) or not self.amount.is_finite():
            raise ValidationError(f"Transaction amount must be a finite Decimal, got {self.amount!r}")
        if self.amount <= ZERO:
            raise ValidationError("Transaction amount must be positive")
        if isinstance(self.type, str):
            object.__setattr__(self, 'type', TransactionType(self.type))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "amount": str(self.amount),
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        try:
            return cls(
                id=data['id'],
                loan_id=data['loan_id'],
                amount=Decimal(data['amount']),
                type=TransactionType(data['type']),
                timestamp=datetime.fromisoformat(data['timestamp']),
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"Malformed transaction record: {e}") from e


