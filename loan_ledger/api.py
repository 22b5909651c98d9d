"""
FastAPI REST API Module

Thin HTTP surface over the loan ledger: loan CRUD, payments, transaction
history and the batch interest endpoints used by an external scheduler.
Decimals travel as strings in both directions.
"""

from typing import Optional
import random

from fastapi import FastAPI, Depends, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .clock import Clock
from .config import LedgerConfig, get_config
from .errors import (
    LedgerError, ValidationError, NotFoundError, InvalidStateError, PersistenceError
)
from .ledger import LoanLedger
from .logging_config import setup_logging
from .models import parse_decimal
from .storage import LoanStore, create_store


# Pydantic models for API requests
class CreateLoanRequest(BaseModel):
    customer_key: str = Field(..., description="External customer reference")
    principal: str = Field(..., description="Decimal amount as string")
    base_rate: str = Field(..., description="Annual base rate as decimal string, e.g. 0.12")
    rate_variance: str = Field("0", description="Rate adjustment as decimal string, may be negative")


class UpdateLoanRequest(BaseModel):
    customer_key: Optional[str] = None
    base_rate: Optional[str] = None
    rate_variance: Optional[str] = None
    effective_rate: Optional[str] = Field(
        None, description="Defaults to base_rate + rate_variance when omitted"
    )


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")


class LedgerSystem:
    """Store and ledger engine wired from configuration"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        store: Optional[LoanStore] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()
        self.store = store or create_store(self.config.database_url, self.config.database_timeout)
        self.ledger = LoanLedger(
            self.store,
            clock=clock,
            rng=random.Random(self.config.statement_day_seed),
            precision=self.config.decimal_precision
        )

    def close(self) -> None:
        self.store.close()


ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    """Dependency to get the ledger system instance"""
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem()
    return ledger_system


app = FastAPI(
    title="Loan Ledger API",
    description="Personal loan ledger with daily accrual and monthly capitalization",
    version=__version__
)


def _error_response(status_code: int, kind: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": kind, "detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "validation_error", exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, "not_found", exc)


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return _error_response(status.HTTP_409_CONFLICT, "invalid_state", exc)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "persistence_error", exc)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "ledger_error", exc)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "loan_ledger_api",
        "version": __version__
    }


# Loan Endpoints
@app.post("/loans", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create and disburse a new loan"""
    loan = system.ledger.create_loan(
        customer_key=request.customer_key,
        principal=request.principal,
        base_rate=request.base_rate,
        rate_variance=request.rate_variance
    )
    return loan.to_dict()


@app.get("/loans")
def list_loans(system: LedgerSystem = Depends(get_ledger_system)):
    """List all loans"""
    return {"loans": [loan.to_dict() for loan in system.ledger.list_loans()]}


@app.get("/loans/{loan_id}")
def get_loan(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    """Get loan details"""
    return system.ledger.get_loan(loan_id).to_dict()


@app.put("/loans/{loan_id}")
def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Update a loan's customer reference or rate terms"""
    current = system.ledger.get_loan(loan_id)

    base_rate = current.base_rate
    rate_variance = current.rate_variance
    if request.base_rate is not None:
        base_rate = parse_decimal(request.base_rate, "base_rate")
    if request.rate_variance is not None:
        rate_variance = parse_decimal(request.rate_variance, "rate_variance")

    if request.effective_rate is not None:
        effective_rate = parse_decimal(request.effective_rate, "effective_rate")
    else:
        effective_rate = base_rate + rate_variance

    candidate = current.copy(
        customer_key=request.customer_key if request.customer_key is not None else current.customer_key,
        base_rate=base_rate,
        rate_variance=rate_variance,
        effective_rate=effective_rate
    )
    return system.ledger.update_loan(candidate).to_dict()


@app.delete("/loans/{loan_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_loan(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    """Delete an active loan and its transactions. Closed loans answer 409 and are kept."""
    if not system.ledger.delete_loan(loan_id):
        raise InvalidStateError(f"Loan {loan_id} is closed and cannot be deleted")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/loans/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_payment(
    loan_id: str,
    request: PaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Record a payment against a loan"""
    transaction = system.ledger.record_payment(loan_id, request.amount)
    return transaction.to_dict()


@app.get("/loans/{loan_id}/transactions")
def get_loan_transactions(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    """Get transaction history for a loan"""
    transactions = system.ledger.get_transactions(loan_id)
    return {"transactions": [tx.to_dict() for tx in transactions]}


# Interest Endpoints
@app.post("/admin/interest/daily-accrual")
def run_daily_accrual(system: LedgerSystem = Depends(get_ledger_system)):
    """Run daily interest accrual for all active loans"""
    system.ledger.run_daily_accrual()
    return {"message": "Daily interest accrual completed"}


@app.post("/admin/interest/monthly-capitalization")
def run_monthly_capitalization(system: LedgerSystem = Depends(get_ledger_system)):
    """Capitalize accrued interest for loans on their statement day"""
    system.ledger.run_monthly_capitalization()
    return {"message": "Monthly interest capitalization completed"}


@app.get("/")
async def root():
    """Root endpoint with system information"""
    return {
        "system": "Loan Ledger",
        "version": __version__,
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "loans": "/loans",
            "daily_accrual": "/admin/interest/daily-accrual",
            "monthly_capitalization": "/admin/interest/monthly-capitalization"
        }
    }


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    uvicorn.run(
        "loan_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
