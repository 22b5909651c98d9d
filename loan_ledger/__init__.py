"""
Loan Ledger

Personal loan lifecycle engine: disbursement, daily interest accrual,
monthly capitalization and payment-driven closure, using Decimal for all
financial math and an append-only transaction trail.
"""

__version__ = "1.0.0"
