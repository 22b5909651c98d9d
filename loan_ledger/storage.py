"""
Storage Backend Module

Provides the abstract loan store consumed by the ledger engine and two
implementations: in-memory (testing) and SQLite (persistence). All monetary
values are stored as exact decimal text.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager

from .errors import NotFoundError, PersistenceError, ConfigurationError
from .models import Loan, Transaction, LoanStatus


class LoanStore(ABC):
    """Abstract interface for loan and transaction storage"""

    @abstractmethod
    def create_loan(self, loan: Loan) -> None:
        """Insert a new loan"""
        pass

    @abstractmethod
    def get_loan(self, loan_id: str) -> Loan:
        """Load a loan, raising NotFoundError if absent"""
        pass

    @abstractmethod
    def update_loan(self, loan: Loan) -> None:
        """Replace the stored loan with the same id"""
        pass

    @abstractmethod
    def delete_loan(self, loan_id: str) -> None:
        """Delete a loan together with all of its transactions"""
        pass

    @abstractmethod
    def list_all_loans(self) -> List[Loan]:
        """All loans ordered by creation time"""
        pass

    @abstractmethod
    def list_active_loans(self) -> List[Loan]:
        """Loans whose status is active"""
        pass

    @abstractmethod
    def create_transaction(self, transaction: Transaction) -> None:
        """Append a transaction to its loan's audit trail"""
        pass

    @abstractmethod
    def list_transactions_for_loan(self, loan_id: str) -> List[Transaction]:
        """Transactions for a loan ordered by timestamp ascending"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a storage transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic read-modify-write scopes.

        Everything written inside the block is committed together or not at
        all. Scopes are re-entrant; nested scopes join the outermost one.
        """
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryLoanStore(LoanStore):
    """In-memory store for tests and ephemeral deployments"""

    def __init__(self):
        self._loans: Dict[str, Dict[str, Any]] = {}
        self._transactions: List[Dict[str, Any]] = []
        self._lock = threading.RLock()
        self._depth = 0
        # Undo journal for the open scope: prior loan rows by id (None when
        # the row did not exist), the transaction count at scope start, and
        # the whole transaction list once a delete has filtered it
        self._saved_loans: Dict[str, Optional[Dict[str, Any]]] = {}
        self._saved_transaction_count = 0
        self._saved_transactions: Optional[List[Dict[str, Any]]] = None

    @staticmethod
    def _copy(data):
        # Round-trip through JSON so callers never share mutable state with the store
        return json.loads(json.dumps(data))

    def _remember_loan(self, loan_id: str) -> None:
        # Stored rows are replaced, never mutated, so keeping the reference is enough
        if self._depth and loan_id not in self._saved_loans:
            self._saved_loans[loan_id] = self._loans.get(loan_id)

    def create_loan(self, loan: Loan) -> None:
        with self._lock:
            if loan.id in self._loans:
                raise PersistenceError(f"Loan {loan.id} already exists")
            self._remember_loan(loan.id)
            self._loans[loan.id] = self._copy(loan.to_dict())

    def get_loan(self, loan_id: str) -> Loan:
        with self._lock:
            record = self._loans.get(loan_id)
            if record is None:
                raise NotFoundError(f"Loan {loan_id} not found")
            return Loan.from_dict(self._copy(record))

    def update_loan(self, loan: Loan) -> None:
        with self._lock:
            if loan.id not in self._loans:
                raise NotFoundError(f"Loan {loan.id} not found")
            self._remember_loan(loan.id)
            self._loans[loan.id] = self._copy(loan.to_dict())

    def delete_loan(self, loan_id: str) -> None:
        with self._lock:
            if loan_id not in self._loans:
                raise NotFoundError(f"Loan {loan_id} not found")
            self._remember_loan(loan_id)
            if self._depth and self._saved_transactions is None:
                self._saved_transactions = self._transactions
            self._transactions = [tx for tx in self._transactions if tx['loan_id'] != loan_id]
            del self._loans[loan_id]

    def list_all_loans(self) -> List[Loan]:
        with self._lock:
            loans = [Loan.from_dict(self._copy(record)) for record in self._loans.values()]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def list_active_loans(self) -> List[Loan]:
        return [loan for loan in self.list_all_loans() if loan.status == LoanStatus.ACTIVE]

    def create_transaction(self, transaction: Transaction) -> None:
        with self._lock:
            if transaction.loan_id not in self._loans:
                raise PersistenceError(
                    f"Transaction {transaction.id} references unknown loan {transaction.loan_id}"
                )
            if any(tx['id'] == transaction.id for tx in self._transactions):
                raise PersistenceError(f"Transaction {transaction.id} already exists")
            self._transactions.append(self._copy(transaction.to_dict()))

    def list_transactions_for_loan(self, loan_id: str) -> List[Transaction]:
        with self._lock:
            records = [self._copy(tx) for tx in self._transactions if tx['loan_id'] == loan_id]
        transactions = [Transaction.from_dict(record) for record in records]
        # Stable sort keeps insertion order for equal timestamps
        transactions.sort(key=lambda tx: tx.timestamp)
        return transactions

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._saved_loans = {}
            self._saved_transaction_count = len(self._transactions)
            self._saved_transactions = None
        self._depth += 1

    def _forget_journal(self) -> None:
        self._saved_loans = {}
        self._saved_transactions = None

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._forget_journal()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                for loan_id, record in self._saved_loans.items():
                    if record is None:
                        self._loans.pop(loan_id, None)
                    else:
                        self._loans[loan_id] = record
                if self._saved_transactions is not None:
                    self._transactions = self._saved_transactions
                # Only appends reach the pre-delete list, so truncating restores it
                del self._transactions[self._saved_transaction_count:]
                self._forget_journal()
        finally:
            self._lock.release()


_LOAN_COLUMNS = (
    "id", "customer_key", "principal", "balance", "base_rate", "rate_variance",
    "effective_rate", "statement_cycle_day", "accrued_interest", "status",
    "last_accrual_date", "last_capitalization_date", "created_at", "updated_at",
)

_TRANSACTION_COLUMNS = ("id", "loan_id", "amount", "type", "timestamp")


class SQLiteLoanStore(LoanStore):
    """SQLite store. Decimals are TEXT columns so no precision is lost."""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        self.db_path = str(db_path)
        # Autocommit mode; atomic() issues explicit BEGIN IMMEDIATE / COMMIT
        try:
            self._connection = sqlite3.connect(
                self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        with self._lock:
            self._execute("PRAGMA foreign_keys = ON")
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")
            self._init_schema()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e

    def _init_schema(self) -> None:
        self._execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                customer_key TEXT NOT NULL,
                principal TEXT NOT NULL,
                balance TEXT NOT NULL,
                base_rate TEXT NOT NULL,
                rate_variance TEXT NOT NULL,
                effective_rate TEXT NOT NULL,
                statement_cycle_day INTEGER NOT NULL
                    CHECK (statement_cycle_day BETWEEN 1 AND 28),
                accrued_interest TEXT NOT NULL DEFAULT '0',
                status TEXT NOT NULL,
                last_accrual_date TEXT,
                last_capitalization_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute("""
            CREATE INDEX IF NOT EXISTS idx_loans_status ON loans(status)
        """)
        self._execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                loan_id TEXT NOT NULL REFERENCES loans(id) ON DELETE CASCADE,
                amount TEXT NOT NULL,
                type TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        self._execute("""
            CREATE INDEX IF NOT EXISTS idx_transactions_loan_timestamp
            ON transactions(loan_id, timestamp)
        """)

    def create_loan(self, loan: Loan) -> None:
        data = loan.to_dict()
        placeholders = ", ".join("?" for _ in _LOAN_COLUMNS)
        with self._lock:
            self._execute(
                f"INSERT INTO loans ({', '.join(_LOAN_COLUMNS)}) VALUES ({placeholders})",
                tuple(data[column] for column in _LOAN_COLUMNS)
            )

    def get_loan(self, loan_id: str) -> Loan:
        with self._lock:
            row = self._execute(
                f"SELECT {', '.join(_LOAN_COLUMNS)} FROM loans WHERE id = ?", (loan_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(dict(row))

    def update_loan(self, loan: Loan) -> None:
        data = loan.to_dict()
        columns = [column for column in _LOAN_COLUMNS if column != "id"]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._lock:
            cursor = self._execute(
                f"UPDATE loans SET {assignments} WHERE id = ?",
                tuple(data[column] for column in columns) + (loan.id,)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Loan {loan.id} not found")

    def delete_loan(self, loan_id: str) -> None:
        with self.atomic():
            self._execute("DELETE FROM transactions WHERE loan_id = ?", (loan_id,))
            cursor = self._execute("DELETE FROM loans WHERE id = ?", (loan_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Loan {loan_id} not found")

    def _select_loans(self, where: str = "", params: tuple = ()) -> List[Loan]:
        with self._lock:
            rows = self._execute(
                f"SELECT {', '.join(_LOAN_COLUMNS)} FROM loans {where} ORDER BY created_at, rowid",
                params
            ).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def list_all_loans(self) -> List[Loan]:
        return self._select_loans()

    def list_active_loans(self) -> List[Loan]:
        return self._select_loans("WHERE status = ?", (LoanStatus.ACTIVE.value,))

    def create_transaction(self, transaction: Transaction) -> None:
        data = transaction.to_dict()
        with self._lock:
            self._execute(
                f"INSERT INTO transactions ({', '.join(_TRANSACTION_COLUMNS)}) VALUES (?, ?, ?, ?, ?)",
                tuple(data[column] for column in _TRANSACTION_COLUMNS)
            )

    def list_transactions_for_loan(self, loan_id: str) -> List[Transaction]:
        with self._lock:
            rows = self._execute(
                f"SELECT {', '.join(_TRANSACTION_COLUMNS)} FROM transactions "
                f"WHERE loan_id = ? ORDER BY timestamp, rowid",
                (loan_id,)
            ).fetchall()
        return [Transaction.from_dict(dict(row)) for row in rows]

    def begin_transaction(self) -> None:
        """Start a transaction, taking the database write lock up front"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._execute("BEGIN IMMEDIATE")
            except PersistenceError:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error as e:
                    self._connection.rollback()
                    raise PersistenceError(f"Commit failed: {e}") from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0 and self._connection.in_transaction:
                try:
                    self._connection.execute("ROLLBACK")
                except sqlite3.Error as e:
                    raise PersistenceError(f"Rollback failed: {e}") from e
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            self._connection.close()


def create_store(database_url: str, timeout: float = 30.0) -> LoanStore:
    """
    Build a store from a URL.

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite:///:memory:`` for a throwaway SQLite database).
    """
    if database_url == "memory://":
        return InMemoryLoanStore()
    if database_url.startswith("sqlite:///"):
        path = database_url[len("sqlite:///"):]
        if not path:
            raise ConfigurationError("SQLite URL is missing a database path")
        return SQLiteLoanStore(path, timeout=timeout)
    raise ConfigurationError(f"Unsupported database URL: {database_url}")
