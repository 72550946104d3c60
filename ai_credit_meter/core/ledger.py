"""
Authoritative credit balances.

A Ledger owns every account balance. Debits and credits against the same
account are linearizable: two concurrent debits can never both succeed
against a balance that only covers one of them.

Two interchangeable implementations are provided:
- InMemoryLedger serializes each account behind its own lock
- SqliteLedger relies on conditional updates inside immediate transactions

Insufficient funds is a normal debit outcome, not an exception. Storage
failures are raised as LedgerStorageError and are never reported as
insufficient funds.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional

from .errors import AccountNotFoundError, LedgerStorageError
from ..storage.db import DEFAULT_DB_PATH, get_connection
from ..storage.models import Account, PaymentRecord, PaymentStatus, UsageRecord
from ..storage.repository import (
    OPERATION_CREDIT_ADJUSTMENT,
    UsageStats,
    fetch_payment_record,
    fetch_usage_records,
    initialize_schema,
    insert_payment_record,
    insert_usage_record,
    summarize_usage,
    usage_cutoff,
)

logger = logging.getLogger(__name__)


class DebitStatus(Enum):
    """Outcome of a debit attempt."""
    SUCCESS = "success"
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class DebitResult:
    """Debit outcome with the balance after the attempt.

    On INSUFFICIENT the balance is the unchanged balance that was too low.
    """
    status: DebitStatus
    balance: int

    @property
    def ok(self) -> bool:
        return self.status == DebitStatus.SUCCESS


def _check_amount(amount: int) -> None:
    if amount < 0:
        raise ValueError(f"amount must be >= 0, got {amount}")


class Ledger(ABC):
    """Balance store plus the append-only usage and payment logs."""

    @abstractmethod
    def open_account(self, account_id: str, starting_grant: int = 0) -> Account:
        """Create an account with its starting grant.

        Raises:
            ValueError: If the account already exists or the grant is negative
        """

    @abstractmethod
    def get_account(self, account_id: str) -> Account:
        """Point-in-time read of an account.

        Raises:
            AccountNotFoundError: If the account does not exist
        """

    @abstractmethod
    def deactivate_account(self, account_id: str) -> Account:
        """Soft-deactivate an account. Its balance and history are kept."""

    def get_balance(self, account_id: str) -> int:
        return self.get_account(account_id).balance

    @abstractmethod
    def debit(self, account_id: str, amount: int) -> DebitResult:
        """Atomically decrement the balance if it covers ``amount``."""

    @abstractmethod
    def credit(self, account_id: str, amount: int) -> int:
        """Atomically increment the balance and return the new balance."""

    @abstractmethod
    def append_usage(self, record: UsageRecord) -> None:
        """Append a usage record to the audit trail."""

    @abstractmethod
    def usage_history(self, account_id: str, limit: int = 50) -> List[UsageRecord]:
        """Usage records for an account, newest first."""

    @abstractmethod
    def usage_stats(self, account_id: str, days: int = 30) -> UsageStats:
        """Aggregate usage for an account over the last ``days`` days."""

    @abstractmethod
    def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        """Record a newly initiated payment.

        Raises:
            ValueError: If a payment with the same external id exists
        """

    @abstractmethod
    def get_payment(self, external_id: str) -> Optional[PaymentRecord]:
        """Look up a payment by its external id."""

    @abstractmethod
    def complete_payment(self, external_id: str) -> bool:
        """Move a pending payment to completed and credit its grant.

        Both changes are applied as one unit of work.

        Returns:
            True if the credit was applied, False if the payment was
            not pending (already completed, failed or missing)
        """

    @abstractmethod
    def fail_payment(self, external_id: str) -> bool:
        """Move a pending payment to failed. No balance change."""


class InMemoryLedger(Ledger):
    """Process-local ledger for tests and demos.

    Every balance mutation of an account happens under that account's lock.
    Payment transitions take the payment lock first and the account lock
    second; debits only ever take an account lock, so there is no cycle.
    """

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._payments: Dict[str, PaymentRecord] = {}
        self._payments_lock = threading.Lock()
        self._usage: List[UsageRecord] = []
        self._usage_lock = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def _require(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def open_account(self, account_id: str, starting_grant: int = 0) -> Account:
        _check_amount(starting_grant)
        with self._lock_for(account_id):
            if account_id in self._accounts:
                raise ValueError(f"Account already exists: {account_id}")
            account = Account(
                id=account_id,
                balance=starting_grant,
                active=True,
                created_at=datetime.now()
            )
            self._accounts[account_id] = account
        logger.info("Opened account %s with %d credits", account_id, starting_grant)
        return account

    def get_account(self, account_id: str) -> Account:
        return self._require(account_id)

    def deactivate_account(self, account_id: str) -> Account:
        with self._lock_for(account_id):
            account = replace(self._require(account_id), active=False)
            self._accounts[account_id] = account
        logger.info("Deactivated account %s", account_id)
        return account

    def debit(self, account_id: str, amount: int) -> DebitResult:
        _check_amount(amount)
        with self._lock_for(account_id):
            account = self._require(account_id)
            if account.balance < amount:
                return DebitResult(DebitStatus.INSUFFICIENT, account.balance)
            account = replace(account, balance=account.balance - amount)
            self._accounts[account_id] = account
            return DebitResult(DebitStatus.SUCCESS, account.balance)

    def credit(self, account_id: str, amount: int) -> int:
        _check_amount(amount)
        with self._lock_for(account_id):
            account = self._require(account_id)
            account = replace(account, balance=account.balance + amount)
            self._accounts[account_id] = account
            return account.balance

    def append_usage(self, record: UsageRecord) -> None:
        self._require(record.account_id)
        with self._usage_lock:
            self._usage.append(record)

    def usage_history(self, account_id: str, limit: int = 50) -> List[UsageRecord]:
        with self._usage_lock:
            records = [r for r in self._usage if r.account_id == account_id]
        records.reverse()
        return records[:limit]

    def usage_stats(self, account_id: str, days: int = 30) -> UsageStats:
        cutoff = usage_cutoff(days)
        with self._usage_lock:
            records = [
                r for r in self._usage
                if r.account_id == account_id and r.timestamp >= cutoff
            ]
        return summarize_usage(records, days)

    def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        self._require(record.account_id)
        with self._payments_lock:
            if record.external_id in self._payments:
                raise ValueError(f"Payment already exists: {record.external_id}")
            now = datetime.now()
            record = replace(record, created_at=record.created_at or now, updated_at=now)
            self._payments[record.external_id] = record
        return record

    def get_payment(self, external_id: str) -> Optional[PaymentRecord]:
        return self._payments.get(external_id)

    def complete_payment(self, external_id: str) -> bool:
        with self._payments_lock:
            record = self._payments.get(external_id)
            if record is None or record.status != PaymentStatus.PENDING:
                return False
            self.credit(record.account_id, record.credits_granted)
            self._payments[external_id] = replace(
                record, status=PaymentStatus.COMPLETED, updated_at=datetime.now()
            )
        return True

    def fail_payment(self, external_id: str) -> bool:
        with self._payments_lock:
            record = self._payments.get(external_id)
            if record is None or record.status != PaymentStatus.PENDING:
                return False
            self._payments[external_id] = replace(
                record, status=PaymentStatus.FAILED, updated_at=datetime.now()
            )
        return True


class SqliteLedger(Ledger):
    """SQLite backed ledger.

    Each operation opens its own connection. Balance changes run inside
    ``BEGIN IMMEDIATE`` so the write lock is held from the first read, and
    debits are conditional updates (``balance >= amount``) guarded by a
    CHECK constraint on the table.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, initialize: bool = True):
        self.db_path = db_path
        if initialize:
            try:
                initialize_schema(db_path)
            except sqlite3.Error as e:
                raise LedgerStorageError(f"Cannot initialize ledger schema: {e}", e) from e

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = get_connection(self.db_path)
            yield conn
        except sqlite3.Error as e:
            raise LedgerStorageError(f"Ledger storage failure: {e}", e) from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _read_account(conn: sqlite3.Connection, account_id: str) -> Account:
        row = conn.execute(
            "SELECT id, balance, active, created_at FROM accounts WHERE id = ?",
            (account_id,)
        ).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return Account(
            id=row[0],
            balance=row[1],
            active=bool(row[2]),
            created_at=datetime.fromisoformat(row[3])
        )

    def open_account(self, account_id: str, starting_grant: int = 0) -> Account:
        _check_amount(starting_grant)
        created_at = datetime.now()
        with self._session() as conn:
            try:
                conn.execute(
                    "INSERT INTO accounts (id, balance, active, created_at) VALUES (?, ?, 1, ?)",
                    (account_id, starting_grant, created_at.isoformat())
                )
            except sqlite3.IntegrityError:
                raise ValueError(f"Account already exists: {account_id}")
        logger.info("Opened account %s with %d credits", account_id, starting_grant)
        return Account(id=account_id, balance=starting_grant, active=True, created_at=created_at)

    def get_account(self, account_id: str) -> Account:
        with self._session() as conn:
            return self._read_account(conn, account_id)

    def deactivate_account(self, account_id: str) -> Account:
        with self._transaction() as conn:
            conn.execute("UPDATE accounts SET active = 0 WHERE id = ?", (account_id,))
            account = self._read_account(conn, account_id)
        logger.info("Deactivated account %s", account_id)
        return account

    def debit(self, account_id: str, amount: int) -> DebitResult:
        _check_amount(amount)
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE accounts SET balance = balance - ? WHERE id = ? AND balance >= ?",
                (amount, account_id, amount)
            )
            balance = self._read_account(conn, account_id).balance
        if cursor.rowcount == 1:
            return DebitResult(DebitStatus.SUCCESS, balance)
        return DebitResult(DebitStatus.INSUFFICIENT, balance)

    def credit(self, account_id: str, amount: int) -> int:
        _check_amount(amount)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE accounts SET balance = balance + ? WHERE id = ?",
                (amount, account_id)
            )
            return self._read_account(conn, account_id).balance

    def append_usage(self, record: UsageRecord) -> None:
        with self._session() as conn:
            self._read_account(conn, record.account_id)
            insert_usage_record(conn, record)

    def usage_history(self, account_id: str, limit: int = 50) -> List[UsageRecord]:
        with self._session() as conn:
            return fetch_usage_records(conn, account_id, limit=limit)

    def usage_stats(self, account_id: str, days: int = 30) -> UsageStats:
        with self._session() as conn:
            records = fetch_usage_records(conn, account_id, limit=-1, since=usage_cutoff(days))
        return summarize_usage(records, days)

    def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        with self._session() as conn:
            self._read_account(conn, record.account_id)
            try:
                insert_payment_record(conn, record)
            except sqlite3.IntegrityError:
                raise ValueError(f"Payment already exists: {record.external_id}")
            return fetch_payment_record(conn, record.external_id)

    def get_payment(self, external_id: str) -> Optional[PaymentRecord]:
        with self._session() as conn:
            return fetch_payment_record(conn, external_id)

    def _transition(self, conn: sqlite3.Connection, external_id: str, status: PaymentStatus) -> bool:
        cursor = conn.execute("""
            UPDATE payment_record SET status = ?, updated_at = ?
            WHERE external_id = ? AND status = ?
        """, (status.value, datetime.now().isoformat(), external_id, PaymentStatus.PENDING.value))
        return cursor.rowcount == 1

    def complete_payment(self, external_id: str) -> bool:
        with self._transaction() as conn:
            if not self._transition(conn, external_id, PaymentStatus.COMPLETED):
                return False
            record = fetch_payment_record(conn, external_id)
            cursor = conn.execute(
                "UPDATE accounts SET balance = balance + ? WHERE id = ?",
                (record.credits_granted, record.account_id)
            )
            if cursor.rowcount != 1:
                raise AccountNotFoundError(record.account_id)
        return True

    def fail_payment(self, external_id: str) -> bool:
        with self._transaction() as conn:
            return self._transition(conn, external_id, PaymentStatus.FAILED)


def adjust_credits(
    ledger: Ledger,
    account_id: str,
    amount: int,
    reason: str,
    adjusted_by: str = "operator"
) -> DebitResult:
    """Operator adjustment of an account balance.

    Positive amounts are credited, negative amounts debited. A deduction
    the balance cannot cover changes nothing and returns INSUFFICIENT.
    Applied adjustments are logged as a ``credit_adjustment`` usage record
    whose cost is the negated amount.

    Raises:
        ValueError: If the amount is zero or the reason is empty
        AccountNotFoundError: If the account does not exist
    """
    if amount == 0:
        raise ValueError("amount must be non-zero")
    if not reason or not reason.strip():
        raise ValueError("reason is required and cannot be empty")

    ledger.get_account(account_id)
    if amount > 0:
        result = DebitResult(DebitStatus.SUCCESS, ledger.credit(account_id, amount))
    else:
        result = ledger.debit(account_id, -amount)
        if not result.ok:
            logger.warning(
                "Adjustment of %d for %s refused: balance %d", amount, account_id, result.balance
            )
            return result

    ledger.append_usage(UsageRecord(
        account_id=account_id,
        operation=OPERATION_CREDIT_ADJUSTMENT,
        model="admin",
        tokens=0,
        cost=-amount,
        timestamp=datetime.now(),
        metadata={"reason": reason, "adjusted_by": adjusted_by},
        balance_after=result.balance
    ))
    logger.info(
        "Adjusted %s by %d credits (%s), balance %d", account_id, amount, reason, result.balance
    )
    return result
