"""
Repository pattern for data access.

Handles the SQLite schema and the append-only usage and payment logs,
plus keyed persistence of model pricing.
"""

import json
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import PaymentRecord, PaymentStatus, PricingEntry, UsageRecord


@dataclass(frozen=True)
class UsageStats:
    """Aggregated usage for one account over a time window."""
    total_tokens: int
    total_cost: int
    average_daily_cost: float
    top_models: List[Tuple[str, int]]


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL CHECK (balance >= 0),
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_record (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL REFERENCES accounts(id),
        operation TEXT NOT NULL,
        model TEXT NOT NULL,
        tokens INTEGER NOT NULL,
        cost INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        balance_after INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_record (
        external_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(id),
        amount INTEGER NOT NULL,
        credits_granted INTEGER NOT NULL CHECK (credits_granted >= 0),
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS model_pricing (
        model TEXT PRIMARY KEY,
        cost_per_token TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        provider TEXT NOT NULL DEFAULT 'unknown',
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_account ON usage_record(account_id, timestamp)",
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the metering tables if they don't exist.

    ``usage_record`` and ``payment_record`` are append-only logs. Payment
    rows only ever change their status column, and only out of pending.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()


def insert_usage_record(conn: sqlite3.Connection, record: UsageRecord) -> None:
    """Append a usage record using an open connection."""
    conn.execute("""
        INSERT INTO usage_record
        (account_id, operation, model, tokens, cost, timestamp, metadata, balance_after)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        record.account_id,
        record.operation,
        record.model,
        record.tokens,
        record.cost,
        record.timestamp.isoformat(),
        json.dumps(record.metadata, sort_keys=True),
        record.balance_after
    ))


def fetch_usage_records(
    conn: sqlite3.Connection,
    account_id: str,
    limit: int = 50,
    since: Optional[datetime] = None
) -> List[UsageRecord]:
    """Fetch usage records for an account, newest first.

    Args:
        conn: Open SQLite connection
        account_id: Account to read
        limit: Maximum number of records to return
        since: Optional lower bound on the record timestamp

    Returns:
        List of usage records ordered by timestamp (newest first)
    """
    query = """
        SELECT account_id, operation, model, tokens, cost, timestamp,
               metadata, balance_after
        FROM usage_record
        WHERE account_id = ?
    """
    params: list = [account_id]
    if since is not None:
        query += " AND timestamp >= ?"
        params.append(since.isoformat())
    query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
    params.append(limit)

    records = []
    for row in conn.execute(query, params).fetchall():
        records.append(UsageRecord(
            account_id=row[0],
            operation=row[1],
            model=row[2],
            tokens=row[3],
            cost=row[4],
            timestamp=datetime.fromisoformat(row[5]),
            metadata=json.loads(row[6]),
            balance_after=row[7]
        ))
    return records


# Operator balance adjustments are logged with usage but are not usage
OPERATION_CREDIT_ADJUSTMENT = "credit_adjustment"


def summarize_usage(records: Iterable[UsageRecord], days: int) -> UsageStats:
    """Aggregate usage records into totals and the top five models by tokens.

    Credit adjustments are skipped.
    """
    total_tokens = 0
    total_cost = 0
    by_model: Dict[str, int] = defaultdict(int)
    for record in records:
        if record.operation == OPERATION_CREDIT_ADJUSTMENT:
            continue
        total_tokens += record.tokens
        total_cost += record.cost
        by_model[record.model] += record.tokens

    top_models = sorted(by_model.items(), key=lambda item: item[1], reverse=True)[:5]
    return UsageStats(
        total_tokens=total_tokens,
        total_cost=total_cost,
        average_daily_cost=total_cost / days if days > 0 else 0.0,
        top_models=top_models
    )


def usage_cutoff(days: int) -> datetime:
    return datetime.now() - timedelta(days=days)


def insert_payment_record(conn: sqlite3.Connection, record: PaymentRecord) -> None:
    """Insert a pending payment record. Duplicate external ids raise IntegrityError."""
    created = (record.created_at or datetime.now()).isoformat()
    conn.execute("""
        INSERT INTO payment_record
        (external_id, account_id, amount, credits_granted, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        record.external_id,
        record.account_id,
        record.amount,
        record.credits_granted,
        record.status.value,
        created,
        created
    ))


def fetch_payment_record(conn: sqlite3.Connection, external_id: str) -> Optional[PaymentRecord]:
    row = conn.execute("""
        SELECT external_id, account_id, amount, credits_granted, status,
               created_at, updated_at
        FROM payment_record WHERE external_id = ?
    """, (external_id,)).fetchone()
    if row is None:
        return None
    return PaymentRecord(
        external_id=row[0],
        account_id=row[1],
        amount=row[2],
        credits_granted=row[3],
        status=PaymentStatus(row[4]),
        created_at=datetime.fromisoformat(row[5]),
        updated_at=datetime.fromisoformat(row[6])
    )


class PricingRepository:
    """Keyed persistence for model pricing entries.

    Rates are stored as decimal strings so no precision is lost in
    the round trip through SQLite.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def load_entries(self) -> List[PricingEntry]:
        """Load every pricing entry, active or not."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT model, cost_per_token, active, provider, updated_at
                FROM model_pricing ORDER BY model
            """)
            return [
                PricingEntry(
                    model=row[0],
                    cost_per_token=Decimal(row[1]),
                    active=bool(row[2]),
                    provider=row[3],
                    updated_at=datetime.fromisoformat(row[4])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def upsert(self, entry: PricingEntry) -> None:
        """Insert or replace the entry for ``entry.model``."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO model_pricing (model, cost_per_token, active, provider, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(model) DO UPDATE SET
                    cost_per_token = excluded.cost_per_token,
                    active = excluded.active,
                    provider = excluded.provider,
                    updated_at = excluded.updated_at
            """, (
                entry.model,
                str(entry.cost_per_token),
                int(entry.active),
                entry.provider,
                (entry.updated_at or datetime.now()).isoformat()
            ))
        finally:
            conn.close()
