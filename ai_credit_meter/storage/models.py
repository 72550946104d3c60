"""
Data models for storage layer.

Defines the persisted entities of the metering core.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional


@dataclass(frozen=True)
class Account:
    """A billable principal with a non-negative credit balance.

    Balances are only ever changed through a Ledger.
    """
    id: str
    balance: int
    active: bool = True
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PricingEntry:
    """Cost per token for a named model."""
    model: str
    cost_per_token: Decimal
    active: bool = True
    provider: str = "unknown"
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one charged request.

    Append-only events that create an auditable trail of metered usage.
    Once written, these records must never be modified.
    """
    account_id: str
    operation: str
    model: str
    tokens: int
    cost: int
    timestamp: datetime
    metadata: Dict[str, str] = field(default_factory=dict)
    balance_after: Optional[int] = None


class PaymentStatus(Enum):
    """Lifecycle of an external payment."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentRecord:
    """Tracks an external payment and its effect on the ledger.

    Status moves from PENDING to COMPLETED or FAILED exactly once.
    Credits are granted only on the PENDING -> COMPLETED transition.
    """
    external_id: str
    account_id: str
    amount: int
    credits_granted: int
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
