"""
Pricing calculations and rate management.

Maps model identifiers to a cost per token and converts token counts into
credits. Also carries the purchasable credit packs.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_UP
from typing import Dict, List, Mapping, Optional

from ..storage.models import PricingEntry
from ..storage.repository import PricingRepository

logger = logging.getLogger(__name__)

DEFAULT_COST_PER_TOKEN = Decimal("0.1")


def as_rate(value) -> Decimal:
    """Coerce a rate to Decimal; floats go through str to keep 0.1 exact."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class PricingTable:
    """Read-through cache of per-model token rates.

    Lookups read an immutable snapshot and never touch storage. Every
    administrative write persists the entry and then swaps in a freshly
    loaded snapshot, so readers see either the old or the new table.
    """

    def __init__(
        self,
        default_cost_per_token: Decimal = DEFAULT_COST_PER_TOKEN,
        repository: Optional[PricingRepository] = None,
        initial_rates: Optional[Mapping[str, Decimal]] = None
    ):
        """Initialize the table and load the first snapshot.

        Args:
            default_cost_per_token: Rate used for unknown or inactive models
            repository: Optional persistent store; memory only when omitted
            initial_rates: Rates seeded before the persistent ones are loaded
        """
        self.default_cost_per_token = as_rate(default_cost_per_token)
        if self.default_cost_per_token < 0:
            raise ValueError("default_cost_per_token must be >= 0")
        self.repository = repository
        self._entries: Dict[str, PricingEntry] = {}
        self._rates: Dict[str, Decimal] = {}
        # Serializes snapshot swaps; lookups never take it
        self._write_lock = threading.Lock()
        for model, rate in (initial_rates or {}).items():
            self._entries[model] = PricingEntry(model=model, cost_per_token=as_rate(rate))
        self.refresh()

    def refresh(self) -> None:
        """Rebuild the snapshot from storage."""
        with self._write_lock:
            self._rebuild(dict(self._entries))

    def _rebuild(self, entries: Dict[str, PricingEntry]) -> None:
        if self.repository is not None:
            for entry in self.repository.load_entries():
                entries[entry.model] = entry
        self._entries = entries
        self._rates = {
            model: entry.cost_per_token
            for model, entry in entries.items()
            if entry.active
        }

    def cost_per_token(self, model: str) -> Decimal:
        """Rate for ``model``, falling back to the default for unknown models."""
        return self._rates.get(model, self.default_cost_per_token)

    def calculate_cost(self, model: str, tokens: int) -> int:
        """Convert a token count into credits with conservative rounding.

        Args:
            model: Model identifier
            tokens: Number of tokens to charge for

        Returns:
            Credits rounded UP to a whole number
        """
        cost = Decimal(tokens) * self.cost_per_token(model)
        return int(cost.to_integral_value(rounding=ROUND_UP))

    def upsert(
        self,
        model: str,
        rate: Decimal,
        active: bool = True,
        provider: str = "unknown"
    ) -> PricingEntry:
        """Create or update the rate for a model; effective immediately.

        Raises:
            ValueError: If the model name is empty or the rate is negative
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        rate = as_rate(rate)
        if rate < 0:
            raise ValueError(f"cost_per_token must be >= 0, got {rate}")

        entry = PricingEntry(
            model=model,
            cost_per_token=rate,
            active=active,
            provider=provider,
            updated_at=datetime.now()
        )
        with self._write_lock:
            if self.repository is not None:
                self.repository.upsert(entry)
            self._rebuild({**self._entries, model: entry})
        logger.info("Pricing for %s set to %s per token (active=%s)", model, rate, active)
        return entry

    def entries(self) -> List[PricingEntry]:
        """All known entries in the current snapshot, ordered by model."""
        return [self._entries[model] for model in sorted(self._entries)]


@dataclass(frozen=True)
class CreditPack:
    """A purchasable bundle of credits."""
    name: str
    credits: int
    price_cents: int
    bonus_percent: int = 0


CREDIT_PACKS = (
    CreditPack(name="Starter", credits=1000, price_cents=1000),
    CreditPack(name="Pro", credits=5000, price_cents=4500, bonus_percent=10),
    CreditPack(name="Business", credits=10000, price_cents=8000, bonus_percent=20),
    CreditPack(name="Enterprise", credits=25000, price_cents=18000, bonus_percent=28),
)

# Credits per dollar for amounts that match no pack
BASE_CREDITS_PER_DOLLAR = 100


def credits_for_price(price_cents: int) -> int:
    """Credits granted for a payment of ``price_cents``."""
    for pack in CREDIT_PACKS:
        if pack.price_cents == price_cents:
            return pack.credits
    return (price_cents * BASE_CREDITS_PER_DOLLAR) // 100


def recommended_pack(monthly_usage: int) -> CreditPack:
    """Smallest pack covering the monthly usage plus a 20% buffer."""
    target = Decimal(monthly_usage) * Decimal("1.2")
    for pack in CREDIT_PACKS:
        if pack.credits >= target:
            return pack
    return CREDIT_PACKS[-1]
