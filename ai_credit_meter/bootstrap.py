"""
Component wiring.

Builds the metering components from a MeterConfig and passes each one
its dependencies explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from .config.loader import LedgerBackend, MeterConfig, default_config
from .core.estimator import CostEstimator
from .core.ledger import InMemoryLedger, Ledger, SqliteLedger
from .core.payments import PaymentReconciler
from .core.pricing import PricingTable
from .core.settlement import SettlementCoordinator
from .sdk.upstream import UpstreamGateway
from .storage.repository import PricingRepository


@dataclass
class MeterServices:
    """The wired components of one metering process."""
    config: MeterConfig
    pricing: PricingTable
    estimator: CostEstimator
    ledger: Ledger
    gateway: UpstreamGateway
    coordinator: SettlementCoordinator
    reconciler: PaymentReconciler


def create_ledger(config: MeterConfig) -> Ledger:
    """Select the ledger implementation named by the configuration."""
    if config.ledger.backend == LedgerBackend.MEMORY:
        return InMemoryLedger()
    return SqliteLedger(config.ledger.db_path)


def build_services(
    config: Optional[MeterConfig] = None,
    gateway: Optional[UpstreamGateway] = None
) -> MeterServices:
    """Wire every component for ``config``.

    Args:
        config: Configuration (defaults to default_config())
        gateway: Upstream gateway override, mainly for tests

    Returns:
        MeterServices holding the shared component instances
    """
    config = config or default_config()
    ledger = create_ledger(config)

    repository = None
    if config.ledger.backend == LedgerBackend.SQLITE:
        repository = PricingRepository(config.ledger.db_path)
    pricing = PricingTable(
        default_cost_per_token=config.pricing.default_cost_per_token,
        repository=repository,
        initial_rates=config.pricing.models
    )

    estimator = CostEstimator(pricing)
    gateway = gateway or UpstreamGateway(
        base_url=config.upstream.base_url,
        timeout=config.upstream.timeout_seconds
    )
    coordinator = SettlementCoordinator(
        estimator=estimator,
        pricing=pricing,
        ledger=ledger,
        gateway=gateway,
        upstream_timeout=config.upstream.timeout_seconds,
        stream_buffer_size=config.upstream.stream_buffer_size,
        stream_max_seconds=config.upstream.stream_max_seconds
    )
    return MeterServices(
        config=config,
        pricing=pricing,
        estimator=estimator,
        ledger=ledger,
        gateway=gateway,
        coordinator=coordinator,
        reconciler=PaymentReconciler(ledger)
    )
