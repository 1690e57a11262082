"""Wiring of the consumption engine components.

Each component receives its collaborators through its constructor; this
module builds the SQL-backed set of them in dependency order:

    AuditLedger -> LotStore -> AvailabilityValidator
                -> ConsumptionCoordinator -> BatchLifecycleManager
"""

from dataclasses import dataclass
from typing import Optional

from src.services.audit_ledger import SqlAuditLedger
from src.services.availability_validator import AvailabilityValidator
from src.services.batch_lifecycle_service import BatchLifecycleManager
from src.services.consumption_coordinator import ConsumptionCoordinator
from src.services.database import SessionFactory
from src.services.lot_store import SqlLotStore
from src.utils.config import Config, get_config


@dataclass
class ConsumptionEngine:
    """The wired components."""

    audit_ledger: SqlAuditLedger
    lot_store: SqlLotStore
    validator: AvailabilityValidator
    coordinator: ConsumptionCoordinator
    lifecycle: BatchLifecycleManager


def create_consumption_engine(
    session_factory: Optional[SessionFactory] = None,
    *,
    config: Optional[Config] = None,
) -> ConsumptionEngine:
    """
    Build the SQL-backed consumption engine.

    Args:
        session_factory: Optional session factory (default: global factory,
            resolved on every transaction)
        config: Optional Config (default: global config)

    Returns:
        ConsumptionEngine
    """
    config = config or get_config()

    audit_ledger = SqlAuditLedger(
        session_factory,
        retry_attempts=config.storage_retry_attempts,
        retry_backoff=config.storage_retry_backoff,
    )
    lot_store = SqlLotStore(
        audit_ledger,
        session_factory,
        retry_attempts=config.storage_retry_attempts,
        retry_backoff=config.storage_retry_backoff,
    )
    validator = AvailabilityValidator(lot_store, max_alternatives=config.max_alternative_lots)
    coordinator = ConsumptionCoordinator(
        lot_store,
        validator,
        audit_ledger,
        default_timeout=config.consume_timeout,
    )
    lifecycle = BatchLifecycleManager(coordinator, audit_ledger, session_factory, config=config)

    return ConsumptionEngine(
        audit_ledger=audit_ledger,
        lot_store=lot_store,
        validator=validator,
        coordinator=coordinator,
        lifecycle=lifecycle,
    )
