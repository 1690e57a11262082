"""Services package - Inventory consumption engine for the Material Lot Tracker.

Architecture:
- Components: Classes receiving their collaborators through the constructor
- Transactions: Managed via session_scope() context manager, one short
  transaction per storage primitive
- Exceptions: Consistent error handling via ServiceError hierarchy
- Validation: Availability pre-checks before any mutation

Service Modules:
- lot_store: Race-safe conditional withdraw/restore of lot quantities
- availability_validator: Read-only availability checks and alternatives
- consumption_coordinator: Multi-lot consumption with saga compensation
- batch_lifecycle_service: Production batch lifecycle
- audit_ledger: Append-only audit entries, rollback records, reconciliation

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management and database utilities
- storage_retry: Retry policy for storage primitives
- engine: Wiring of the SQL-backed components
"""

from . import database
from .audit_ledger import AuditLedger, SqlAuditLedger
from .availability_validator import AvailabilityValidator
from .batch_lifecycle_service import BatchLifecycleManager
from .consumption_coordinator import ConsumptionCoordinator
from .dto import (
    AppliedWithdrawal,
    AvailabilityReport,
    AvailabilityResult,
    BatchSpec,
    ConsumedSet,
    ConsumptionRequest,
    LotMutation,
    LotSnapshot,
    ReconciliationResult,
    Reference,
    TrailEvent,
)
from .engine import ConsumptionEngine, create_consumption_engine
from .exceptions import (
    ServiceError,
    ValidationError,
    LotNotFound,
    MaterialNotFound,
    BatchNotFound,
    InvalidStatusTransition,
    InsufficientQuantity,
    RestoreOverflowError,
    StorageError,
    ConsumptionFailure,
    ConsumptionValidationError,
    RaceLost,
    ConsumptionTimeout,
    ConsumptionInterrupted,
    CompensationFailure,
    BatchRejectedError,
)
from .lot_store import LotStore, SqlLotStore

__all__ = [
    "database",
    # Components
    "LotStore",
    "SqlLotStore",
    "AvailabilityValidator",
    "ConsumptionCoordinator",
    "BatchLifecycleManager",
    "AuditLedger",
    "SqlAuditLedger",
    "ConsumptionEngine",
    "create_consumption_engine",
    # DTOs
    "AppliedWithdrawal",
    "AvailabilityReport",
    "AvailabilityResult",
    "BatchSpec",
    "ConsumedSet",
    "ConsumptionRequest",
    "LotMutation",
    "LotSnapshot",
    "ReconciliationResult",
    "Reference",
    "TrailEvent",
    # Exceptions
    "ServiceError",
    "ValidationError",
    "LotNotFound",
    "MaterialNotFound",
    "BatchNotFound",
    "InvalidStatusTransition",
    "InsufficientQuantity",
    "RestoreOverflowError",
    "StorageError",
    "ConsumptionFailure",
    "ConsumptionValidationError",
    "RaceLost",
    "ConsumptionTimeout",
    "ConsumptionInterrupted",
    "CompensationFailure",
    "BatchRejectedError",
]
