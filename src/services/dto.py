"""Data Transfer Objects for the consumption engine.

Plain dataclasses passed between the LotStore, validator, coordinator and
lifecycle manager. None of them hold a database session, so they are safe
to return across transaction boundaries and to share between threads.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from src.models.enums import LotOperation, LotStatus, ReferenceKind


@dataclass(frozen=True)
class Reference:
    """What a consumption is performed on behalf of.

    Attributes:
        kind: production_batch / sales_order / adjustment
        id: Reference id (batch uuid, order number, ...)
        actor: Who is performing the operation
    """

    kind: ReferenceKind
    id: str
    actor: Optional[str] = None

    @property
    def kind_value(self) -> str:
        """kind as the string stored in the ledger."""
        return ReferenceKind(self.kind).value


@dataclass(frozen=True)
class LotSnapshot:
    """Read-only view of a material lot at one point in time."""

    id: int
    material_id: int
    lot_number: str
    total_quantity: Decimal
    remaining_quantity: Decimal
    unit_cost: Decimal
    intake_date: date
    expiry_date: Optional[date] = None
    status: str = LotStatus.ACTIVE.value

    @classmethod
    def from_model(cls, lot) -> "LotSnapshot":
        """Build a snapshot from a MaterialLot instance."""
        return cls(
            id=lot.id,
            material_id=lot.material_id,
            lot_number=lot.lot_number,
            total_quantity=Decimal(str(lot.total_quantity)),
            remaining_quantity=Decimal(str(lot.remaining_quantity)),
            unit_cost=Decimal(str(lot.unit_cost)),
            intake_date=lot.intake_date,
            expiry_date=lot.expiry_date,
            status=lot.status,
        )

    @property
    def is_exhausted(self) -> bool:
        return self.remaining_quantity <= 0

    def is_expired(self, as_of: Optional[date] = None) -> bool:
        """True if the lot has an expiry date on or before as_of (default today)."""
        if self.expiry_date is None:
            return False
        return self.expiry_date <= (as_of or date.today())


@dataclass(frozen=True)
class LotMutation:
    """Result of one withdraw/restore primitive.

    Attributes:
        lot_id: Lot mutated
        operation: withdraw / restore
        quantity: Positive quantity moved
        quantity_before: remaining_quantity before the mutation
        quantity_after: remaining_quantity after the mutation
        unit_cost: Lot unit cost (captured at mutation time)
        lot_number: Lot number, for snapshots and messages
        operation_key: Idempotency key the mutation was recorded under
        audit_entry_id: AuditEntry written for the mutation
        replayed: True when the key was already recorded and nothing was applied
    """

    lot_id: int
    operation: LotOperation
    quantity: Decimal
    quantity_before: Decimal
    quantity_after: Decimal
    unit_cost: Decimal
    lot_number: str
    operation_key: str
    audit_entry_id: Optional[int] = None
    replayed: bool = False


@dataclass(frozen=True)
class ConsumptionRequest:
    """Request to withdraw ``quantity`` from lot ``lot_id``."""

    lot_id: int
    quantity: Decimal


@dataclass
class AvailabilityResult:
    """Outcome of checking one consumption request.

    Attributes:
        lot_id: Lot checked
        requested: Quantity requested (cumulative when a lot repeats)
        valid: True if the lot can currently satisfy the request
        available: Quantity currently remaining (0 for unknown lots)
        message: Human-readable explanation
        alternatives: Other lots of the same material able to satisfy it
    """

    lot_id: int
    requested: Decimal
    valid: bool
    available: Decimal
    message: str
    alternatives: List[LotSnapshot] = field(default_factory=list)


@dataclass
class AvailabilityReport:
    """Outcome of checking a whole consumption."""

    valid: bool
    items: List[AvailabilityResult]

    @property
    def failures(self) -> List[AvailabilityResult]:
        return [item for item in self.items if not item.valid]


@dataclass(frozen=True)
class AppliedWithdrawal:
    """One withdrawal that was applied and may need compensating."""

    lot_id: int
    lot_number: str
    quantity: Decimal
    unit_cost: Decimal
    operation_key: str
    audit_entry_id: Optional[int] = None

    @property
    def total_cost(self) -> Decimal:
        return self.quantity * self.unit_cost

    @classmethod
    def from_mutation(cls, mutation: LotMutation) -> "AppliedWithdrawal":
        return cls(
            lot_id=mutation.lot_id,
            lot_number=mutation.lot_number,
            quantity=mutation.quantity,
            unit_cost=mutation.unit_cost,
            operation_key=mutation.operation_key,
            audit_entry_id=mutation.audit_entry_id,
        )

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe snapshot stored in RollbackRecord.original_inputs."""
        return {
            "lot_id": self.lot_id,
            "lot_number": self.lot_number,
            "quantity": str(self.quantity),
            "unit_cost": str(self.unit_cost),
            "total_cost": str(self.total_cost),
            "operation_key": self.operation_key,
        }


@dataclass
class ConsumedSet:
    """Withdrawals applied by a successful consume() call, in input order."""

    reference: Reference
    withdrawals: List[AppliedWithdrawal]

    @property
    def total_cost(self) -> Decimal:
        return sum((w.total_cost for w in self.withdrawals), Decimal("0"))

    @property
    def lot_ids(self) -> List[int]:
        return [w.lot_id for w in self.withdrawals]


@dataclass
class ReconciliationResult:
    """Lot quantity rebuilt from the audit ledger.

    Attributes:
        lot_id: Lot reconciled
        lot_number: Lot number
        total_quantity: Quantity at intake
        recorded_remaining: Live remaining_quantity
        expected_remaining: total_quantity + sum of audit deltas
        entry_count: Number of audit entries replayed
        issues: Problems found (empty when consistent)
    """

    lot_id: int
    lot_number: str
    total_quantity: Decimal
    recorded_remaining: Decimal
    expected_remaining: Decimal
    entry_count: int
    issues: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.issues


@dataclass(frozen=True)
class TrailEvent:
    """One event of a batch audit trail."""

    timestamp: datetime
    kind: str
    description: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchSpec:
    """Header fields for a new production batch.

    Attributes:
        batch_number: Unique batch number (generated when None)
        production_date: When production takes place (now when None)
        notes: Optional notes
    """

    batch_number: Optional[str] = None
    production_date: Optional[datetime] = None
    notes: Optional[str] = None
