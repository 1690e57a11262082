"""
AuditEntry model: immutable record of one lot quantity mutation.

Every successful withdraw or restore writes exactly one entry in the same
transaction as the quantity update. Summing the deltas of a lot and adding
its total_quantity reconstructs remaining_quantity independently of the
live value.
"""

from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import LotOperation
from src.utils.datetime_utils import utc_now


class AuditEntry(BaseModel):
    """
    AuditEntry model for the lot mutation ledger.

    Records are immutable after creation - no updates or deletes.

    Attributes:
        lot_id: FK to the MaterialLot mutated
        operation: withdraw / restore
        delta: Signed quantity change (negative for withdraw)
        quantity_before: remaining_quantity before the mutation
        quantity_after: remaining_quantity after the mutation
        reference_id: Batch uuid / order id the mutation belongs to
        reference_kind: production_batch / sales_order / adjustment
        actor: Who performed it
        reason: Optional free text
        operation_key: Unique per-call key; storage deduplicates retries on it
        rollback_record_id: Set on restores performed as compensation
        timestamp: When the mutation happened
    """

    __tablename__ = "audit_entries"

    updated_at = None

    lot_id = Column(
        Integer,
        ForeignKey("material_lots.id", ondelete="RESTRICT"),
        nullable=False,
    )
    operation = Column(String(20), nullable=False)
    delta = Column(Numeric(12, 3), nullable=False)
    quantity_before = Column(Numeric(12, 3), nullable=False)
    quantity_after = Column(Numeric(12, 3), nullable=False)

    reference_id = Column(String(64), nullable=True)
    reference_kind = Column(String(30), nullable=True)
    actor = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)

    operation_key = Column(String(120), nullable=False, unique=True)
    rollback_record_id = Column(
        Integer,
        ForeignKey("rollback_records.id", ondelete="RESTRICT"),
        nullable=True,
    )

    timestamp = Column(DateTime, nullable=False, default=utc_now)

    lot = relationship("MaterialLot", back_populates="audit_entries")
    rollback_record = relationship("RollbackRecord", back_populates="restores")

    __table_args__ = (
        Index("idx_audit_entry_lot", "lot_id", "timestamp"),
        Index("idx_audit_entry_reference", "reference_id"),
        Index("idx_audit_entry_rollback", "rollback_record_id"),
    )

    @property
    def is_withdrawal(self) -> bool:
        """True for withdraw entries."""
        return self.operation == LotOperation.WITHDRAW.value

    @property
    def signed_delta(self) -> Decimal:
        """delta as a Decimal."""
        return Decimal(str(self.delta))

    def __repr__(self) -> str:
        """String representation of audit entry."""
        return (
            f"AuditEntry(id={self.id}, lot_id={self.lot_id}, "
            f"operation='{self.operation}', delta={self.delta}, "
            f"reference_id='{self.reference_id}')"
        )
