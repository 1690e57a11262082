"""
RollbackRecord model: append-only evidence of a compensation.

A record is written before the compensating restores run, so a crash in
the middle of a rollback still leaves the intent and the snapshot of what
was being reversed. Restores performed for it point back through
AuditEntry.rollback_record_id.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Index,
    JSON,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from src.utils.datetime_utils import utc_now


class RollbackRecord(BaseModel):
    """
    RollbackRecord model.

    Attributes:
        reference_id: Batch uuid / order id whose consumption was reversed
        reference_kind: production_batch / sales_order / adjustment
        batch_id: FK to ProductionBatch when the reference is a persisted batch
        reason: Why the compensation happened
        original_inputs: JSON list snapshot of the withdrawals being reversed
            (lot_id, lot_number, quantity, unit_cost, total_cost)
        performed_at: When the compensation started
        performed_by: Actor on whose behalf it ran

    Relationships:
        restores: AuditEntry rows written by this compensation
    """

    __tablename__ = "rollback_records"

    updated_at = None

    reference_id = Column(String(64), nullable=False)
    reference_kind = Column(String(30), nullable=False)
    batch_id = Column(
        Integer,
        ForeignKey("production_batches.id", ondelete="SET NULL"),
        nullable=True,
    )
    reason = Column(Text, nullable=False)
    original_inputs = Column(JSON, nullable=False, default=list)
    performed_at = Column(DateTime, nullable=False, default=utc_now)
    performed_by = Column(String(100), nullable=True)

    restores = relationship(
        "AuditEntry",
        back_populates="rollback_record",
        order_by="AuditEntry.id",
    )

    __table_args__ = (
        Index("idx_rollback_reference", "reference_id"),
        Index("idx_rollback_batch", "batch_id"),
    )

    @property
    def input_count(self) -> int:
        """Number of withdrawals the record set out to reverse."""
        return len(self.original_inputs or [])

    def __repr__(self) -> str:
        """String representation of rollback record."""
        return (
            f"RollbackRecord(id={self.id}, reference_id='{self.reference_id}', "
            f"reason='{self.reason}', inputs={self.input_count})"
        )
