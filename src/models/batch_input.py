"""
BatchInput model: one consumed lot of a production batch.

The unit cost is captured when the lot is withdrawn and never changes
afterwards, even if the lot's cost were corrected later.
"""

from sqlalchemy import (
    Column,
    Integer,
    ForeignKey,
    Index,
    CheckConstraint,
    Numeric,
)
from sqlalchemy.orm import relationship

from .base import BaseModel


class BatchInput(BaseModel):
    """
    BatchInput model linking a production batch to a consumed lot.

    Immutable after creation - no updated_at field. Replacing a batch's
    inputs deletes and recreates rows; the rows being replaced survive as a
    snapshot inside the RollbackRecord of that replacement.

    Attributes:
        batch_id: Foreign key to ProductionBatch
        lot_id: Foreign key to MaterialLot
        quantity_used: Quantity withdrawn from the lot
        unit_cost_at_time_of_use: Lot unit cost captured at withdrawal
        total_cost: quantity_used * unit_cost_at_time_of_use
    """

    __tablename__ = "batch_inputs"

    updated_at = None

    batch_id = Column(
        Integer,
        ForeignKey("production_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lot_id = Column(
        Integer,
        ForeignKey("material_lots.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    quantity_used = Column(Numeric(12, 3), nullable=False)
    unit_cost_at_time_of_use = Column(Numeric(10, 4), nullable=False)
    total_cost = Column(Numeric(12, 4), nullable=False)

    batch = relationship("ProductionBatch", back_populates="inputs")
    lot = relationship("MaterialLot")

    __table_args__ = (
        Index("idx_batch_input_batch_lot", "batch_id", "lot_id"),
        CheckConstraint("quantity_used > 0", name="ck_batch_input_quantity_positive"),
        CheckConstraint("total_cost >= 0", name="ck_batch_input_cost_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation of batch input."""
        return (
            f"BatchInput(id={self.id}, batch_id={self.batch_id}, "
            f"lot_id={self.lot_id}, quantity={self.quantity_used})"
        )
