"""
ProductionBatch model for tracking production batches.

A production batch consumes one or more material lots (recorded as
BatchInput rows) and later records its output. The batch uuid doubles as
the reference id stamped on every audit entry its consumption produces.
"""

from decimal import Decimal

from sqlalchemy import (
    Column,
    String,
    Text,
    DateTime,
    Index,
    Numeric,
    CheckConstraint,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import BatchStatus
from src.utils.datetime_utils import utc_now


class ProductionBatch(BaseModel):
    """
    ProductionBatch model for production runs that consume material lots.

    Attributes:
        batch_number: Human-readable unique identifier (e.g. PB-2025-004)
        status: draft / in_progress / completed / approved / rejected
        production_date: When production took place
        total_input_cost: Sum of BatchInput.total_cost (0 once rejected)
        output_quantity: Output recorded on completion
        cost_per_unit: total_input_cost / output_quantity
        yield_percentage: Output against the materials' theoretical yield
        notes: Optional notes
        created_by: Actor who created the batch

    Relationships:
        inputs: One-to-Many with BatchInput
        status_changes: One-to-Many with BatchStatusChange
    """

    __tablename__ = "production_batches"

    batch_number = Column(String(50), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=BatchStatus.DRAFT.value)
    production_date = Column(DateTime, nullable=False, default=utc_now)

    total_input_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0.0000"))
    output_quantity = Column(Numeric(12, 3), nullable=True)
    cost_per_unit = Column(Numeric(12, 4), nullable=True)
    yield_percentage = Column(Numeric(7, 2), nullable=True)

    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)

    inputs = relationship(
        "BatchInput",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BatchInput.id",
    )
    status_changes = relationship(
        "BatchStatusChange",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BatchStatusChange.id",
    )

    __table_args__ = (
        Index("idx_production_batch_status", "status"),
        Index("idx_production_batch_date", "production_date"),
        CheckConstraint("total_input_cost >= 0", name="ck_batch_total_cost_non_negative"),
        CheckConstraint(
            "output_quantity IS NULL OR output_quantity > 0",
            name="ck_batch_output_positive",
        ),
    )

    @property
    def status_enum(self) -> BatchStatus:
        """Status as a BatchStatus member."""
        return BatchStatus(self.status)

    @property
    def inputs_total_cost(self) -> Decimal:
        """Sum of the batch's input costs."""
        return sum(
            (Decimal(str(batch_input.total_cost)) for batch_input in self.inputs),
            Decimal("0"),
        )

    def to_dict(self, include_relationships: bool = False) -> dict:
        """
        Convert production batch to dictionary.

        Args:
            include_relationships: If True, include inputs and status changes

        Returns:
            Dictionary representation
        """
        result = super().to_dict(include_relationships=False)
        if include_relationships:
            result["inputs"] = [batch_input.to_dict() for batch_input in self.inputs]
            result["status_changes"] = [change.to_dict() for change in self.status_changes]
        return result
