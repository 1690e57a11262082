"""
BatchStatusChange model: append-only log of batch status transitions.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from .base import BaseModel
from src.utils.datetime_utils import utc_now


class BatchStatusChange(BaseModel):
    """
    One status transition of a production batch.

    Attributes:
        batch_id: Foreign key to ProductionBatch
        from_status: Previous status (None for the initial state)
        to_status: New status
        reason: Why the transition happened
        changed_by: Actor responsible
        changed_at: When it happened
    """

    __tablename__ = "batch_status_changes"

    updated_at = None

    batch_id = Column(
        Integer,
        ForeignKey("production_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(100), nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utc_now)

    batch = relationship("ProductionBatch", back_populates="status_changes")

    __table_args__ = (Index("idx_batch_status_change_batch", "batch_id", "changed_at"),)
