"""
MaterialLot model for lot-level raw material inventory.

Each record is one intake of a material. total_quantity and unit_cost are
snapshots taken at intake and never change; remaining_quantity is only
mutated through the LotStore withdraw/restore primitives.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    ForeignKey,
    Index,
    CheckConstraint,
    Numeric,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import LotStatus


class MaterialLot(BaseModel):
    """
    MaterialLot model for FIFO lot tracking.

    Lots are consumed in intake_date order (oldest first) by default and are
    never deleted, even when exhausted, because batch costing and the audit
    ledger point at them.

    Attributes:
        material_id: Foreign key to Material
        lot_number: Human-readable lot identifier (unique)
        total_quantity: Quantity received at intake (IMMUTABLE)
        remaining_quantity: Quantity still available (MUTABLE, 0..total)
        unit_cost: Cost per unit at intake (IMMUTABLE)
        intake_date: Date of intake (FIFO ordering)
        expiry_date: Optional expiry; expired lots are not offered
        status: active / exhausted, kept in step with remaining_quantity

    Relationships:
        material: Many-to-One with Material
        audit_entries: One-to-Many with AuditEntry
    """

    __tablename__ = "material_lots"

    material_id = Column(
        Integer,
        ForeignKey("materials.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    lot_number = Column(String(50), nullable=False, unique=True)

    total_quantity = Column(Numeric(12, 3), nullable=False)
    remaining_quantity = Column(Numeric(12, 3), nullable=False)
    unit_cost = Column(Numeric(10, 4), nullable=False)

    intake_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)

    status = Column(String(20), nullable=False, default=LotStatus.ACTIVE.value)

    material = relationship("Material", back_populates="lots")
    audit_entries = relationship(
        "AuditEntry",
        back_populates="lot",
        order_by="AuditEntry.id",
    )

    __table_args__ = (
        CheckConstraint("total_quantity > 0", name="ck_lot_total_positive"),
        CheckConstraint("remaining_quantity >= 0", name="ck_lot_remaining_non_negative"),
        CheckConstraint(
            "remaining_quantity <= total_quantity",
            name="ck_lot_remaining_within_total",
        ),
        CheckConstraint("unit_cost >= 0", name="ck_lot_unit_cost_non_negative"),
        Index("idx_material_lot_material_intake", "material_id", "intake_date"),
        Index("idx_material_lot_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation of material lot."""
        return (
            f"MaterialLot(id={self.id}, "
            f"lot_number='{self.lot_number}', "
            f"remaining={self.remaining_quantity}/{self.total_quantity})"
        )

    @property
    def is_exhausted(self) -> bool:
        """True when nothing remains in the lot."""
        return Decimal(str(self.remaining_quantity)) <= 0

    @property
    def quantity_consumed(self) -> Decimal:
        """total_quantity - remaining_quantity"""
        return Decimal(str(self.total_quantity)) - Decimal(str(self.remaining_quantity))

    @property
    def remaining_value(self) -> Decimal:
        """Value of the remaining stock at intake cost."""
        return Decimal(str(self.remaining_quantity)) * Decimal(str(self.unit_cost))

    def is_expired(self, as_of: Optional[date] = None) -> bool:
        """
        Check whether the lot is past its expiry date.

        Args:
            as_of: Reference date (defaults to today)

        Returns:
            True if expiry_date is set and on or before as_of
        """
        if self.expiry_date is None:
            return False
        return self.expiry_date <= (as_of or date.today())

    def to_dict(self, include_relationships: bool = False) -> dict:
        """
        Convert material lot to dictionary.

        Args:
            include_relationships: If True, include material info

        Returns:
            Dictionary representation
        """
        result = super().to_dict(include_relationships=False)
        result["quantity_consumed"] = str(self.quantity_consumed)
        result["remaining_value"] = str(self.remaining_value)

        if include_relationships and self.material:
            result["material"] = {
                "id": self.material.id,
                "name": self.material.name,
                "unit": self.material.unit,
            }

        return result
