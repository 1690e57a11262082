"""
Material model for raw materials held in lots.

A Material is the "what" (e.g. cocoa butter); each physical intake of it is
a MaterialLot with its own quantity and unit cost.
"""

from sqlalchemy import Column, String, Text, Numeric, CheckConstraint
from sqlalchemy.orm import relationship

from .base import BaseModel


class Material(BaseModel):
    """
    Raw material catalog entry.

    Attributes:
        name: Unique material name
        unit: Unit all lot quantities of this material are expressed in
        theoretical_yield: Expected output units per input unit. Baseline
            for a batch's yield_percentage; None falls back to the configured
            default.
        notes: Optional notes

    Relationships:
        lots: One-to-Many with MaterialLot
    """

    __tablename__ = "materials"

    name = Column(String(200), nullable=False, unique=True, index=True)
    unit = Column(String(20), nullable=False, default="kg")
    theoretical_yield = Column(Numeric(10, 4), nullable=True)
    notes = Column(Text, nullable=True)

    lots = relationship(
        "MaterialLot",
        back_populates="material",
        order_by="MaterialLot.intake_date",
    )

    __table_args__ = (
        CheckConstraint(
            "theoretical_yield IS NULL OR theoretical_yield > 0",
            name="ck_material_theoretical_yield_positive",
        ),
    )
