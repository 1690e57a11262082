"""
Database models package.

This package contains all SQLAlchemy ORM models for the application.
"""

from .base import Base, BaseModel
from .enums import (
    LotStatus,
    BatchStatus,
    LotOperation,
    ReferenceKind,
    BATCH_TRANSITIONS,
    EDITABLE_BATCH_STATUSES,
)
from .material import Material
from .material_lot import MaterialLot
from .production_batch import ProductionBatch
from .batch_input import BatchInput
from .batch_status_change import BatchStatusChange
from .rollback_record import RollbackRecord
from .audit_entry import AuditEntry

__all__ = [
    "Base",
    "BaseModel",
    # Enums
    "LotStatus",
    "BatchStatus",
    "LotOperation",
    "ReferenceKind",
    "BATCH_TRANSITIONS",
    "EDITABLE_BATCH_STATUSES",
    # Inventory
    "Material",
    "MaterialLot",
    # Production
    "ProductionBatch",
    "BatchInput",
    "BatchStatusChange",
    # Ledger
    "RollbackRecord",
    "AuditEntry",
]
