"""
Enumerations for lot consumption and production tracking.

This module contains enums used across the models and services:
- LotStatus: Whether a material lot still has stock
- BatchStatus: Production batch lifecycle states
- LotOperation: The two quantity mutations recorded in the audit ledger
- ReferenceKind: What a consumption is performed on behalf of
"""

from enum import Enum


class LotStatus(str, Enum):
    """
    Material lot status.

    Values:
        ACTIVE: remaining_quantity > 0
        EXHAUSTED: remaining_quantity == 0 (lot is kept for audit/costing)
    """

    ACTIVE = "active"
    EXHAUSTED = "exhausted"


class BatchStatus(str, Enum):
    """
    Production batch lifecycle.

    draft -> in_progress -> completed -> approved, and any state before
    approved may move to rejected.
    """

    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"


class LotOperation(str, Enum):
    """Lot quantity mutation recorded by an AuditEntry."""

    WITHDRAW = "withdraw"
    RESTORE = "restore"


class ReferenceKind(str, Enum):
    """
    Kind of entity a consumption is performed for.

    Values:
        PRODUCTION_BATCH: Materials consumed by a production batch
        SALES_ORDER: Lots allocated directly to a sales order
        ADJUSTMENT: Manual/operator correction
    """

    PRODUCTION_BATCH = "production_batch"
    SALES_ORDER = "sales_order"
    ADJUSTMENT = "adjustment"


# Transitions allowed by the batch lifecycle
BATCH_TRANSITIONS = {
    BatchStatus.DRAFT: {BatchStatus.IN_PROGRESS, BatchStatus.REJECTED},
    BatchStatus.IN_PROGRESS: {BatchStatus.COMPLETED, BatchStatus.REJECTED},
    BatchStatus.COMPLETED: {BatchStatus.APPROVED, BatchStatus.REJECTED},
    BatchStatus.APPROVED: set(),
    BatchStatus.REJECTED: set(),
}

# States in which a batch's inputs may still be replaced
EDITABLE_BATCH_STATUSES = {BatchStatus.DRAFT, BatchStatus.IN_PROGRESS}
