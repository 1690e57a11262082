"""Service layer exception classes for the Material Lot Tracker.

This module defines all custom exceptions raised by the consumption engine
so callers can tell "nothing happened", "your action was reverted safely"
and "manual review required" apart.

Exception Hierarchy:
    ServiceError
    ├── ValidationError
    ├── LotNotFound
    ├── MaterialNotFound
    ├── BatchNotFound
    ├── InvalidStatusTransition
    ├── InsufficientQuantity
    ├── RestoreOverflowError
    ├── StorageError
    ├── ConsumptionFailure
    │   ├── ConsumptionValidationError
    │   ├── RaceLost
    │   ├── ConsumptionTimeout
    │   └── ConsumptionInterrupted
    ├── CompensationFailure
    └── BatchRejectedError

Every class carries a ``retryable`` flag: True means re-running the same
call may succeed without changing the request.
"""

from decimal import Decimal
from typing import List, Optional, Sequence


class ServiceError(Exception):
    """Base exception for all service layer errors.

    All service-specific exceptions inherit from this class.
    """

    retryable = False


class ValidationError(ServiceError):
    """Raised when input validation fails before anything is mutated.

    Args:
        errors: List of human-readable error strings

    Example:
        >>> raise ValidationError(["Quantity: Must be greater than zero"])
        ValidationError: Validation failed: Quantity: Must be greater than zero
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        error_msg = "; ".join(self.errors)
        super().__init__(f"Validation failed: {error_msg}")


class LotNotFound(ServiceError):
    """Raised when a material lot cannot be found by ID."""

    def __init__(self, lot_id):
        self.lot_id = lot_id
        super().__init__(f"Material lot with ID {lot_id} not found")


class MaterialNotFound(ServiceError):
    """Raised when a material cannot be found by ID."""

    def __init__(self, material_id):
        self.material_id = material_id
        super().__init__(f"Material with ID {material_id} not found")


class BatchNotFound(ServiceError):
    """Raised when a production batch cannot be found by ID."""

    def __init__(self, batch_id):
        self.batch_id = batch_id
        super().__init__(f"Production batch with ID {batch_id} not found")


class InvalidStatusTransition(ServiceError):
    """Raised when a batch operation is not allowed from its current status.

    Example:
        >>> raise InvalidStatusTransition(7, "approved", "rejected")
        InvalidStatusTransition: Production batch 7 cannot move from 'approved' to 'rejected'
    """

    def __init__(self, batch_id, from_status: str, to_status: str):
        self.batch_id = batch_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Production batch {batch_id} cannot move from '{from_status}' to '{to_status}'"
        )


class InsufficientQuantity(ServiceError):
    """Raised when a lot (or a material) holds less than requested.

    Raised by LotStore.withdraw when the conditional decrement matches no
    row, and by material-level FIFO planning when the total is short.

    Args:
        lot_id: Lot that was short (None for a material-level shortfall)
        requested: Quantity requested
        available: Quantity actually available
        alternatives: Other lots (LotSnapshot) able to satisfy the request
        material_id: Material of the shortfall, when known
    """

    def __init__(
        self,
        lot_id,
        requested: Decimal,
        available: Decimal,
        alternatives: Optional[Sequence] = None,
        material_id=None,
    ):
        self.lot_id = lot_id
        self.requested = requested
        self.available = available
        self.alternatives = list(alternatives or [])
        self.material_id = material_id
        subject = f"lot {lot_id}" if lot_id is not None else f"material {material_id}"
        super().__init__(
            f"Insufficient quantity in {subject}: requested {requested}, available {available}"
        )


class RestoreOverflowError(ServiceError):
    """Raised when a restore would push a lot above its total quantity.

    This is never clamped: it means something restored more than was ever
    withdrawn and the ledger needs reconciling.
    """

    def __init__(self, lot_id, quantity: Decimal, remaining: Decimal, total: Decimal):
        self.lot_id = lot_id
        self.quantity = quantity
        self.remaining = remaining
        self.total = total
        super().__init__(
            f"Restoring {quantity} to lot {lot_id} would exceed its total quantity "
            f"({remaining} remaining of {total})"
        )


class StorageError(ServiceError):
    """Raised when the storage layer fails (timeout, connectivity, locking).

    Retryable: primitives are idempotent through their operation key.
    """

    retryable = True

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(f"Storage error: {message}")


# =============================================================================
# Consumption failures
# =============================================================================


class ConsumptionFailure(ServiceError):
    """Base class for a consume() call that left no net inventory change.

    Whenever one of these is raised, every lot involved holds the same
    quantity it held before the call.

    Attributes:
        reference_id: Reference (batch uuid / order id) of the consumption
        rollback_record_id: RollbackRecord written by the compensation, if any
    """

    def __init__(self, reference_id, message: str, rollback_record_id: Optional[int] = None):
        self.reference_id = reference_id
        self.rollback_record_id = rollback_record_id
        super().__init__(message)


class ConsumptionValidationError(ConsumptionFailure):
    """Raised when the availability pre-check rejects a consumption.

    Nothing was withdrawn. ``items`` holds one AvailabilityResult per
    request; ``failures`` only the invalid ones, each with the available
    quantity and proposed alternative lots.
    """

    def __init__(self, reference_id, items: Sequence):
        self.items = list(items)
        self.failures = [item for item in self.items if not item.valid]
        details = "; ".join(item.message for item in self.failures)
        super().__init__(reference_id, f"Inventory validation failed: {details}")

    @property
    def errors(self) -> List[str]:
        """Error messages of the failing items."""
        return [item.message for item in self.failures]


class RaceLost(ConsumptionFailure):
    """Raised when a lot passed the pre-check but lost its conditional decrement.

    A concurrent consumer took the stock between check and withdraw. Steps
    already applied in the same call have been restored. Retryable: the
    caller may re-run consume() once (it will re-validate).
    """

    retryable = True

    def __init__(
        self,
        reference_id,
        lot_id,
        requested: Decimal,
        available: Decimal,
        rollback_record_id: Optional[int] = None,
    ):
        self.lot_id = lot_id
        self.requested = requested
        self.available = available
        super().__init__(
            reference_id,
            f"Lot {lot_id} was consumed concurrently: requested {requested}, "
            f"available {available}",
            rollback_record_id,
        )


class ConsumptionTimeout(ConsumptionFailure):
    """Raised when consume() runs past its deadline; applied steps were restored."""

    retryable = True

    def __init__(self, reference_id, timeout: float, rollback_record_id: Optional[int] = None):
        self.timeout = timeout
        super().__init__(
            reference_id,
            f"Consumption for {reference_id} exceeded its {timeout}s deadline",
            rollback_record_id,
        )


class ConsumptionInterrupted(ConsumptionFailure):
    """Raised when storage failed mid-consumption; applied steps were restored."""

    retryable = True

    def __init__(
        self,
        reference_id,
        original_error: Exception,
        rollback_record_id: Optional[int] = None,
    ):
        self.original_error = original_error
        super().__init__(
            reference_id,
            f"Consumption for {reference_id} interrupted by storage failure: {original_error}",
            rollback_record_id,
        )


class CompensationFailure(ServiceError):
    """Raised when compensation could not leave a clean, recorded state.

    Either a restore failed, so inventory no longer matches the intended
    state, or the RollbackRecord could not be written. Fatal and never
    retried automatically: an operator must reconcile against the audit
    ledger.

    Attributes:
        reference_id: Reference of the consumption being compensated
        reason: Why compensation was running
        restored: Withdrawals successfully restored
        failed: List of (withdrawal, exception) pairs that could not be restored
        rollback_record_id: RollbackRecord holding the snapshot, if written
        cause: The failure that triggered compensation, if any
        record_error: Why the RollbackRecord could not be written, if it
            could not
    """

    def __init__(
        self,
        reference_id,
        reason: str,
        restored: Sequence,
        failed: Sequence,
        rollback_record_id: Optional[int] = None,
        cause: Optional[Exception] = None,
        *,
        record_error: Optional[Exception] = None,
    ):
        self.reference_id = reference_id
        self.reason = reason
        self.restored = list(restored)
        self.failed = list(failed)
        self.rollback_record_id = rollback_record_id
        self.cause = cause
        self.record_error = record_error
        if self.failed:
            lots = ", ".join(str(withdrawal.lot_id) for withdrawal, _ in self.failed)
            message = f"lots needing manual reconciliation: {lots}"
        else:
            message = "all steps restored"
        if record_error is not None:
            message += f"; rollback record not written: {record_error}"
        super().__init__(f"Compensation for {reference_id} failed ({reason}); {message}")


class BatchRejectedError(ServiceError):
    """Raised when a batch update failed and its original inputs could not be re-applied.

    The batch has been moved to 'rejected' and holds no inputs.
    """

    def __init__(self, batch_id, reason: str):
        self.batch_id = batch_id
        self.reason = reason
        super().__init__(f"Production batch {batch_id} was rejected: {reason}")
