"""Multi-lot consumption as one logical unit.

A consumption touches several lots, and each lot is decremented in its own
storage transaction. Atomicity across lots is provided by a saga: every
applied withdrawal is pushed on a compensation stack, and if a later step
fails the stack is unwound in exact reverse order before the failure is
reported.

Flow of consume():
1. Validate every request up front (nothing mutated on failure).
2. Withdraw in input order through the LotStore conditional decrement.
3. On failure: write a RollbackRecord, restore applied steps in reverse,
   raise a ConsumptionFailure subclass describing what went wrong.

If a restore itself fails the remaining restores are still attempted and a
fatal CompensationFailure is raised for manual reconciliation.
"""

import logging
import time
import uuid
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

from src.services.audit_ledger import AuditLedger
from src.services.availability_validator import AvailabilityValidator
from src.services.dto import AppliedWithdrawal, ConsumedSet, ConsumptionRequest, Reference
from src.services.exceptions import (
    CompensationFailure,
    ConsumptionInterrupted,
    ConsumptionTimeout,
    ConsumptionValidationError,
    InsufficientQuantity,
    RaceLost,
    StorageError,
    ValidationError,
)
from src.services.lot_store import LotStore
from src.services.logging_utils import get_service_logger, log_operation
from src.utils.config import get_config
from src.utils.constants import (
    REASON_DEADLINE,
    REASON_RACE_LOST,
    REASON_STORAGE_FAILURE,
    REASON_UNEXPECTED,
)

logger = get_service_logger(__name__)


class ConsumptionCoordinator:
    """
    Consumes quantities from one or more lots exactly once, or not at all.

    Args:
        lot_store: Store performing the conditional withdraw/restore
        validator: Availability pre-check
        audit_ledger: Ledger receiving RollbackRecords
        default_timeout: Deadline in seconds applied when consume() gets
            none (default: config.consume_timeout; None = unbounded)
        clock: Monotonic clock used for deadlines
    """

    def __init__(
        self,
        lot_store: LotStore,
        validator: AvailabilityValidator,
        audit_ledger: AuditLedger,
        *,
        default_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lot_store = lot_store
        self._validator = validator
        self._ledger = audit_ledger
        if default_timeout is None:
            default_timeout = get_config().consume_timeout
        self._default_timeout = default_timeout
        self._clock = clock

    def consume(
        self,
        requests: Sequence[ConsumptionRequest],
        reference: Reference,
        *,
        timeout: Optional[float] = None,
        batch_id: Optional[int] = None,
        validate: bool = True,
    ) -> ConsumedSet:
        """
        Withdraw every request, or none of them.

        Args:
            requests: Consumption requests, withdrawn in this order
            reference: What the consumption is for (batch uuid, order id)
            timeout: Deadline in seconds for the whole call
            batch_id: Persisted batch the consumption belongs to, recorded on
                any RollbackRecord
            validate: Run the availability pre-check. Re-applying withdrawals
                that were already committed once skips it (an input lot may
                have expired since); the conditional decrement still guards
                every step

        Returns:
            ConsumedSet with captured unit costs, in input order

        Raises:
            ValidationError: If no requests were given
            ConsumptionValidationError: Pre-check failed, nothing was withdrawn
            RaceLost: A lot was taken concurrently; applied steps were restored
            ConsumptionTimeout: Deadline passed; applied steps were restored
            ConsumptionInterrupted: Storage failed; applied steps were restored
            CompensationFailure: Restoring applied steps failed (fatal)
        """
        requests = list(requests)
        if not requests:
            raise ValidationError(["At least one consumption request is required"])

        if validate:
            report = self._validator.check_all(requests)
            if not report.valid:
                log_operation(
                    logger,
                    operation="consume",
                    outcome="validation_failed",
                    level=logging.WARNING,
                    reference_id=reference.id,
                    failures=[item.message for item in report.failures],
                )
                raise ConsumptionValidationError(reference.id, report.items)

        if timeout is None:
            timeout = self._default_timeout
        deadline = self._clock() + timeout if timeout is not None else None

        saga_id = str(uuid.uuid4())
        applied: List[AppliedWithdrawal] = []

        for index, request in enumerate(requests):
            if deadline is not None and self._clock() >= deadline:
                log_operation(
                    logger,
                    operation="consume",
                    outcome="timeout",
                    level=logging.WARNING,
                    reference_id=reference.id,
                    applied_steps=len(applied),
                    timeout=timeout,
                )
                record_id = self.compensate(applied, reference, REASON_DEADLINE, batch_id=batch_id)
                raise ConsumptionTimeout(reference.id, timeout, record_id)

            key = f"{reference.id}:{saga_id}:{index}:withdraw"
            try:
                mutation = self._lot_store.withdraw(
                    request.lot_id,
                    request.quantity,
                    reference=reference,
                    operation_key=key,
                )
            except InsufficientQuantity as e:
                log_operation(
                    logger,
                    operation="consume",
                    outcome="race_lost",
                    level=logging.WARNING,
                    reference_id=reference.id,
                    lot_id=e.lot_id,
                    requested=str(e.requested),
                    available=str(e.available),
                    applied_steps=len(applied),
                )
                record_id = self.compensate(
                    applied, reference, REASON_RACE_LOST, batch_id=batch_id, cause=e
                )
                raise RaceLost(reference.id, e.lot_id, e.requested, e.available, record_id) from e
            except StorageError as e:
                log_operation(
                    logger,
                    operation="consume",
                    outcome="storage_failure",
                    level=logging.ERROR,
                    reference_id=reference.id,
                    lot_id=request.lot_id,
                    error=str(e),
                )
                self._resolve_ambiguous_step(applied, request, key, reference, batch_id, e)
                record_id = self.compensate(
                    applied, reference, REASON_STORAGE_FAILURE, batch_id=batch_id, cause=e
                )
                raise ConsumptionInterrupted(reference.id, e, record_id) from e
            except Exception as e:
                log_operation(
                    logger,
                    operation="consume",
                    outcome="unexpected_error",
                    level=logging.ERROR,
                    reference_id=reference.id,
                    lot_id=request.lot_id,
                    error=str(e),
                )
                self.compensate(applied, reference, REASON_UNEXPECTED, batch_id=batch_id, cause=e)
                raise

            applied.append(AppliedWithdrawal.from_mutation(mutation))

        consumed = ConsumedSet(reference=reference, withdrawals=applied)
        log_operation(
            logger,
            operation="consume",
            outcome="success",
            reference_id=reference.id,
            reference_kind=reference.kind_value,
            lot_count=len(applied),
            total_cost=str(consumed.total_cost),
        )
        return consumed

    def compensate(
        self,
        withdrawals: Sequence[AppliedWithdrawal],
        reference: Reference,
        reason: str,
        *,
        batch_id: Optional[int] = None,
        cause: Optional[Exception] = None,
    ) -> Optional[int]:
        """
        Reverse applied withdrawals, newest first.

        A RollbackRecord snapshotting the withdrawals is written before the
        first restore; every restore links back to it.

        Args:
            withdrawals: Applied withdrawals in the order they were applied
            reference: Reference the withdrawals were made for
            reason: Why they are being reversed
            batch_id: Persisted batch, when there is one
            cause: Failure that triggered the compensation, if any

        Returns:
            Id of the RollbackRecord (None if there was nothing to reverse)

        Raises:
            CompensationFailure: If any restore failed (all the others were
                still attempted) or the RollbackRecord could not be written
                (every restore was still attempted)
        """
        withdrawals = list(withdrawals)
        if not withdrawals:
            return None
        saga_id = str(uuid.uuid4())

        record_error: Optional[Exception] = None
        try:
            record_id = self._ledger.record_rollback(
                reference, reason, withdrawals, batch_id=batch_id, record_key=saga_id
            )
        except Exception as e:
            # Restores still run; the missing record is reported below
            record_id = None
            record_error = e
            log_operation(
                logger,
                operation="compensate",
                outcome="rollback_record_failed",
                level=logging.CRITICAL,
                reference_id=reference.id,
                reason=reason,
                error=str(e),
            )

        restored: List[AppliedWithdrawal] = []
        failed = []
        for index in range(len(withdrawals) - 1, -1, -1):
            withdrawal = withdrawals[index]
            try:
                self._lot_store.restore(
                    withdrawal.lot_id,
                    withdrawal.quantity,
                    reference=reference,
                    operation_key=f"{saga_id}:{index}:restore",
                    reason=reason,
                    rollback_record_id=record_id,
                )
            except Exception as e:
                failed.append((withdrawal, e))
                log_operation(
                    logger,
                    operation="compensate",
                    outcome="restore_failed",
                    level=logging.CRITICAL,
                    reference_id=reference.id,
                    rollback_record_id=record_id,
                    lot_id=withdrawal.lot_id,
                    quantity=str(withdrawal.quantity),
                    error=str(e),
                )
                continue
            restored.append(withdrawal)

        if failed or record_error is not None:
            raise CompensationFailure(
                reference.id,
                reason,
                restored,
                failed,
                record_id,
                cause,
                record_error=record_error,
            )

        log_operation(
            logger,
            operation="compensate",
            outcome="restored",
            level=logging.WARNING,
            reference_id=reference.id,
            rollback_record_id=record_id,
            reason=reason,
            restored_steps=len(restored),
        )
        return record_id

    def _resolve_ambiguous_step(
        self,
        applied: List[AppliedWithdrawal],
        request: ConsumptionRequest,
        key: str,
        reference: Reference,
        batch_id: Optional[int],
        error: StorageError,
    ) -> None:
        """
        Find out whether a withdrawal that failed with a storage error applied.

        If it did, it joins the compensation stack. If even the lookup fails
        the step's outcome is unknown: the known steps are compensated and
        the unknown one is reported as needing manual reconciliation.
        """
        try:
            resolved = self._lot_store.find_mutation(key)
        except StorageError as lookup_error:
            record_id = self.compensate(
                applied, reference, REASON_STORAGE_FAILURE, batch_id=batch_id, cause=error
            )
            unknown = AppliedWithdrawal(
                lot_id=request.lot_id,
                lot_number="unknown",
                quantity=Decimal(str(request.quantity)),
                unit_cost=Decimal("0"),
                operation_key=key,
            )
            raise CompensationFailure(
                reference.id,
                REASON_STORAGE_FAILURE,
                applied,
                [(unknown, lookup_error)],
                record_id,
                error,
            ) from error

        if resolved is not None:
            applied.append(AppliedWithdrawal.from_mutation(resolved))
