"""
Batch Lifecycle Service for production batches that consume material lots.

This module provides:
- Creating a batch together with the consumption of its inputs
- Replacing a batch's inputs (release originals, consume new ones)
- Completing a batch with output, unit cost and yield
- Approving / rejecting batches
- The chronological audit trail of a batch

Lifecycle:
    draft -> in_progress -> completed -> approved
    draft / in_progress / completed -> rejected

The batch uuid is the reference id of every consumption made for it, so
lot audit entries and rollback records can be traced back to the batch.
Inventory changes go exclusively through the ConsumptionCoordinator; this
service only persists batch rows around them.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from src.models import (
    BatchInput,
    BatchStatusChange,
    MaterialLot,
    ProductionBatch,
)
from src.models.enums import (
    BATCH_TRANSITIONS,
    EDITABLE_BATCH_STATUSES,
    BatchStatus,
    ReferenceKind,
)
from src.services.audit_ledger import AuditLedger
from src.services.consumption_coordinator import ConsumptionCoordinator
from src.services.database import SessionFactory, session_scope
from src.services.dto import (
    AppliedWithdrawal,
    BatchSpec,
    ConsumedSet,
    ConsumptionRequest,
    Reference,
    TrailEvent,
)
from src.services.exceptions import (
    BatchNotFound,
    BatchRejectedError,
    CompensationFailure,
    InvalidStatusTransition,
    ValidationError,
)
from src.services.logging_utils import get_service_logger, log_operation
from src.utils.config import Config, get_config
from src.utils.constants import (
    MONEY_PLACES,
    PERCENT_PLACES,
    REASON_PERSISTENCE_FAILED,
    REASON_SUPERSEDED,
)
from src.utils.datetime_utils import as_naive_utc, utc_now
from src.utils.validators import (
    parse_quantity,
    quantize_quantity,
    sanitize_string,
    validate_positive_quantity,
)

logger = get_service_logger(__name__)


class BatchLifecycleManager:
    """
    Manages production batches and the inventory they consume.

    Args:
        coordinator: Coordinator performing (and compensating) consumption
        audit_ledger: Ledger read for audit trails
        session_factory: Optional session factory (default: global factory)
        config: Optional Config (default: global config)
    """

    def __init__(
        self,
        coordinator: ConsumptionCoordinator,
        audit_ledger: AuditLedger,
        session_factory: Optional[SessionFactory] = None,
        *,
        config: Optional[Config] = None,
    ):
        self._coordinator = coordinator
        self._ledger = audit_ledger
        self._session_factory = session_factory
        self._config = config or get_config()

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(
        self,
        batch_spec: Optional[BatchSpec],
        inputs: Sequence[ConsumptionRequest],
        *,
        actor: Optional[str] = None,
    ) -> ProductionBatch:
        """
        Create a production batch and consume its inputs.

        Inventory is consumed first; the batch row only exists once every
        input has been withdrawn. A consumption failure propagates unchanged
        and leaves no batch behind. If persisting the batch fails after
        consumption, the consumption is compensated before re-raising.

        Args:
            batch_spec: Batch header (number generated when omitted)
            inputs: Lots and quantities to consume
            actor: Who is creating the batch

        Returns:
            The persisted ProductionBatch (in_progress) with inputs and
            status changes loaded

        Raises:
            ValidationError: If the batch number is taken or inputs are empty
            ConsumptionFailure: If consumption failed (nothing consumed)
            CompensationFailure: If consumption could not be undone (fatal)
        """
        batch_spec = batch_spec or BatchSpec()
        production_date = batch_spec.production_date or utc_now()

        with session_scope(self._session_factory) as session:
            batch_number = sanitize_string(batch_spec.batch_number)
            if batch_number is None:
                batch_number = self._next_batch_number(session, production_date)
            elif self._batch_number_exists(session, batch_number):
                raise ValidationError([f"Batch number: '{batch_number}' already exists"])

        batch_uuid = str(uuid.uuid4())
        reference = Reference(ReferenceKind.PRODUCTION_BATCH, batch_uuid, actor)

        consumed = self._coordinator.consume(inputs, reference)

        try:
            with session_scope(self._session_factory) as session:
                batch = ProductionBatch(
                    uuid=batch_uuid,
                    batch_number=batch_number,
                    status=BatchStatus.DRAFT.value,
                    production_date=production_date,
                    notes=sanitize_string(batch_spec.notes),
                    created_by=actor,
                    total_input_cost=Decimal("0"),
                )
                batch.status_changes.append(
                    BatchStatusChange(
                        from_status=None,
                        to_status=BatchStatus.DRAFT.value,
                        reason="batch created",
                        changed_by=actor,
                    )
                )
                self._set_inputs(batch, consumed)
                self._transition(batch, BatchStatus.IN_PROGRESS, "inputs consumed", actor)
                session.add(batch)
                session.flush()
                batch_id = batch.id
        except Exception as e:
            log_operation(
                logger,
                operation="create_batch",
                outcome="persistence_failed",
                level=logging.ERROR,
                reference_id=batch_uuid,
                batch_number=batch_number,
                error=str(e),
            )
            self._coordinator.compensate(
                consumed.withdrawals, reference, REASON_PERSISTENCE_FAILED, cause=e
            )
            raise

        log_operation(
            logger,
            operation="create_batch",
            outcome="success",
            batch_id=batch_id,
            batch_number=batch_number,
            reference_id=batch_uuid,
            total_input_cost=str(consumed.total_cost),
        )
        return self.get(batch_id)

    def update(
        self,
        batch_id: int,
        new_inputs: Sequence[ConsumptionRequest],
        *,
        actor: Optional[str] = None,
    ) -> ProductionBatch:
        """
        Replace a batch's inputs.

        The original inputs are released first (compensated with reason
        "superseded by update"), then the new inputs are consumed. If the new
        consumption fails for any reason, the originals are withdrawn again so
        the batch is back in its pre-update state and the failure is
        re-raised. If even that fails, the batch is rejected. A batch whose
        inventory could not be compensated cleanly is rejected as well, so
        its inputs never claim stock the lots no longer reflect.

        Args:
            batch_id: Batch to update (must be draft or in_progress)
            new_inputs: Replacement lots and quantities
            actor: Who is updating the batch

        Returns:
            The updated ProductionBatch

        Raises:
            BatchNotFound: If the batch doesn't exist
            InvalidStatusTransition: If the batch is past in_progress
            ConsumptionFailure / ValidationError: New inputs could not be
                consumed; the batch kept its original inputs
            BatchRejectedError: Neither new nor original inputs could be
                consumed; the batch is now rejected
            CompensationFailure: Inventory could not be compensated (fatal);
                the batch is now rejected
        """
        batch = self.get(batch_id)
        if batch.status_enum not in EDITABLE_BATCH_STATUSES:
            raise InvalidStatusTransition(batch_id, batch.status, BatchStatus.IN_PROGRESS.value)

        reference = Reference(ReferenceKind.PRODUCTION_BATCH, batch.uuid, actor)
        originals = self._withdrawals_of(batch)

        try:
            self._coordinator.compensate(
                originals, reference, REASON_SUPERSEDED, batch_id=batch_id
            )
        except CompensationFailure as failure:
            self._reject_unrecoverable(
                batch_id, "original inputs could not be released", actor, failure
            )
            raise

        try:
            consumed = self._coordinator.consume(new_inputs, reference, batch_id=batch_id)
        except CompensationFailure as failure:
            self._reject_unrecoverable(
                batch_id, "replacement inputs could not be consumed or undone", actor, failure
            )
            raise
        except Exception as failure:
            self._reapply_originals(batch, originals, reference, actor, failure)
            raise

        try:
            with session_scope(self._session_factory) as session:
                stored = self._load(session, batch_id)
                stored.inputs.clear()
                session.flush()
                self._set_inputs(stored, consumed)
        except Exception as e:
            log_operation(
                logger,
                operation="update_batch",
                outcome="persistence_failed",
                level=logging.ERROR,
                batch_id=batch_id,
                error=str(e),
            )
            try:
                self._coordinator.compensate(
                    consumed.withdrawals,
                    reference,
                    REASON_PERSISTENCE_FAILED,
                    batch_id=batch_id,
                    cause=e,
                )
            except CompensationFailure as failure:
                self._reject_unrecoverable(
                    batch_id, "replacement inputs could not be undone", actor, failure
                )
                raise
            self._reapply_originals(batch, originals, reference, actor, e)
            raise

        log_operation(
            logger,
            operation="update_batch",
            outcome="success",
            batch_id=batch_id,
            reference_id=batch.uuid,
            input_count=len(consumed.withdrawals),
            total_input_cost=str(consumed.total_cost),
        )
        return self.get(batch_id)

    def complete(
        self,
        batch_id: int,
        output_quantity,
        *,
        actor: Optional[str] = None,
    ) -> ProductionBatch:
        """
        Record a batch's output and move it to completed.

        cost_per_unit = total_input_cost / output_quantity

        yield_percentage = output_quantity / sum(quantity_used * theoretical_yield) * 100,
        where a material without a theoretical yield uses the configured
        default.

        Raises:
            ValidationError: If output_quantity is not positive
            BatchNotFound: If the batch doesn't exist
            InvalidStatusTransition: If the batch is not in_progress
        """
        is_valid, error = validate_positive_quantity(output_quantity, "Output quantity")
        if not is_valid:
            raise ValidationError([error])
        output = quantize_quantity(parse_quantity(output_quantity))

        with session_scope(self._session_factory) as session:
            batch = self._load(session, batch_id)
            self._transition(batch, BatchStatus.COMPLETED, "output recorded", actor)

            total_cost = Decimal(str(batch.total_input_cost))
            baseline = Decimal("0")
            for batch_input in batch.inputs:
                theoretical = batch_input.lot.material.theoretical_yield
                if theoretical is None:
                    theoretical = self._config.default_theoretical_yield
                baseline += Decimal(str(batch_input.quantity_used)) * Decimal(str(theoretical))

            batch.output_quantity = output
            batch.cost_per_unit = (total_cost / output).quantize(MONEY_PLACES)
            if baseline > 0:
                batch.yield_percentage = (output / baseline * 100).quantize(PERCENT_PLACES)
            else:
                batch.yield_percentage = None

        log_operation(
            logger,
            operation="complete_batch",
            outcome="success",
            batch_id=batch_id,
            output_quantity=str(output),
        )
        return self.get(batch_id)

    def approve(self, batch_id: int, *, actor: Optional[str] = None) -> ProductionBatch:
        """
        Approve a completed batch.

        Raises:
            BatchNotFound: If the batch doesn't exist
            InvalidStatusTransition: If the batch is not completed
        """
        with session_scope(self._session_factory) as session:
            batch = self._load(session, batch_id)
            self._transition(batch, BatchStatus.APPROVED, "approved", actor)

        log_operation(logger, operation="approve_batch", outcome="success", batch_id=batch_id)
        return self.get(batch_id)

    def reject(self, batch_id: int, reason: str, *, actor: Optional[str] = None) -> ProductionBatch:
        """
        Reject a batch and return its inputs to inventory.

        Inputs are restored through compensation (one RollbackRecord with
        the given reason), then deleted; the batch keeps its status history.

        Raises:
            BatchNotFound: If the batch doesn't exist
            InvalidStatusTransition: If the batch is approved or already rejected
            CompensationFailure: If restoring inputs failed (fatal)
        """
        reason = sanitize_string(reason)
        if reason is None:
            raise ValidationError(["Reason: This field is required"])

        batch = self.get(batch_id)
        if BatchStatus.REJECTED not in BATCH_TRANSITIONS[batch.status_enum]:
            raise InvalidStatusTransition(batch_id, batch.status, BatchStatus.REJECTED.value)

        reference = Reference(ReferenceKind.PRODUCTION_BATCH, batch.uuid, actor)
        self._coordinator.compensate(
            self._withdrawals_of(batch), reference, reason, batch_id=batch_id
        )
        self._mark_rejected(batch_id, reason, actor)
        return self.get(batch_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, batch_id: int) -> ProductionBatch:
        """
        Get a batch with its inputs (and their lots) and status changes loaded.

        Raises:
            BatchNotFound: If the batch doesn't exist
        """
        with session_scope(self._session_factory) as session:
            return self._load(session, batch_id)

    def list_batches(self, status: Optional[BatchStatus] = None) -> List[ProductionBatch]:
        """
        List batches, most recent production date first.

        Args:
            status: Optional status filter
        """
        with session_scope(self._session_factory) as session:
            stmt = select(ProductionBatch).options(
                selectinload(ProductionBatch.inputs)
                .selectinload(BatchInput.lot)
                .selectinload(MaterialLot.material),
                selectinload(ProductionBatch.status_changes),
            )
            if status is not None:
                stmt = stmt.where(ProductionBatch.status == BatchStatus(status).value)
            stmt = stmt.order_by(ProductionBatch.production_date.desc(), ProductionBatch.id.desc())
            return list(session.execute(stmt).scalars())

    def audit_trail(self, batch_id: int) -> List[TrailEvent]:
        """
        Chronological history of a batch.

        Merges input creation, status changes, rollback records and the lot
        audit entries written under the batch's reference id.

        Raises:
            BatchNotFound: If the batch doesn't exist
        """
        batch = self.get(batch_id)
        events = []

        for batch_input in batch.inputs:
            events.append(
                TrailEvent(
                    timestamp=batch_input.created_at,
                    kind="input_recorded",
                    description=(
                        f"Input of {batch_input.quantity_used} from lot "
                        f"{batch_input.lot.lot_number}"
                    ),
                    details={
                        "lot_id": batch_input.lot_id,
                        "quantity_used": str(batch_input.quantity_used),
                        "unit_cost": str(batch_input.unit_cost_at_time_of_use),
                        "total_cost": str(batch_input.total_cost),
                    },
                )
            )

        for change in batch.status_changes:
            events.append(
                TrailEvent(
                    timestamp=change.changed_at,
                    kind="status_change",
                    description=f"{change.from_status or 'new'} -> {change.to_status}",
                    details={"reason": change.reason, "changed_by": change.changed_by},
                )
            )

        for record in self._ledger.rollbacks_for(batch.uuid):
            events.append(
                TrailEvent(
                    timestamp=record.performed_at,
                    kind="rollback",
                    description=f"Rollback: {record.reason}",
                    details={
                        "rollback_record_id": record.id,
                        "input_count": record.input_count,
                        "restore_count": len(record.restores),
                    },
                )
            )

        for entry in self._ledger.entries_for(reference_id=batch.uuid):
            events.append(
                TrailEvent(
                    timestamp=entry.timestamp,
                    kind=f"lot_{entry.operation}",
                    description=(
                        f"{entry.operation.capitalize()} {abs(Decimal(str(entry.delta)))} "
                        f"on lot {entry.lot.lot_number}"
                    ),
                    details={
                        "lot_id": entry.lot_id,
                        "delta": str(entry.delta),
                        "quantity_after": str(entry.quantity_after),
                        "rollback_record_id": entry.rollback_record_id,
                    },
                )
            )

        events.sort(key=lambda event: as_naive_utc(event.timestamp))
        return events

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, session, batch_id: int) -> ProductionBatch:
        stmt = (
            select(ProductionBatch)
            .options(
                selectinload(ProductionBatch.inputs)
                .selectinload(BatchInput.lot)
                .selectinload(MaterialLot.material),
                selectinload(ProductionBatch.status_changes),
            )
            .where(ProductionBatch.id == batch_id)
        )
        batch = session.execute(stmt).scalar_one_or_none()
        if batch is None:
            raise BatchNotFound(batch_id)
        return batch

    @staticmethod
    def _transition(
        batch: ProductionBatch,
        to_status: BatchStatus,
        reason: Optional[str],
        actor: Optional[str],
    ) -> None:
        """Move a batch to to_status, recording the change."""
        from_status = BatchStatus(batch.status)
        if to_status not in BATCH_TRANSITIONS[from_status]:
            raise InvalidStatusTransition(batch.id, from_status.value, to_status.value)
        batch.status = to_status.value
        batch.status_changes.append(
            BatchStatusChange(
                from_status=from_status.value,
                to_status=to_status.value,
                reason=reason,
                changed_by=actor,
            )
        )

    @staticmethod
    def _set_inputs(batch: ProductionBatch, consumed: ConsumedSet) -> None:
        """Attach BatchInput rows for a consumption and refresh the batch total."""
        for withdrawal in consumed.withdrawals:
            batch.inputs.append(
                BatchInput(
                    lot_id=withdrawal.lot_id,
                    quantity_used=withdrawal.quantity,
                    unit_cost_at_time_of_use=withdrawal.unit_cost,
                    total_cost=withdrawal.total_cost.quantize(MONEY_PLACES),
                )
            )
        batch.total_input_cost = consumed.total_cost.quantize(MONEY_PLACES)

    @staticmethod
    def _withdrawals_of(batch: ProductionBatch) -> List[AppliedWithdrawal]:
        """The batch's inputs, as withdrawals to release."""
        return [
            AppliedWithdrawal(
                lot_id=batch_input.lot_id,
                lot_number=batch_input.lot.lot_number,
                quantity=Decimal(str(batch_input.quantity_used)),
                unit_cost=Decimal(str(batch_input.unit_cost_at_time_of_use)),
                operation_key=f"batch-input:{batch_input.uuid}",
            )
            for batch_input in batch.inputs
        ]

    def _reapply_originals(
        self,
        batch: ProductionBatch,
        originals: List[AppliedWithdrawal],
        reference: Reference,
        actor: Optional[str],
        failure: Exception,
    ) -> None:
        """
        Withdraw a batch's original inputs again after a failed update.

        This undoes the release of inputs the batch already held, so it is
        not re-validated; only the conditional decrement applies. On success
        the batch rows were never touched, so the batch is back in its
        pre-update state. Otherwise the batch is rejected.
        """
        if not originals:
            return

        requests = [ConsumptionRequest(w.lot_id, w.quantity) for w in originals]
        reason = f"update failed ({failure}) and original inputs could not be re-applied"
        try:
            self._coordinator.consume(requests, reference, batch_id=batch.id, validate=False)
        except CompensationFailure as reapply_error:
            self._reject_unrecoverable(batch.id, reason, actor, reapply_error)
            raise
        except Exception as reapply_error:
            self._reject_unrecoverable(batch.id, reason, actor, reapply_error)
            raise BatchRejectedError(batch.id, reason) from reapply_error

        log_operation(
            logger,
            operation="update_batch",
            outcome="reverted",
            level=logging.WARNING,
            batch_id=batch.id,
            error=str(failure),
        )

    def _reject_unrecoverable(
        self, batch_id: int, reason: str, actor: Optional[str], error: Exception
    ) -> None:
        """Reject a batch whose inputs no longer match its lots."""
        log_operation(
            logger,
            operation="update_batch",
            outcome="rejected",
            level=logging.ERROR,
            batch_id=batch_id,
            reason=reason,
            error=str(error),
        )
        self._mark_rejected(batch_id, reason, actor)

    def _mark_rejected(self, batch_id: int, reason: str, actor: Optional[str]) -> None:
        """Drop a batch's inputs and move it to rejected."""
        with session_scope(self._session_factory) as session:
            batch = self._load(session, batch_id)
            batch.inputs.clear()
            batch.total_input_cost = Decimal("0")
            self._transition(batch, BatchStatus.REJECTED, reason, actor)

        log_operation(
            logger,
            operation="reject_batch",
            outcome="rejected",
            level=logging.WARNING,
            batch_id=batch_id,
            reason=reason,
        )

    def _batch_number_exists(self, session, batch_number: str) -> bool:
        stmt = select(ProductionBatch.id).where(ProductionBatch.batch_number == batch_number)
        return session.execute(stmt).first() is not None

    def _next_batch_number(self, session, production_date: datetime) -> str:
        """Next free '<prefix>-<year>-<NNN>' number."""
        prefix = f"{self._config.batch_number_prefix}-{production_date.year}-"
        stmt = select(ProductionBatch.batch_number).where(
            ProductionBatch.batch_number.like(f"{prefix}%")
        )
        highest = 0
        for (number,) in session.execute(stmt):
            suffix = number[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:03d}"
