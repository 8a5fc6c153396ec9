"""
escrow_kernel.services.dispute_resolution -- Opening, reviewing and resolving disputes.

Responsibility:
    Participants open a dispute on an order; an admin reviews it and
    resolves it with one of four resolution types.  A resolution may refund
    the customer and, for a full refund, cancels the order.

Architecture position:
    Kernel > Services.  Short-circuits the order state machine from the admin
    side through OrderPaymentLifecycle.

Invariants enforced:
    - At most one OPEN/IN_PROGRESS dispute per order.
    - Status changes are conditional UPDATEs on the current status; a
      RESOLVED or CLOSED dispute never changes again.
    - The resolution is one unit of work: dispute status, refund ledger
      entry, order balance, order cancellation, resolution record and
      activity entry are flushed in the caller's transaction.

Failure modes:
    - ForbiddenError for non-admin resolvers or non-participant openers.
    - DisputeNotFoundError, DisputeAlreadyResolvedError.
    - InvalidAmountError for missing, non-positive or excessive refunds.
    - ResolutionFailedError when the store rejects the unit of work.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from escrow_kernel.db.types import is_whole_cents, to_money
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.commission import CommissionCalculator
from escrow_kernel.domain.dtos import Actor, DisputeSnapshot, ResolutionOutcome
from escrow_kernel.domain.lifecycle import (
    ACTIVE_DISPUTE_STATUSES,
    REFUND_ALLOWED_RESOLUTIONS,
    REFUND_REQUIRED_RESOLUTIONS,
    TERMINAL_DISPUTE_STATUSES,
    TERMINAL_ORDER_STAGES,
    DisputeStatus,
    OrderStage,
    ResolutionType,
)
from escrow_kernel.exceptions import (
    ActiveDisputeExistsError,
    DisputeAlreadyResolvedError,
    DisputeNotFoundError,
    ForbiddenError,
    InvalidAmountError,
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    ResolutionFailedError,
    StaleStateError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.dispute import (
    DisputeActivityModel,
    DisputeModel,
    DisputeResolutionModel,
)
from escrow_kernel.models.order import OrderModel
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.collaborators import NotificationSink, notify_best_effort
from escrow_kernel.services.order_lifecycle import OrderPaymentLifecycle

logger = get_logger("services.dispute_resolution")

MIN_OUTCOME_LENGTH = 10
MAX_OUTCOME_LENGTH = 1000
MAX_REASON_LENGTH = 1000
MAX_REASON_CODE_LENGTH = 50
MAX_ADMIN_NOTES_LENGTH = 2000
DEFAULT_REASON_CODE = "ADMIN_DECISION"


class DisputeResolutionEngine(BaseService):
    """Dispute workflow for order participants and admins."""

    def __init__(
        self,
        session: Session,
        lifecycle: OrderPaymentLifecycle,
        notifier: NotificationSink,
        clock: Clock | None = None,
        commission: CommissionCalculator | None = None,
    ) -> None:
        super().__init__(session, clock)
        self._lifecycle = lifecycle
        self._notifier = notifier
        self._commission = commission or CommissionCalculator()

    # -------------------------------------------------------------------------
    # Opening and review
    # -------------------------------------------------------------------------

    def open_dispute(
        self,
        order_id: UUID,
        actor: Actor,
        reason: str,
        milestone_id: UUID | None = None,
    ) -> DisputeSnapshot:
        if not reason or not reason.strip():
            raise InvalidRequestError("reason", "is required")
        if len(reason) > MAX_REASON_LENGTH:
            raise InvalidRequestError("reason", f"must be at most {MAX_REASON_LENGTH} characters")

        order = self._lifecycle.load_order(order_id)
        if actor.actor_id not in (order.customer_id, order.tailor_id):
            raise ForbiddenError(
                str(actor.actor_id), "open dispute", "not a participant of this order",
            )
        if order.current_stage == OrderStage.CANCELLED.value:
            raise InvalidStateError(
                "Order", str(order_id), order.current_stage,
                "Cancelled orders cannot be disputed",
            )
        active = self._active_dispute_id(order_id)
        if active is not None:
            raise ActiveDisputeExistsError(str(order_id), str(active))

        now = self._clock.now()
        dispute = DisputeModel(
            order_id=order_id,
            opened_by=actor.actor_id,
            reason=reason.strip(),
            status=DisputeStatus.OPEN.value,
            milestone_id=milestone_id,
        )
        self._session.add(dispute)
        self._session.flush()
        self._log_activity(dispute.id, actor.actor_id, "OPENED", dispute.reason, now)

        logger.info(
            "dispute_opened",
            extra={
                "order_id": str(order_id),
                "dispute_id": str(dispute.id),
                "actor_id": str(actor.actor_id),
            },
        )
        notify_best_effort(
            self._notifier,
            [order.customer_id, order.tailor_id],
            "DISPUTE_OPENED",
            {"orderId": str(order_id), "disputeId": str(dispute.id)},
        )
        return dispute.to_snapshot()

    def start_review(self, dispute_id: UUID, admin: Actor) -> DisputeSnapshot:
        """OPEN -> IN_PROGRESS, assigning the reviewing admin."""
        self._require_admin(admin, "review dispute")
        dispute = self._load_dispute(dispute_id)
        status = DisputeStatus(dispute.status)
        if status in TERMINAL_DISPUTE_STATUSES:
            raise DisputeAlreadyResolvedError(str(dispute_id), status.value)
        if status != DisputeStatus.OPEN:
            raise InvalidTransitionError(
                "Dispute", str(dispute_id), status.value, DisputeStatus.IN_PROGRESS.value,
            )

        self._transition(
            dispute_id,
            DisputeStatus.OPEN,
            status=DisputeStatus.IN_PROGRESS.value,
            assigned_admin_id=admin.actor_id,
        )
        self._log_activity(
            dispute_id, admin.actor_id, "REVIEW_STARTED", "Admin review started",
            self._clock.now(),
        )
        logger.info(
            "dispute_review_started",
            extra={"dispute_id": str(dispute_id), "admin_id": str(admin.actor_id)},
        )
        return self._load_dispute(dispute_id).to_snapshot()

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve(
        self,
        dispute_id: UUID,
        admin: Actor,
        resolution_type: ResolutionType | str,
        outcome: str,
        refund_amount: object | None = None,
        reason_code: str = DEFAULT_REASON_CODE,
        admin_notes: str | None = None,
    ) -> ResolutionOutcome:
        """
        Resolve a dispute as one unit of work.

        Nothing is flushed until every precondition holds, so a rejected
        request leaves the dispute untouched.  If the store refuses any
        write the whole resolution surfaces as ResolutionFailedError and
        the caller's transaction is rolled back.
        """
        self._require_admin(admin, "resolve dispute")
        rtype = self._parse_resolution_type(resolution_type)
        self._validate_text(outcome, reason_code, admin_notes)

        with LogContext.bind(dispute_id=str(dispute_id), actor_id=str(admin.actor_id)):
            dispute = self._load_dispute(dispute_id)
            status = DisputeStatus(dispute.status)
            if status in TERMINAL_DISPUTE_STATUSES:
                raise DisputeAlreadyResolvedError(str(dispute_id), status.value)
            order = self._lifecycle.load_order(dispute.order_id)
            refund = self._validate_refund(rtype, refund_amount, order)

            try:
                result = self._apply_resolution(
                    dispute, status, order, admin, rtype, outcome, refund,
                    reason_code, admin_notes,
                )
            except SQLAlchemyError as exc:
                logger.error(
                    "dispute_resolution_failed",
                    extra={"dispute_id": str(dispute_id), "error": str(exc)},
                )
                raise ResolutionFailedError(str(dispute_id), str(exc)) from exc

            logger.info(
                "dispute_resolved",
                extra={
                    "dispute_id": str(dispute_id),
                    "order_id": str(order.id),
                    "resolution_type": rtype.value,
                    "refund_amount": refund,
                    "order_stage": result.order_stage.value,
                },
            )
            notify_best_effort(
                self._notifier,
                [order.customer_id, order.tailor_id],
                "DISPUTE_RESOLVED",
                {
                    "orderId": str(order.id),
                    "disputeId": str(dispute_id),
                    "resolutionType": rtype.value,
                    "refundAmount": str(refund) if refund is not None else None,
                },
            )
            return result

    def _apply_resolution(
        self,
        dispute: DisputeModel,
        status: DisputeStatus,
        order: OrderModel,
        admin: Actor,
        rtype: ResolutionType,
        outcome: str,
        refund: Decimal | None,
        reason_code: str,
        admin_notes: str | None,
    ) -> ResolutionOutcome:
        now = self._clock.now()
        self._transition(
            dispute.id,
            status,
            status=DisputeStatus.RESOLVED.value,
            resolution_type=rtype.value,
            refund_amount=refund,
            outcome=outcome,
            reason_code=reason_code,
            admin_notes=admin_notes,
            resolved_at=now,
            resolved_by=admin.actor_id,
        )

        refund_record = None
        if refund is not None:
            paid_before = order.total_amount - order.refunded_amount
            refund_record = self._lifecycle.apply_refund(
                order.id, refund, actor_id=admin.actor_id, dispute_id=dispute.id,
            )
            if order.current_stage == OrderStage.COMPLETED.value:
                adjustment = self._commission.dispute_adjustment(
                    paid_before, paid_before - refund,
                )
                logger.info(
                    "commission_adjustment_required",
                    extra={
                        "order_id": str(order.id),
                        "adjustment_type": adjustment.adjustment_type.value,
                        "adjustment_amount": adjustment.adjustment_amount,
                    },
                )

        order_stage = OrderStage(self._lifecycle.load_order(order.id).current_stage)
        if rtype == ResolutionType.FULL_REFUND and order_stage not in TERMINAL_ORDER_STAGES:
            order_stage = self._lifecycle.cancel(
                order.id, admin.actor_id, reason=f"Dispute {dispute.id} resolved with full refund",
            ).current_stage

        self._session.add(
            DisputeResolutionModel(
                dispute_id=dispute.id,
                order_id=order.id,
                resolution_type=rtype.value,
                outcome=outcome,
                refund_amount=refund,
                reason_code=reason_code,
                admin_notes=admin_notes,
                resolved_by=admin.actor_id,
                resolved_at=now,
            )
        )
        self._log_activity(
            dispute.id, admin.actor_id, "RESOLVED",
            f"Resolved as {rtype.value} ({reason_code})", now,
        )

        return ResolutionOutcome(
            dispute=self._load_dispute(dispute.id).to_snapshot(),
            order_stage=order_stage,
            refund=refund_record,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _transition(self, dispute_id: UUID, expected: DisputeStatus, **values: object) -> None:
        result = self._session.execute(
            update(DisputeModel)
            .where(DisputeModel.id == dispute_id, DisputeModel.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self._load_dispute(dispute_id)
            if DisputeStatus(current.status) in TERMINAL_DISPUTE_STATUSES:
                raise DisputeAlreadyResolvedError(str(dispute_id), current.status)
            raise StaleStateError("Dispute", str(dispute_id), expected.value)

    def _validate_refund(
        self,
        rtype: ResolutionType,
        refund_amount: object | None,
        order: OrderModel,
    ) -> Decimal | None:
        if refund_amount is None:
            if rtype in REFUND_REQUIRED_RESOLUTIONS:
                raise InvalidAmountError(None, f"refund amount is required for {rtype.value}")
            return None
        amount = to_money(refund_amount)
        if rtype not in REFUND_ALLOWED_RESOLUTIONS:
            raise InvalidAmountError(refund_amount, f"{rtype.value} cannot carry a refund")
        if amount <= 0:
            raise InvalidAmountError(refund_amount, "refund must be greater than zero")
        if amount > order.total_amount:
            raise InvalidAmountError(
                refund_amount, f"refund exceeds order total {order.total_amount}",
            )
        refundable = order.total_amount - order.refunded_amount
        if amount > refundable:
            raise InvalidAmountError(
                refund_amount, f"only {refundable} remains refundable on this order",
            )
        if not is_whole_cents(amount):
            raise InvalidAmountError(refund_amount, "refund has sub-cent precision")
        return amount

    @staticmethod
    def _validate_text(outcome: str, reason_code: str, admin_notes: str | None) -> None:
        if not outcome or not (MIN_OUTCOME_LENGTH <= len(outcome.strip()) <= MAX_OUTCOME_LENGTH):
            raise InvalidRequestError(
                "outcome",
                f"must be between {MIN_OUTCOME_LENGTH} and {MAX_OUTCOME_LENGTH} characters",
            )
        if not reason_code or len(reason_code) > MAX_REASON_CODE_LENGTH:
            raise InvalidRequestError(
                "reasonCode", f"must be 1 to {MAX_REASON_CODE_LENGTH} characters",
            )
        if admin_notes is not None and len(admin_notes) > MAX_ADMIN_NOTES_LENGTH:
            raise InvalidRequestError(
                "adminNotes", f"must be at most {MAX_ADMIN_NOTES_LENGTH} characters",
            )

    @staticmethod
    def _parse_resolution_type(resolution_type: ResolutionType | str) -> ResolutionType:
        try:
            return ResolutionType(resolution_type)
        except ValueError:
            raise InvalidRequestError(
                "resolutionType", f"must be one of {[t.value for t in ResolutionType]}",
            ) from None

    @staticmethod
    def _require_admin(actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise ForbiddenError(str(actor.actor_id), action, "admin role required")

    def _active_dispute_id(self, order_id: UUID) -> UUID | None:
        return self._session.execute(
            select(DisputeModel.id).where(
                DisputeModel.order_id == order_id,
                DisputeModel.status.in_([s.value for s in ACTIVE_DISPUTE_STATUSES]),
            )
        ).scalar_one_or_none()

    def _load_dispute(self, dispute_id: UUID) -> DisputeModel:
        dispute = self._session.get(DisputeModel, dispute_id, populate_existing=True)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    def _log_activity(self, dispute_id, actor_id, activity_type, description, occurred_at) -> None:
        self._session.add(
            DisputeActivityModel(
                dispute_id=dispute_id,
                actor_id=actor_id,
                activity_type=activity_type,
                description=description[:1000],
                occurred_at=occurred_at,
            )
        )
        self._session.flush()
