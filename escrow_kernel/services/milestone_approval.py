"""
escrow_kernel.services.milestone_approval -- Customer review of production milestones.

Responsibility:
    Tailors submit a milestone when a production checkpoint is done; the
    customer approves or rejects it; the scheduler auto-approves it once
    the review window lapses.  An approval releases the milestone's escrow
    tranche through OrderPaymentLifecycle.

Architecture position:
    Kernel > Services.  Depends on OrderPaymentLifecycle for money movement
    and EscrowPaymentService for disbursement.

Invariants enforced:
    - A milestone leaves PENDING exactly once.  The decision is written as
      ``UPDATE ... WHERE approval_status = 'PENDING'``; the loser of a race
      gets MilestoneAlreadyReviewedError and releases nothing.
    - At most one PENDING milestone per (order, release stage).
    - No decision is recorded while the order has an active dispute.

Failure modes:
    - ForbiddenError if the caller is not the order's customer (or tailor,
      for submission).
    - MilestoneAlreadyReviewedError if the milestone is no longer PENDING.
    - OrderUnderDisputeError while a dispute is OPEN or IN_PROGRESS.
    - PaymentServiceError if disbursement fails during an interactive
      approval; the caller rolls back and the customer may retry.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import SYSTEM_ACTOR_ID, ApprovalOutcome, MilestoneSnapshot
from escrow_kernel.domain.lifecycle import (
    ACTIVE_DISPUTE_STATUSES,
    MILESTONE_RELEASE_STAGES,
    RELEASING_MILESTONE_STATUSES,
    ApprovalAction,
    EscrowStage,
    MilestoneStatus,
    OrderStage,
)
from escrow_kernel.exceptions import (
    ForbiddenError,
    InvalidRequestError,
    InvalidStateError,
    MilestoneAlreadyReviewedError,
    MilestoneNotFoundError,
    OrderUnderDisputeError,
    PendingMilestoneExistsError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.dispute import DisputeModel
from escrow_kernel.models.milestone import MilestoneApprovalModel, MilestoneModel
from escrow_kernel.models.order import OrderModel
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.collaborators import NotificationSink, notify_best_effort
from escrow_kernel.services.escrow_payment import EscrowPaymentService
from escrow_kernel.services.order_lifecycle import OrderPaymentLifecycle

logger = get_logger("services.milestone_approval")

DEFAULT_APPROVAL_WINDOW_HOURS = 48
MAX_COMMENT_LENGTH = 500

# Decisions a customer may submit
CUSTOMER_ACTIONS = frozenset({ApprovalAction.APPROVED, ApprovalAction.REJECTED})


class MilestoneApprovalEngine(BaseService):
    """Submit, review and auto-approve milestones."""

    def __init__(
        self,
        session: Session,
        lifecycle: OrderPaymentLifecycle,
        payments: EscrowPaymentService,
        notifier: NotificationSink,
        clock: Clock | None = None,
        approval_window_hours: int = DEFAULT_APPROVAL_WINDOW_HOURS,
    ) -> None:
        super().__init__(session, clock)
        self._lifecycle = lifecycle
        self._payments = payments
        self._notifier = notifier
        self._window = timedelta(hours=approval_window_hours)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit_milestone(
        self,
        order_id: UUID,
        tailor_id: UUID,
        release_stage: EscrowStage,
    ) -> MilestoneSnapshot:
        """
        Open a milestone for customer review.

        A FITTING milestone moves an IN_PRODUCTION order to
        READY_FOR_FITTING; resubmitting after a rejection is allowed from
        READY_FOR_FITTING.  A FINAL milestone requires FITTING_PAID.
        """
        try:
            stage = EscrowStage(release_stage)
        except ValueError:
            raise InvalidRequestError("releaseStage", f"unknown stage {release_stage!r}") from None
        if stage not in MILESTONE_RELEASE_STAGES:
            raise InvalidRequestError(
                "releaseStage", f"must be one of {sorted(s.value for s in MILESTONE_RELEASE_STAGES)}",
            )

        order = self._lifecycle.load_order(order_id)
        if order.tailor_id != tailor_id:
            raise ForbiddenError(str(tailor_id), "submit milestone", "only the order's tailor")
        self._ensure_no_active_dispute(order_id)

        pending = self._session.execute(
            select(MilestoneModel.id).where(
                MilestoneModel.order_id == order_id,
                MilestoneModel.release_stage == stage.value,
                MilestoneModel.approval_status == MilestoneStatus.PENDING.value,
            )
        ).scalar_one_or_none()
        if pending is not None:
            raise PendingMilestoneExistsError(str(order_id), stage.value, str(pending))

        current = OrderStage(order.current_stage)
        if stage == EscrowStage.FITTING and current == OrderStage.IN_PRODUCTION:
            self._lifecycle.mark_ready_for_fitting(order_id)
        elif not (
            (stage == EscrowStage.FITTING and current == OrderStage.READY_FOR_FITTING)
            or (stage == EscrowStage.FINAL and current == OrderStage.FITTING_PAID)
        ):
            raise InvalidStateError(
                "Order", str(order_id), current.value,
                f"A {stage.value} milestone cannot be submitted while the order is {current.value}",
            )

        now = self._clock.now()
        milestone = MilestoneModel(
            order_id=order_id,
            release_stage=stage.value,
            approval_status=MilestoneStatus.PENDING.value,
            submitted_by=tailor_id,
            submitted_at=now,
            auto_approval_deadline=now + self._window,
            dispute_eligible=False,
        )
        self._session.add(milestone)
        self._session.flush()

        logger.info(
            "milestone_submitted",
            extra={
                "order_id": str(order_id),
                "milestone_id": str(milestone.id),
                "release_stage": stage.value,
                "auto_approval_deadline": milestone.auto_approval_deadline,
            },
        )
        notify_best_effort(
            self._notifier,
            [order.customer_id],
            "MILESTONE_SUBMITTED",
            {
                "orderId": str(order_id),
                "milestoneId": str(milestone.id),
                "releaseStage": stage.value,
                "autoApprovalDeadline": milestone.auto_approval_deadline.isoformat(),
            },
        )
        return milestone.to_snapshot()

    # -------------------------------------------------------------------------
    # Customer review
    # -------------------------------------------------------------------------

    def approve(
        self,
        milestone_id: UUID,
        customer_id: UUID,
        action: ApprovalAction | str,
        comment: str | None = None,
    ) -> ApprovalOutcome:
        """
        Record the customer's decision on a PENDING milestone.

        APPROVED releases and disburses the milestone's tranche before
        returning; a disbursement failure propagates so the caller rolls the
        whole approval back.  REJECTED moves no money and marks the
        milestone dispute-eligible.
        """
        decision = self._parse_customer_action(action)
        if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
            raise InvalidRequestError(
                "comment", f"must be at most {MAX_COMMENT_LENGTH} characters",
            )

        with LogContext.bind(milestone_id=str(milestone_id)):
            milestone = self._load_milestone(milestone_id)
            order = self._lifecycle.load_order(milestone.order_id)
            if order.customer_id != customer_id:
                raise ForbiddenError(
                    str(customer_id), "review milestone", "only the order's customer",
                )
            if milestone.approval_status != MilestoneStatus.PENDING.value:
                raise MilestoneAlreadyReviewedError(str(milestone_id), milestone.approval_status)

            outcome = self._record_decision(
                milestone, order, decision, actor_id=customer_id, comment=comment,
            )
            if outcome.release is not None:
                settled = self._payments.disburse(outcome.release, order.tailor_id)
                outcome = replace(outcome, payment_reference=settled.external_reference)

            self._notify_decision(order, outcome)
            return outcome

    def get_approval_status(self, milestone_id: UUID, customer_id: UUID) -> MilestoneSnapshot:
        milestone = self._load_milestone(milestone_id)
        order = self._lifecycle.load_order(milestone.order_id)
        if order.customer_id != customer_id:
            raise ForbiddenError(
                str(customer_id), "view milestone", "only the order's customer",
            )
        return milestone.to_snapshot()

    # -------------------------------------------------------------------------
    # Auto-approval
    # -------------------------------------------------------------------------

    def auto_approve(self, milestone_id: UUID, as_of: datetime | None = None) -> ApprovalOutcome:
        """
        Approve an overdue PENDING milestone on the customer's behalf.

        Releases the tranche but does not disburse it; the scheduler does
        that after committing, so a provider failure never reverts the
        approval.
        """
        milestone = self._load_milestone(milestone_id)
        if milestone.approval_status != MilestoneStatus.PENDING.value:
            raise MilestoneAlreadyReviewedError(str(milestone_id), milestone.approval_status)
        now = as_of or self._clock.now()
        if milestone.auto_approval_deadline >= now:
            raise InvalidStateError(
                "Milestone", str(milestone_id), milestone.approval_status,
                f"Auto-approval deadline {milestone.auto_approval_deadline.isoformat()} "
                f"has not passed",
            )
        order = self._lifecycle.load_order(milestone.order_id)
        return self._record_decision(
            milestone, order, ApprovalAction.AUTO_APPROVED, actor_id=None, comment=None,
        )

    def notify_decision(self, outcome: ApprovalOutcome) -> int:
        """Send decision notifications for an outcome recorded earlier."""
        order = self._lifecycle.load_order(outcome.order_id)
        return self._notify_decision(order, outcome)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record_decision(
        self,
        milestone: MilestoneModel,
        order: OrderModel,
        action: ApprovalAction,
        *,
        actor_id: UUID | None,
        comment: str | None,
    ) -> ApprovalOutcome:
        self._ensure_no_active_dispute(order.id)
        now = self._clock.now()
        status = MilestoneStatus(action.value)

        values: dict[str, object] = {"approval_status": status.value}
        if action != ApprovalAction.AUTO_APPROVED:
            values["customer_reviewed_at"] = now
        if action == ApprovalAction.REJECTED:
            values["rejection_reason"] = comment
            values["dispute_eligible"] = True

        result = self._session.execute(
            update(MilestoneModel)
            .where(
                MilestoneModel.id == milestone.id,
                MilestoneModel.approval_status == MilestoneStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self._session.get(MilestoneModel, milestone.id, populate_existing=True)
            raise MilestoneAlreadyReviewedError(str(milestone.id), current.approval_status)

        recorded_by = actor_id if actor_id is not None else SYSTEM_ACTOR_ID
        release = None
        if status in RELEASING_MILESTONE_STATUSES:
            release = self._lifecycle.release_stage(
                order.id,
                EscrowStage(milestone.release_stage),
                actor_id=recorded_by,
                milestone_id=milestone.id,
            )

        self._session.add(
            MilestoneApprovalModel(
                milestone_id=milestone.id,
                order_id=order.id,
                actor_id=recorded_by,
                action=action.value,
                comment=comment,
                reviewed_at=now,
            )
        )
        self._session.flush()
        self._session.get(MilestoneModel, milestone.id, populate_existing=True)

        logger.info(
            "milestone_decision_recorded",
            extra={
                "order_id": str(order.id),
                "milestone_id": str(milestone.id),
                "action": action.value,
                "release_stage": milestone.release_stage,
                "released_amount": release.amount if release else None,
            },
        )
        return ApprovalOutcome(
            milestone_id=milestone.id,
            order_id=order.id,
            action=action,
            status=status,
            reviewed_at=now,
            release=release,
        )

    def _notify_decision(self, order: OrderModel, outcome: ApprovalOutcome) -> int:
        payload = {
            "orderId": str(order.id),
            "milestoneId": str(outcome.milestone_id),
            "action": outcome.action.value,
        }
        if outcome.release is not None:
            payload["releasedAmount"] = str(outcome.release.amount)
            payload["orderStage"] = outcome.release.to_order_stage.value
        return notify_best_effort(
            self._notifier,
            [order.customer_id, order.tailor_id],
            f"MILESTONE_{outcome.action.value}",
            payload,
        )

    def _ensure_no_active_dispute(self, order_id: UUID) -> None:
        dispute_id = self._session.execute(
            select(DisputeModel.id).where(
                DisputeModel.order_id == order_id,
                DisputeModel.status.in_([s.value for s in ACTIVE_DISPUTE_STATUSES]),
            )
        ).scalar_one_or_none()
        if dispute_id is not None:
            raise OrderUnderDisputeError(str(order_id), str(dispute_id))

    def _load_milestone(self, milestone_id: UUID) -> MilestoneModel:
        milestone = self._session.get(MilestoneModel, milestone_id, populate_existing=True)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    @staticmethod
    def _parse_customer_action(action: ApprovalAction | str) -> ApprovalAction:
        try:
            decision = ApprovalAction(action)
        except ValueError:
            decision = None
        if decision not in CUSTOMER_ACTIONS:
            raise InvalidRequestError("action", "must be APPROVED or REJECTED")
        return decision
