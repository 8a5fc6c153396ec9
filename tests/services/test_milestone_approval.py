"""
Tests for escrow_kernel.services.milestone_approval.

Verifies:
- Submission rules per release stage
- A milestone leaves PENDING exactly once
- Approval releases and disburses; a provider failure propagates
- Rejection moves no money and marks the milestone dispute-eligible
- Auto-approval respects the deadline and records the system actor
- Notifications never break the decision
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from escrow_kernel.domain.dtos import SYSTEM_ACTOR_ID
from escrow_kernel.domain.lifecycle import (
    ApprovalAction,
    EscrowStage,
    MilestoneStatus,
    OrderStage,
)
from escrow_kernel.exceptions import (
    ForbiddenError,
    ImmutabilityViolationError,
    InvalidRequestError,
    InvalidStateError,
    MilestoneAlreadyReviewedError,
    MilestoneNotFoundError,
    OrderUnderDisputeError,
    PaymentServiceError,
    PendingMilestoneExistsError,
)
from escrow_kernel.models.milestone import MilestoneApprovalModel, MilestoneModel


class TestSubmitMilestone:

    def test_fitting_from_in_production(self, escrow, orders, notifier, clock):
        order_id = orders.in_production()
        milestone = escrow.milestones.submit_milestone(
            order_id, orders.tailor.actor_id, EscrowStage.FITTING,
        )

        assert milestone.approval_status == MilestoneStatus.PENDING
        assert milestone.auto_approval_deadline == clock.now() + timedelta(hours=48)
        assert escrow.lifecycle.get_order(order_id).current_stage == OrderStage.READY_FOR_FITTING
        assert "MILESTONE_SUBMITTED" in notifier.events()

    def test_only_the_tailor_submits(self, escrow, orders):
        order_id = orders.in_production()
        with pytest.raises(ForbiddenError):
            escrow.milestones.submit_milestone(
                order_id, orders.customer.actor_id, EscrowStage.FITTING,
            )

    def test_deposit_is_not_a_milestone_stage(self, escrow, orders):
        order_id = orders.in_production()
        with pytest.raises(InvalidRequestError):
            escrow.milestones.submit_milestone(
                order_id, orders.tailor.actor_id, EscrowStage.DEPOSIT,
            )

    def test_final_requires_fitting_paid(self, escrow, orders):
        order_id = orders.in_production()
        with pytest.raises(InvalidStateError):
            escrow.milestones.submit_milestone(
                order_id, orders.tailor.actor_id, EscrowStage.FINAL,
            )

    def test_duplicate_pending_rejected(self, escrow, orders):
        order_id, _ = orders.fitting_submitted()
        with pytest.raises(PendingMilestoneExistsError):
            escrow.milestones.submit_milestone(
                order_id, orders.tailor.actor_id, EscrowStage.FITTING,
            )

    def test_resubmit_after_rejection(self, escrow, orders):
        order_id, milestone_id = orders.fitting_submitted()
        escrow.milestones.approve(milestone_id, orders.customer.actor_id, "REJECTED", "seams")
        again = escrow.milestones.submit_milestone(
            order_id, orders.tailor.actor_id, EscrowStage.FITTING,
        )
        assert again.milestone_id != milestone_id

    def test_notification_failure_is_swallowed(self, escrow, orders, notifier, captured_logs):
        order_id = orders.in_production()
        notifier.fail = True
        milestone = escrow.milestones.submit_milestone(
            order_id, orders.tailor.actor_id, EscrowStage.FITTING,
        )
        assert milestone.approval_status == MilestoneStatus.PENDING

        [failure] = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert failure["error_code"] == "NOTIFICATION_SERVICE_ERROR"
        assert "notification backend down" in failure["error"]


class TestApprove:

    def test_approval_releases_and_disburses(self, escrow, session, orders, gateway, notifier):
        order_id, milestone_id = orders.fitting_submitted()

        outcome = escrow.milestones.approve(
            milestone_id, orders.customer.actor_id, ApprovalAction.APPROVED, "looks great",
        )

        assert outcome.status == MilestoneStatus.APPROVED
        assert outcome.release.amount == Decimal("50.00")
        assert outcome.payment_reference == "po_2"
        assert gateway.disbursements[-1]["amount"] == Decimal("50.00")

        order = escrow.lifecycle.get_order(order_id)
        assert order.current_stage == OrderStage.FITTING_PAID
        assert order.escrow_stage == EscrowStage.FINAL
        assert order.escrow_balance == Decimal("25.00")

        [audit] = session.execute(
            select(MilestoneApprovalModel).where(
                MilestoneApprovalModel.milestone_id == milestone_id,
            )
        ).scalars().all()
        assert audit.actor_id == orders.customer.actor_id
        assert audit.approval_action is ApprovalAction.APPROVED
        assert audit.comment == "looks great"
        assert "MILESTONE_APPROVED" in notifier.events()

    def test_second_review_is_a_conflict_without_second_release(self, escrow, orders, gateway):
        order_id, milestone_id = orders.fitting_submitted()
        escrow.milestones.approve(milestone_id, orders.customer.actor_id, "APPROVED")

        with pytest.raises(MilestoneAlreadyReviewedError):
            escrow.milestones.approve(milestone_id, orders.customer.actor_id, "APPROVED")

        assert len(gateway.payouts(EscrowStage.FITTING)) == 1
        assert escrow.lifecycle.get_order(order_id).released_amount == Decimal("75.00")

    def test_rejection_moves_no_money(self, escrow, orders, gateway):
        order_id, milestone_id = orders.fitting_submitted()
        outcome = escrow.milestones.approve(
            milestone_id, orders.customer.actor_id, "REJECTED", "wrong colour",
        )

        assert outcome.status == MilestoneStatus.REJECTED
        assert outcome.release is None
        snapshot = escrow.milestones.get_approval_status(milestone_id, orders.customer.actor_id)
        assert snapshot.rejection_reason == "wrong colour"
        assert snapshot.dispute_eligible
        assert snapshot.customer_reviewed_at is not None
        assert gateway.payouts(EscrowStage.FITTING) == []
        assert escrow.lifecycle.get_order(order_id).current_stage == OrderStage.READY_FOR_FITTING

    def test_only_the_customer_reviews(self, escrow, orders):
        _, milestone_id = orders.fitting_submitted()
        with pytest.raises(ForbiddenError):
            escrow.milestones.approve(milestone_id, orders.tailor.actor_id, "APPROVED")

    def test_customer_cannot_auto_approve(self, escrow, orders):
        _, milestone_id = orders.fitting_submitted()
        with pytest.raises(InvalidRequestError):
            escrow.milestones.approve(milestone_id, orders.customer.actor_id, "AUTO_APPROVED")

    def test_comment_length(self, escrow, orders):
        _, milestone_id = orders.fitting_submitted()
        with pytest.raises(InvalidRequestError):
            escrow.milestones.approve(
                milestone_id, orders.customer.actor_id, "REJECTED", "x" * 501,
            )

    def test_unknown_milestone(self, escrow, orders):
        with pytest.raises(MilestoneNotFoundError):
            escrow.milestones.approve(uuid4(), orders.customer.actor_id, "APPROVED")

    def test_disbursement_failure_propagates(self, escrow, orders, gateway):
        _, milestone_id = orders.fitting_submitted()
        gateway.fail_on.add("disburse")
        with pytest.raises(PaymentServiceError):
            escrow.milestones.approve(milestone_id, orders.customer.actor_id, "APPROVED")

    def test_active_dispute_blocks_review(self, escrow, orders):
        order_id, milestone_id = orders.fitting_submitted()
        escrow.disputes.open_dispute(order_id, orders.customer, "Fabric is damaged")
        with pytest.raises(OrderUnderDisputeError):
            escrow.milestones.approve(milestone_id, orders.customer.actor_id, "APPROVED")

    def test_late_approval_allowed_while_pending(self, escrow, orders, clock):
        _, milestone_id = orders.fitting_submitted()
        clock.advance_hours(72)
        outcome = escrow.milestones.approve(milestone_id, orders.customer.actor_id, "APPROVED")
        assert outcome.status == MilestoneStatus.APPROVED

    def test_reviewed_milestone_is_immutable(self, escrow, session, orders):
        _, milestone_id = orders.fitting_submitted()
        escrow.milestones.approve(milestone_id, orders.customer.actor_id, "APPROVED")

        milestone = session.get(MilestoneModel, milestone_id, populate_existing=True)
        milestone.approval_status = MilestoneStatus.PENDING.value
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestApprovalStatus:

    def test_customer_may_view(self, escrow, orders):
        _, milestone_id = orders.fitting_submitted()
        snapshot = escrow.milestones.get_approval_status(milestone_id, orders.customer.actor_id)
        assert snapshot.milestone_id == milestone_id
        assert snapshot.approval_status == MilestoneStatus.PENDING

    def test_tailor_forbidden(self, escrow, orders):
        _, milestone_id = orders.fitting_submitted()
        with pytest.raises(ForbiddenError):
            escrow.milestones.get_approval_status(milestone_id, orders.tailor.actor_id)

    def test_outsider_forbidden(self, escrow, orders):
        _, milestone_id = orders.fitting_submitted()
        with pytest.raises(ForbiddenError):
            escrow.milestones.get_approval_status(milestone_id, uuid4())


class TestAutoApprove:

    def test_before_deadline_is_refused(self, escrow, orders, clock):
        _, milestone_id = orders.fitting_submitted()
        clock.advance_hours(47)
        with pytest.raises(InvalidStateError):
            escrow.milestones.auto_approve(milestone_id)

    def test_exact_deadline_is_refused(self, escrow, orders, clock):
        _, milestone_id = orders.fitting_submitted()
        clock.advance_hours(48)
        with pytest.raises(InvalidStateError):
            escrow.milestones.auto_approve(milestone_id)

    def test_after_deadline_releases_without_disbursing(
        self, escrow, session, orders, clock, gateway,
    ):
        order_id, milestone_id = orders.fitting_submitted()
        clock.advance_hours(49)

        outcome = escrow.milestones.auto_approve(milestone_id)

        assert outcome.status == MilestoneStatus.AUTO_APPROVED
        assert outcome.release.amount == Decimal("50.00")
        assert gateway.payouts(EscrowStage.FITTING) == []
        assert escrow.lifecycle.get_order(order_id).current_stage == OrderStage.FITTING_PAID

        milestone = escrow.milestones.get_approval_status(milestone_id, orders.customer.actor_id)
        assert milestone.customer_reviewed_at is None
        [audit] = session.execute(
            select(MilestoneApprovalModel).where(
                MilestoneApprovalModel.milestone_id == milestone_id,
            )
        ).scalars().all()
        assert audit.actor_id == SYSTEM_ACTOR_ID

    def test_as_of_overrides_clock(self, escrow, orders, clock):
        _, milestone_id = orders.fitting_submitted()
        outcome = escrow.milestones.auto_approve(
            milestone_id, as_of=clock.now() + timedelta(hours=49),
        )
        assert outcome.status == MilestoneStatus.AUTO_APPROVED

    def test_already_reviewed(self, escrow, orders, clock):
        _, milestone_id = orders.fitting_submitted()
        escrow.milestones.approve(milestone_id, orders.customer.actor_id, "REJECTED")
        clock.advance_hours(49)
        with pytest.raises(MilestoneAlreadyReviewedError):
            escrow.milestones.auto_approve(milestone_id)
