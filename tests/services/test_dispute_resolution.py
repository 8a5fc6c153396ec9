"""
Tests for escrow_kernel.services.dispute_resolution.

Verifies:
- Opening rules (participants only, one active dispute per order)
- Admin-only review and resolution
- Refund validation happens before anything is written
- Resolution is one unit of work: store failures surface as
  ResolutionFailedError and leave the dispute untouched
- RESOLVED disputes are frozen
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from escrow_kernel.domain.dtos import Actor
from escrow_kernel.domain.lifecycle import (
    ActorRole,
    DisputeStatus,
    EscrowTransactionType,
    OrderStage,
    ResolutionType,
)
from escrow_kernel.exceptions import (
    ActiveDisputeExistsError,
    DisputeAlreadyResolvedError,
    DisputeNotFoundError,
    ForbiddenError,
    ImmutabilityViolationError,
    InvalidAmountError,
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    ResolutionFailedError,
)
from escrow_kernel.models.dispute import (
    DisputeActivityModel,
    DisputeModel,
    DisputeResolutionModel,
)

OUTCOME = "Tailor re-does the hem at no cost."


@pytest.fixture
def open_dispute(escrow, orders):
    """An IN_PRODUCTION order with an OPEN dispute; returns (order_id, dispute_id)."""
    order_id = orders.in_production()
    dispute = escrow.disputes.open_dispute(order_id, orders.customer, "Wrong measurements")
    return order_id, dispute.dispute_id


class TestOpenDispute:

    def test_open_records_activity_and_notifies(self, escrow, session, orders, notifier):
        order_id = orders.in_production()
        dispute = escrow.disputes.open_dispute(order_id, orders.tailor, "  Customer unreachable ")

        assert dispute.status == DisputeStatus.OPEN
        assert dispute.reason == "Customer unreachable"
        activities = session.execute(
            select(DisputeActivityModel.activity_type).where(
                DisputeActivityModel.dispute_id == dispute.dispute_id,
            )
        ).scalars().all()
        assert activities == ["OPENED"]
        assert notifier.events().count("DISPUTE_OPENED") == 2

    def test_one_active_dispute_per_order(self, escrow, orders, open_dispute):
        order_id, _ = open_dispute
        with pytest.raises(ActiveDisputeExistsError):
            escrow.disputes.open_dispute(order_id, orders.tailor, "Second complaint")

    def test_outsider_forbidden(self, escrow, orders):
        order_id = orders.in_production()
        stranger = Actor(actor_id=uuid4(), role=ActorRole.CUSTOMER)
        with pytest.raises(ForbiddenError):
            escrow.disputes.open_dispute(order_id, stranger, "Not my order")

    def test_reason_required(self, escrow, orders):
        order_id = orders.in_production()
        with pytest.raises(InvalidRequestError):
            escrow.disputes.open_dispute(order_id, orders.customer, "   ")

    def test_cancelled_order_cannot_be_disputed(self, escrow, orders):
        order_id = orders.pending()
        escrow.lifecycle.cancel(order_id, orders.customer.actor_id)
        with pytest.raises(InvalidStateError):
            escrow.disputes.open_dispute(order_id, orders.customer, "Too late")


class TestStartReview:

    def test_admin_takes_dispute(self, escrow, admin, open_dispute):
        _, dispute_id = open_dispute
        snapshot = escrow.disputes.start_review(dispute_id, admin)
        assert snapshot.status == DisputeStatus.IN_PROGRESS

    def test_non_admin_forbidden(self, escrow, orders, open_dispute):
        _, dispute_id = open_dispute
        with pytest.raises(ForbiddenError):
            escrow.disputes.start_review(dispute_id, orders.customer)

    def test_review_twice(self, escrow, admin, open_dispute):
        _, dispute_id = open_dispute
        escrow.disputes.start_review(dispute_id, admin)
        with pytest.raises(InvalidTransitionError):
            escrow.disputes.start_review(dispute_id, admin)


class TestResolve:

    def test_partial_refund(self, escrow, session, admin, open_dispute, notifier):
        order_id, dispute_id = open_dispute

        result = escrow.disputes.resolve(
            dispute_id, admin, ResolutionType.PARTIAL_REFUND, OUTCOME,
            refund_amount=Decimal("40.00"), reason_code="QUALITY", admin_notes="hem",
        )

        assert result.dispute.status == DisputeStatus.RESOLVED
        assert result.dispute.refund_amount == Decimal("40.00")
        assert result.dispute.resolved_by == admin.actor_id
        assert result.dispute.resolved_at is not None
        assert result.order_stage == OrderStage.IN_PRODUCTION
        assert result.refund.transaction_type == EscrowTransactionType.REFUND
        assert result.refund.dispute_id == dispute_id

        order = escrow.lifecycle.get_order(order_id)
        assert order.refunded_amount == Decimal("40.00")
        assert order.escrow_balance == Decimal("35.00")

        [record] = session.execute(
            select(DisputeResolutionModel).where(DisputeResolutionModel.dispute_id == dispute_id)
        ).scalars().all()
        assert record.reason_code == "QUALITY"
        assert "DISPUTE_RESOLVED" in notifier.events()

    def test_full_refund_cancels_order(self, escrow, admin, open_dispute):
        order_id, dispute_id = open_dispute
        result = escrow.disputes.resolve(
            dispute_id, admin, "FULL_REFUND", OUTCOME, refund_amount="100.00",
        )
        assert result.order_stage == OrderStage.CANCELLED
        assert result.dispute.reason_code == "ADMIN_DECISION"
        assert escrow.lifecycle.get_order(order_id).current_stage == OrderStage.CANCELLED

    def test_no_refund(self, escrow, admin, open_dispute):
        order_id, dispute_id = open_dispute
        result = escrow.disputes.resolve(dispute_id, admin, "NO_REFUND", OUTCOME)
        assert result.refund is None
        assert escrow.lifecycle.get_order(order_id).refunded_amount == Decimal("0.00")

    def test_resolve_from_in_progress(self, escrow, admin, open_dispute):
        _, dispute_id = open_dispute
        escrow.disputes.start_review(dispute_id, admin)
        result = escrow.disputes.resolve(dispute_id, admin, "NO_REFUND", OUTCOME)
        assert result.dispute.status == DisputeStatus.RESOLVED

    def test_refund_on_completed_order_logs_commission_adjustment(
        self, escrow, orders, admin, captured_logs,
    ):
        order_id = orders.completed()
        dispute = escrow.disputes.open_dispute(order_id, orders.customer, "Torn after a week")
        escrow.disputes.resolve(
            dispute.dispute_id, admin, "PARTIAL_REFUND", OUTCOME, refund_amount="10.00",
        )
        [adjustment] = [
            r for r in captured_logs() if r["message"] == "commission_adjustment_required"
        ]
        assert adjustment["adjustment_type"] == "REFUND"
        assert adjustment["adjustment_amount"] == "2.00"

    @pytest.mark.parametrize(
        "resolution_type,refund",
        [
            ("FULL_REFUND", None),
            ("PARTIAL_REFUND", None),
            ("NO_REFUND", "10.00"),
            ("PARTIAL_REFUND", "0"),
            ("PARTIAL_REFUND", "100.01"),
            ("PARTIAL_REFUND", "10.005"),
        ],
    )
    def test_invalid_refund_leaves_dispute_untouched(
        self, escrow, session, admin, open_dispute, resolution_type, refund,
    ):
        _, dispute_id = open_dispute
        with pytest.raises(InvalidAmountError):
            escrow.disputes.resolve(
                dispute_id, admin, resolution_type, OUTCOME, refund_amount=refund,
            )
        assert session.get(DisputeModel, dispute_id).status == DisputeStatus.OPEN.value

    def test_sub_cent_refund_is_an_invalid_amount(self, escrow, session, admin, open_dispute):
        order_id, dispute_id = open_dispute
        with pytest.raises(InvalidAmountError, match="sub-cent"):
            escrow.disputes.resolve(
                dispute_id, admin, "PARTIAL_REFUND", OUTCOME, refund_amount="10.005",
            )
        assert session.get(DisputeModel, dispute_id).status == DisputeStatus.OPEN.value
        assert escrow.lifecycle.get_order(order_id).refunded_amount == Decimal("0.00")

    def test_refund_limited_to_remaining_refundable(self, escrow, orders, admin, open_dispute):
        order_id, dispute_id = open_dispute
        escrow.lifecycle.apply_refund(order_id, "70.00", actor_id=admin.actor_id)
        with pytest.raises(InvalidAmountError, match="remains refundable"):
            escrow.disputes.resolve(
                dispute_id, admin, "PARTIAL_REFUND", OUTCOME, refund_amount="40.00",
            )

    @pytest.mark.parametrize(
        "outcome,reason_code",
        [("too short", "ADMIN_DECISION"), (OUTCOME, ""), (OUTCOME, "X" * 51)],
    )
    def test_text_validation(self, escrow, admin, open_dispute, outcome, reason_code):
        _, dispute_id = open_dispute
        with pytest.raises(InvalidRequestError):
            escrow.disputes.resolve(
                dispute_id, admin, "NO_REFUND", outcome, reason_code=reason_code,
            )

    def test_unknown_resolution_type(self, escrow, admin, open_dispute):
        _, dispute_id = open_dispute
        with pytest.raises(InvalidRequestError):
            escrow.disputes.resolve(dispute_id, admin, "SPLIT_DIFFERENCE", OUTCOME)

    def test_non_admin_forbidden(self, escrow, orders, open_dispute):
        _, dispute_id = open_dispute
        with pytest.raises(ForbiddenError):
            escrow.disputes.resolve(dispute_id, orders.customer, "NO_REFUND", OUTCOME)

    def test_missing_dispute(self, escrow, admin):
        with pytest.raises(DisputeNotFoundError):
            escrow.disputes.resolve(uuid4(), admin, "NO_REFUND", OUTCOME)

    def test_second_resolution_is_a_conflict(self, escrow, session, admin, open_dispute, clock):
        _, dispute_id = open_dispute
        first = escrow.disputes.resolve(dispute_id, admin, "NO_REFUND", OUTCOME)
        clock.advance_hours(1)
        other_admin = Actor(actor_id=uuid4(), role=ActorRole.ADMIN)

        with pytest.raises(DisputeAlreadyResolvedError):
            escrow.disputes.resolve(dispute_id, other_admin, "NO_REFUND", OUTCOME)

        dispute = session.get(DisputeModel, dispute_id, populate_existing=True).to_snapshot()
        assert dispute.resolved_at == first.dispute.resolved_at
        assert dispute.resolved_by == admin.actor_id

    def test_store_failure_becomes_resolution_failed(
        self, escrow, session, admin, open_dispute, monkeypatch,
    ):
        _, dispute_id = open_dispute
        session.commit()

        def _refuse(*args, **kwargs):
            raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

        monkeypatch.setattr(escrow.lifecycle, "apply_refund", _refuse)
        with pytest.raises(ResolutionFailedError):
            escrow.disputes.resolve(
                dispute_id, admin, "PARTIAL_REFUND", OUTCOME, refund_amount="10.00",
            )
        session.rollback()
        assert session.get(DisputeModel, dispute_id, populate_existing=True).status == "OPEN"

    def test_resolved_dispute_is_immutable(self, escrow, session, admin, open_dispute):
        _, dispute_id = open_dispute
        escrow.disputes.resolve(dispute_id, admin, "NO_REFUND", OUTCOME)

        dispute = session.get(DisputeModel, dispute_id, populate_existing=True)
        dispute.status = DisputeStatus.OPEN.value
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
