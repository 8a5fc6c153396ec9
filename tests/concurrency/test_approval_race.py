"""
Race between a customer approval and the auto-approval scheduler.

Both paths end in the same conditional UPDATE on the milestone's
approval status, so exactly one of them may release the tranche no
matter how the threads interleave.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from threading import Barrier

import pytest
from sqlalchemy import func, select

from escrow_kernel.db.engine import session_scope
from escrow_kernel.domain.lifecycle import EscrowTransactionType, MilestoneStatus
from escrow_kernel.exceptions import MilestoneAlreadyReviewedError
from escrow_kernel.models.escrow import EscrowTransactionModel
from escrow_kernel.models.milestone import MilestoneModel
from escrow_kernel.models.order import OrderModel

from escrow_batch.domain.types import AutoApprovalItemStatus
from escrow_batch.services.auto_approval import AutoApprovalScheduler


def _fitting_releases(session_factory, order_id) -> int:
    with session_factory() as s:
        return s.execute(
            select(func.count()).select_from(EscrowTransactionModel).where(
                EscrowTransactionModel.order_id == order_id,
                EscrowTransactionModel.transaction_type
                == EscrowTransactionType.FITTING_RELEASE.value,
            )
        ).scalar_one()


def _run_together(*fns):
    with ThreadPoolExecutor(max_workers=len(fns)) as pool:
        futures = [pool.submit(fn) for fn in fns]
        return [f.result(timeout=30) for f in futures]


@pytest.fixture
def scheduler(session_factory, make_escrow, clock):
    return AutoApprovalScheduler(session_factory, make_escrow, clock=clock)


class TestSequentialInterleaving:

    def test_scheduler_skips_milestone_customer_already_approved(
        self, orders, session, session_factory, make_escrow, scheduler, clock,
    ):
        order_id, milestone_id = orders.fitting_submitted()
        session.commit()
        overdue = clock.now() + timedelta(hours=49)

        with session_scope(session_factory) as s:
            make_escrow(s).milestones.approve(milestone_id, orders.customer.actor_id, "APPROVED")

        item = scheduler.process_milestone(milestone_id, overdue)

        assert item.status == AutoApprovalItemStatus.SKIPPED
        assert item.error_code == MilestoneAlreadyReviewedError.code
        assert _fitting_releases(session_factory, order_id) == 1

    def test_customer_loses_to_committed_auto_approval(
        self, orders, session, session_factory, make_escrow, scheduler, clock,
    ):
        order_id, milestone_id = orders.fitting_submitted()
        session.commit()

        item = scheduler.process_milestone(milestone_id, clock.now() + timedelta(hours=49))
        assert item.status == AutoApprovalItemStatus.APPROVED

        with pytest.raises(MilestoneAlreadyReviewedError) as exc_info:
            with session_scope(session_factory) as s:
                make_escrow(s).milestones.approve(
                    milestone_id, orders.customer.actor_id, "APPROVED",
                )
        assert exc_info.value.current_status == MilestoneStatus.AUTO_APPROVED.value
        assert _fitting_releases(session_factory, order_id) == 1


class TestThreadedRace:

    @pytest.mark.parametrize("attempt", range(3))
    def test_exactly_one_release(
        self, attempt, orders, session, session_factory, make_escrow, scheduler,
        gateway, clock,
    ):
        order_id, milestone_id = orders.fitting_submitted()
        session.commit()
        overdue = clock.now() + timedelta(hours=49)
        barrier = Barrier(2)

        def customer_approves():
            barrier.wait()
            try:
                with session_scope(session_factory) as s:
                    make_escrow(s).milestones.approve(
                        milestone_id, orders.customer.actor_id, "APPROVED",
                    )
                return "customer"
            except MilestoneAlreadyReviewedError:
                return None

        def scheduler_approves():
            barrier.wait()
            item = scheduler.process_milestone(milestone_id, overdue)
            return "scheduler" if item.status == AutoApprovalItemStatus.APPROVED else None

        winners = [w for w in _run_together(customer_approves, scheduler_approves) if w]

        assert len(winners) == 1
        assert _fitting_releases(session_factory, order_id) == 1
        assert len(gateway.payouts("FITTING")) == 1

        with session_factory() as s:
            order = s.get(OrderModel, order_id)
            milestone = s.get(MilestoneModel, milestone_id)
            assert order.released_amount == Decimal("75.00")
            assert order.escrow_balance == Decimal("25.00")
            expected = (
                MilestoneStatus.APPROVED if winners == ["customer"]
                else MilestoneStatus.AUTO_APPROVED
            )
            assert milestone.approval_status == expected.value
