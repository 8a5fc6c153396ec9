"""
EscrowReconciliationService -- Escrow-wide consistency report for admins.

Sums escrow balances, releases and refunds across all orders and lists
every order whose escrow columns fail OrderPaymentLifecycle.reconcile().
Also reports the health of the auto-approval batch: the PENDING milestone
backlog by urgency, recent auto-approvals and the payout outcome of recent
tranche releases.  Read-only.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

from sqlalchemy import BigInteger, func, select, type_coerce
from sqlalchemy.orm import Session

from escrow_kernel.db.types import money_from_cents
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import (
    AutoApprovalHealth,
    ReconciliationReport,
    ReconciliationResult,
    UpcomingDeadline,
)
from escrow_kernel.domain.lifecycle import (
    ApprovalAction,
    EscrowStage,
    EscrowTransactionType,
    MilestoneStatus,
    TransactionStatus,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.escrow import EscrowTransactionModel
from escrow_kernel.models.milestone import MilestoneApprovalModel, MilestoneModel
from escrow_kernel.models.order import OrderModel
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.order_lifecycle import OrderPaymentLifecycle

logger = get_logger("services.reconciliation")

URGENT_WITHIN = timedelta(hours=6)
CRITICAL_WITHIN = timedelta(hours=2)
CRITICAL_ALERT_COUNT = 5
MIN_RELEASE_SUCCESS_RATE = 90
AUTO_APPROVAL_LOOKBACK = timedelta(hours=24)
RELEASE_LOOKBACK = timedelta(days=7)
UPCOMING_DEADLINE_LIMIT = 10

RELEASE_TRANSACTION_TYPES = (
    EscrowTransactionType.DEPOSIT_RELEASE.value,
    EscrowTransactionType.FITTING_RELEASE.value,
    EscrowTransactionType.FINAL_RELEASE.value,
)


def _cents_sum(column):
    return func.coalesce(func.sum(type_coerce(column, BigInteger)), 0)


class EscrowReconciliationService(BaseService):

    def __init__(
        self,
        session: Session,
        lifecycle: OrderPaymentLifecycle,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(session, clock)
        self._lifecycle = lifecycle

    def reconcile_order(self, order_id: UUID) -> ReconciliationResult:
        return self._lifecycle.reconcile(order_id)

    def report(self) -> ReconciliationReport:
        totals = self._session.execute(
            select(
                _cents_sum(OrderModel.escrow_balance),
                _cents_sum(OrderModel.released_amount),
                _cents_sum(OrderModel.refunded_amount),
            )
        ).one()
        by_stage = dict(
            self._session.execute(
                select(OrderModel.current_stage, func.count(OrderModel.id))
                .group_by(OrderModel.current_stage)
            ).all()
        )

        discrepancies = []
        for order_id in self._session.execute(select(OrderModel.id)).scalars().all():
            result = self._lifecycle.reconcile(order_id)
            if not result.is_valid:
                discrepancies.append(result)

        report = ReconciliationReport(
            generated_at=self._clock.now(),
            total_escrow_funds=money_from_cents(int(totals[0])),
            total_released=money_from_cents(int(totals[1])),
            total_refunded=money_from_cents(int(totals[2])),
            orders_by_stage=by_stage,
            discrepancies=tuple(discrepancies),
        )
        logger.info(
            "escrow_reconciliation_report",
            extra={
                "total_escrow_funds": report.total_escrow_funds,
                "order_count": sum(by_stage.values()),
                "discrepancy_count": len(discrepancies),
            },
        )
        return report

    def auto_approval_health(self) -> AutoApprovalHealth:
        """
        Health of the auto-approval batch as seen from the store.

        Overdue milestones are PENDING past their deadline, meaning the
        batch has not run or keeps failing.  Release outcomes cover every
        tranche released in the last seven days.  One or two issues make
        the report a ``warning``; three or more make it ``critical``.
        """
        now = self._clock.now()
        pending = self._session.execute(
            select(MilestoneModel.id, MilestoneModel.order_id,
                   MilestoneModel.release_stage, MilestoneModel.auto_approval_deadline)
            .where(
                MilestoneModel.approval_status == MilestoneStatus.PENDING.value,
                MilestoneModel.auto_approval_deadline >= now,
            )
            .order_by(MilestoneModel.auto_approval_deadline)
        ).all()
        overdue = self._session.execute(
            select(func.count(MilestoneModel.id)).where(
                MilestoneModel.approval_status == MilestoneStatus.PENDING.value,
                MilestoneModel.auto_approval_deadline < now,
            )
        ).scalar_one()
        auto_approved = self._session.execute(
            select(func.count(MilestoneApprovalModel.id)).where(
                MilestoneApprovalModel.action == ApprovalAction.AUTO_APPROVED.value,
                MilestoneApprovalModel.reviewed_at >= now - AUTO_APPROVAL_LOOKBACK,
            )
        ).scalar_one()
        by_status = dict(
            self._session.execute(
                select(EscrowTransactionModel.status, func.count(EscrowTransactionModel.id))
                .where(
                    EscrowTransactionModel.transaction_type.in_(RELEASE_TRANSACTION_TYPES),
                    EscrowTransactionModel.created_at >= now - RELEASE_LOOKBACK,
                )
                .group_by(EscrowTransactionModel.status)
            ).all()
        )

        urgent = [m for m in pending if m.auto_approval_deadline - now <= URGENT_WITHIN]
        critical = [m for m in urgent if m.auto_approval_deadline - now <= CRITICAL_WITHIN]
        completed = by_status.get(TransactionStatus.COMPLETED.value, 0)
        failed = by_status.get(TransactionStatus.FAILED.value, 0)
        total = sum(by_status.values())
        success_rate = (completed * 200 + total) // (total * 2) if total else 100

        issues = []
        if overdue:
            issues.append(f"{overdue} milestones are overdue for auto-approval")
        if len(critical) > CRITICAL_ALERT_COUNT:
            issues.append(f"{len(critical)} milestones are critically close to auto-approval")
        if success_rate < MIN_RELEASE_SUCCESS_RATE:
            issues.append(
                f"Escrow success rate is {success_rate}% "
                f"(below {MIN_RELEASE_SUCCESS_RATE}% threshold)"
            )
        if failed:
            issues.append(f"{failed} failed escrow transactions in the last 7 days")

        if not issues:
            overall = "healthy"
        elif len(issues) <= 2:
            overall = "warning"
        else:
            overall = "critical"

        health = AutoApprovalHealth(
            generated_at=now,
            overall_health=overall,
            health_issues=tuple(issues),
            pending_milestones=len(pending),
            urgent_milestones=len(urgent),
            critical_milestones=len(critical),
            overdue_milestones=overdue,
            auto_approvals_last_24h=auto_approved,
            releases_completed=completed,
            releases_failed=failed,
            releases_pending=by_status.get(TransactionStatus.PENDING.value, 0),
            release_success_rate=success_rate,
            upcoming_deadlines=tuple(
                UpcomingDeadline(
                    milestone_id=m.id,
                    order_id=m.order_id,
                    release_stage=EscrowStage(m.release_stage),
                    deadline=m.auto_approval_deadline,
                    hours_remaining=int((m.auto_approval_deadline - now).total_seconds() // 3600),
                )
                for m in pending[:UPCOMING_DEADLINE_LIMIT]
            ),
        )
        if overall != "healthy":
            logger.warning(
                "auto_approval_unhealthy",
                extra={"overall_health": overall, "health_issues": list(issues)},
            )
        return health
