"""Admin reconciliation and auto-approval health views."""

from uuid import UUID

from fastapi import APIRouter, Depends

from escrow_kernel.domain.dtos import Actor, ReconciliationResult

from escrow_api.dependencies import UnitOfWork, get_unit_of_work, require_admin
from escrow_api.schemas import (
    AutoApprovalHealthResponse,
    MilestoneBacklogSchema,
    ReconciliationReportResponse,
    ReconciliationResponse,
    ReleaseOutcomeSchema,
    UpcomingDeadlineSchema,
)

router = APIRouter(prefix="/admin/escrow", tags=["Admin"])
health_router = APIRouter(prefix="/admin/auto-approval", tags=["Admin"])


def _result_response(result: ReconciliationResult) -> ReconciliationResponse:
    return ReconciliationResponse(
        order_id=result.order_id,
        is_valid=result.is_valid,
        errors=list(result.errors),
    )


@router.get("/reconciliation", response_model=ReconciliationReportResponse)
def reconciliation_report(
    admin: Actor = Depends(require_admin),
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
):
    with unit_of_work() as escrow:
        report = escrow.reconciliation.report()

    return ReconciliationReportResponse(
        generated_at=report.generated_at,
        total_escrow_funds=report.total_escrow_funds,
        total_released=report.total_released,
        total_refunded=report.total_refunded,
        orders_by_stage=dict(report.orders_by_stage),
        discrepancies=[_result_response(r) for r in report.discrepancies],
    )


@router.get("/{order_id}/reconciliation", response_model=ReconciliationResponse)
def reconcile_order(
    order_id: UUID,
    admin: Actor = Depends(require_admin),
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
):
    with unit_of_work() as escrow:
        result = escrow.reconciliation.reconcile_order(order_id)
    return _result_response(result)


@health_router.get("/health", response_model=AutoApprovalHealthResponse)
def auto_approval_health(
    admin: Actor = Depends(require_admin),
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
):
    """Milestone backlog, recent auto-approvals and tranche payout outcomes."""
    with unit_of_work() as escrow:
        health = escrow.reconciliation.auto_approval_health()

    return AutoApprovalHealthResponse(
        timestamp=health.generated_at,
        overall_health=health.overall_health,
        health_issues=list(health.health_issues),
        milestones=MilestoneBacklogSchema(
            total_pending=health.pending_milestones,
            urgent=health.urgent_milestones,
            critical=health.critical_milestones,
            overdue=health.overdue_milestones,
        ),
        auto_approvals_last_24_hours=health.auto_approvals_last_24h,
        escrow=ReleaseOutcomeSchema(
            success_rate=health.release_success_rate,
            completed_last_7_days=health.releases_completed,
            failed_last_7_days=health.releases_failed,
            pending_transactions=health.releases_pending,
        ),
        upcoming_deadlines=[
            UpcomingDeadlineSchema(
                milestone_id=d.milestone_id,
                order_id=d.order_id,
                release_stage=d.release_stage.value,
                deadline=d.deadline,
                hours_remaining=d.hours_remaining,
            )
            for d in health.upcoming_deadlines
        ],
    )
