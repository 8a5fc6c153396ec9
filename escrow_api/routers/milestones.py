"""Customer review of submitted milestones."""

from uuid import UUID

from fastapi import APIRouter, Depends

from escrow_kernel.domain.dtos import Actor
from escrow_kernel.logging_config import LogContext

from escrow_api.dependencies import (
    UnitOfWork,
    get_actor,
    get_unit_of_work,
    limit_milestone_approvals,
)
from escrow_api.schemas import (
    MilestoneApprovalRequest,
    MilestoneApprovalResponse,
    MilestoneStatusResponse,
)

router = APIRouter(prefix="/milestones", tags=["Milestones"])


@router.get("/{milestone_id}/approve", response_model=MilestoneStatusResponse)
def get_approval_status(
    milestone_id: UUID,
    actor: Actor = Depends(get_actor),
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
):
    with unit_of_work() as escrow:
        milestone = escrow.milestones.get_approval_status(milestone_id, actor.actor_id)

    return MilestoneStatusResponse(
        id=milestone.milestone_id,
        order_id=milestone.order_id,
        release_stage=milestone.release_stage.value,
        approval_status=milestone.approval_status.value,
        submitted_at=milestone.submitted_at,
        customer_reviewed_at=milestone.customer_reviewed_at,
        auto_approval_deadline=milestone.auto_approval_deadline,
        rejection_reason=milestone.rejection_reason,
        dispute_eligible=milestone.dispute_eligible,
    )


@router.post("/{milestone_id}/approve", response_model=MilestoneApprovalResponse)
def approve_milestone(
    milestone_id: UUID,
    body: MilestoneApprovalRequest,
    actor: Actor = Depends(limit_milestone_approvals),
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
):
    """
    Approve or reject a milestone.

    An approval disburses the tranche before the transaction commits; if the
    provider fails the approval is rolled back and the caller gets a 502.
    """
    with LogContext.bind(actor_id=str(actor.actor_id)):
        with unit_of_work() as escrow:
            outcome = escrow.milestones.approve(
                milestone_id, actor.actor_id, body.action, body.comment,
            )

    return MilestoneApprovalResponse(
        approval_status=outcome.status.value,
        reviewed_at=outcome.reviewed_at,
        payment_triggered=outcome.release is not None,
        payment_reference=outcome.payment_reference,
    )
