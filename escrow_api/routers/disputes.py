"""Dispute resolution endpoint (admin only)."""

from uuid import UUID

from fastapi import APIRouter, Depends

from escrow_kernel.domain.dtos import Actor
from escrow_kernel.logging_config import LogContext

from escrow_api.dependencies import UnitOfWork, get_unit_of_work, require_admin
from escrow_api.schemas import (
    ResolveDisputeRequest,
    ResolveDisputeResponse,
    ResolvedDisputeSchema,
)

router = APIRouter(prefix="/disputes", tags=["Disputes"])


@router.post("/{dispute_id}/resolve", response_model=ResolveDisputeResponse)
def resolve_dispute(
    dispute_id: UUID,
    body: ResolveDisputeRequest,
    admin: Actor = Depends(require_admin),
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
):
    """
    Resolve a dispute and record any refund in one transaction.

    The refund is sent to the provider only after that transaction has
    committed; a provider failure leaves the resolution in place and the
    refund marked FAILED.
    """
    with LogContext.bind(actor_id=str(admin.actor_id), dispute_id=str(dispute_id)):
        with unit_of_work() as escrow:
            result = escrow.disputes.resolve(
                dispute_id,
                admin,
                body.resolution_type,
                body.outcome,
                refund_amount=body.refund_amount,
                reason_code=body.reason_code,
                admin_notes=body.admin_notes,
            )

        refund = result.refund
        if refund is not None:
            with unit_of_work() as escrow:
                refund = escrow.payments.settle_refund(refund.transaction_id)

    dispute = result.dispute
    return ResolveDisputeResponse(
        dispute=ResolvedDisputeSchema(
            id=dispute.dispute_id,
            order_id=dispute.order_id,
            status=dispute.status.value,
            resolution_type=dispute.resolution_type.value if dispute.resolution_type else None,
            outcome=dispute.outcome,
            refund_amount=dispute.refund_amount,
            reason_code=dispute.reason_code,
            resolved_at=dispute.resolved_at,
            resolved_by=dispute.resolved_by,
        ),
        order_stage=result.order_stage.value,
        refund_transaction_id=refund.transaction_id if refund else None,
        refund_status=refund.status.value if refund else None,
        refund_reference=refund.external_reference if refund else None,
    )
