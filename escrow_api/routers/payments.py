"""Deposit initiation."""

from fastapi import APIRouter, Depends

from escrow_kernel.domain.dtos import Actor
from escrow_kernel.logging_config import LogContext

from escrow_api.dependencies import UnitOfWork, get_actor, get_unit_of_work
from escrow_api.schemas import InitiatePaymentRequest, InitiatePaymentResponse

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/escrow/initiate", response_model=InitiatePaymentResponse)
def initiate_escrow_payment(
    body: InitiatePaymentRequest,
    actor: Actor = Depends(get_actor),
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
):
    with LogContext.bind(actor_id=str(actor.actor_id), order_id=str(body.order_id)):
        with unit_of_work() as escrow:
            initiation = escrow.payments.initiate_payment(
                body.order_id,
                actor,
                body.total_amount,
                body.customer_phone,
                body.payment_method,
            )

    return InitiatePaymentResponse(
        payment_intent_id=initiation.payment_intent_id,
        deposit_amount=initiation.deposit_amount,
        payment_url=initiation.payment_url,
        order_status=initiation.order_status,
    )
