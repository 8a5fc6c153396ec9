"""Escrow breakdown preview."""

from fastapi import APIRouter, Query, Request

from escrow_api.schemas import BreakdownResponse

router = APIRouter(prefix="/escrow", tags=["Escrow"])


@router.get("/breakdown", response_model=BreakdownResponse)
def get_breakdown(request: Request, total_amount: str = Query(alias="totalAmount")):
    """
    Split a prospective order total into its three tranches. No I/O.

    Commission and the provider fee are estimates on the full total; the
    commission actually recorded is computed per released tranche.
    """
    calculator = request.app.state.calculator
    commission = request.app.state.commission
    breakdown = calculator.breakdown(total_amount)
    split = commission.calculate(breakdown.total_amount)
    return BreakdownResponse(
        deposit_amount=breakdown.deposit_amount,
        fitting_amount=breakdown.fitting_amount,
        final_amount=breakdown.final_amount,
        total_amount=breakdown.total_amount,
        platform_commission=split.commission_amount,
        processing_fee=commission.processing_fee(
            breakdown.total_amount, request.app.state.processing_fee_rate,
        ),
        tailor_earnings=split.net_amount,
        min_amount=calculator.policy.min_amount,
        max_amount=calculator.policy.max_amount,
        payment_methods=list(request.app.state.config.payment_methods),
    )
