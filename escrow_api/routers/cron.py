"""
Auto-approval trigger for an external cron.

``GET`` is the scheduled path; ``POST`` is for manual runs and is refused
in production.  Both require ``Authorization: Bearer <cron secret>``.
With no secret configured every request is rejected.
"""

import hmac

from fastapi import APIRouter, Depends, Header, Request

from escrow_kernel.domain.dtos import SYSTEM_ACTOR_ID
from escrow_kernel.exceptions import AuthenticationRequiredError, ForbiddenError
from escrow_kernel.logging_config import get_logger

router = APIRouter(prefix="/cron", tags=["Cron"])

logger = get_logger("api.cron")

_BEARER_PREFIX = "Bearer "


def verify_cron_secret(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    secret = request.app.state.config.cron_secret
    if not secret:
        logger.error("cron_secret_not_configured")
        raise AuthenticationRequiredError("cron trigger is not configured")
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        raise AuthenticationRequiredError("missing bearer token")
    supplied = authorization[len(_BEARER_PREFIX):].strip()
    if not hmac.compare_digest(supplied.encode(), secret.encode()):
        logger.warning("cron_secret_rejected")
        raise AuthenticationRequiredError("invalid cron secret")


def _run(request: Request) -> dict:
    summary = request.app.state.scheduler.run_batch()
    return summary.to_dict()


@router.get("/auto-approve-milestones", dependencies=[Depends(verify_cron_secret)])
def auto_approve_milestones(request: Request):
    return _run(request)


@router.post("/auto-approve-milestones", dependencies=[Depends(verify_cron_secret)])
def auto_approve_milestones_manual(request: Request):
    if request.app.state.config.is_production:
        raise ForbiddenError(
            str(SYSTEM_ACTOR_ID), "manual auto-approval", "disabled in production",
        )
    logger.info("auto_approval_manual_trigger")
    return _run(request)
