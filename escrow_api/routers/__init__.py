"""HTTP routers, one per resource."""

from escrow_api.routers import admin, cron, disputes, escrow, milestones, payments

ALL_ROUTERS = (
    disputes.router,
    escrow.router,
    payments.router,
    milestones.router,
    cron.router,
    admin.router,
    admin.health_router,
)

__all__ = ["ALL_ROUTERS"]
