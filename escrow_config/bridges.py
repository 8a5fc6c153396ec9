"""
Bridges from EscrowConfig to kernel inputs.

The kernel never imports ``escrow_config``.  Callers that hold a parsed
config use these helpers to build the kernel's policy objects and the
per-session EscrowOrchestrator.
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal

from sqlalchemy.orm import Session

from escrow_config.schema import EscrowConfig
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.escrow import EscrowPolicy
from escrow_kernel.services.collaborators import NotificationSink, PaymentGateway
from escrow_kernel.services.orchestrator import EscrowOrchestrator


def escrow_policy_from_config(config: EscrowConfig) -> EscrowPolicy:
    """Build the kernel EscrowPolicy; raises ValueError on bad rates or bounds."""
    return EscrowPolicy(
        deposit_rate=Decimal(config.escrow.deposit_rate),
        fitting_rate=Decimal(config.escrow.fitting_rate),
        min_amount=Decimal(config.escrow.min_amount),
        max_amount=Decimal(config.escrow.max_amount),
    )


def commission_rate_from_config(config: EscrowConfig) -> Decimal:
    return Decimal(config.commission.rate)


def processing_fee_rate_from_config(config: EscrowConfig) -> Decimal:
    return Decimal(config.commission.processing_fee_rate)


def orchestrator_factory(
    config: EscrowConfig,
    gateway: PaymentGateway,
    notifier: NotificationSink,
    clock: Clock | None = None,
) -> Callable[[Session], EscrowOrchestrator]:
    """Return a callable building a configured EscrowOrchestrator per session."""
    policy = escrow_policy_from_config(config)
    commission_rate = commission_rate_from_config(config)

    def build(session: Session) -> EscrowOrchestrator:
        return EscrowOrchestrator(
            session,
            gateway,
            notifier,
            clock=clock,
            escrow_policy=policy,
            commission_rate=commission_rate,
            approval_window_hours=config.auto_approval.window_hours,
            payment_methods=config.payment_methods,
        )

    return build
