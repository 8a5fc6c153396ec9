"""
escrow_kernel.services.orchestrator -- DI container for the escrow services.

Responsibility:
    Creates every escrow service exactly once per session and wires them
    together.  No service creates another service internally.

Architecture position:
    Top of the kernel service layer.  HTTP dependencies and the batch
    scheduler build one orchestrator per unit of work.

Invariants enforced:
    - Single-instance lifecycle: one OrderPaymentLifecycle shared by every
      service in the same session, so all of them see the same clock and
      calculators.
    - DI transparency: all wiring is visible in ``__init__``.

Usage:
    from escrow_kernel.services.orchestrator import EscrowOrchestrator

    with session_scope() as session:
        escrow = EscrowOrchestrator(session, gateway, notifier, clock=clock)
        escrow.milestones.approve(milestone_id, customer_id, "APPROVED")
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.commission import DEFAULT_COMMISSION_RATE, CommissionCalculator
from escrow_kernel.domain.escrow import EscrowCalculator, EscrowPolicy
from escrow_kernel.services.collaborators import NotificationSink, PaymentGateway
from escrow_kernel.services.dispute_resolution import DisputeResolutionEngine
from escrow_kernel.services.escrow_payment import DEFAULT_PAYMENT_METHODS, EscrowPaymentService
from escrow_kernel.services.milestone_approval import (
    DEFAULT_APPROVAL_WINDOW_HOURS,
    MilestoneApprovalEngine,
)
from escrow_kernel.services.order_lifecycle import OrderPaymentLifecycle
from escrow_kernel.services.reconciliation import EscrowReconciliationService


class EscrowOrchestrator:
    """Central factory for escrow services.

    Contract:
        Receives a Session, the two collaborator ports and optional policy
        parameters.  Exposes every service as a public attribute.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT own the Session lifecycle (no commit/rollback).
    """

    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway,
        notifier: NotificationSink,
        clock: Clock | None = None,
        escrow_policy: EscrowPolicy | None = None,
        commission_rate=DEFAULT_COMMISSION_RATE,
        approval_window_hours: int = DEFAULT_APPROVAL_WINDOW_HOURS,
        payment_methods: Iterable[str] = DEFAULT_PAYMENT_METHODS,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self.gateway = gateway
        self.notifier = notifier

        # Pure calculators
        self.calculator = EscrowCalculator(escrow_policy)
        self.commission = CommissionCalculator(commission_rate)

        # State machine (every other service goes through it)
        self.lifecycle = OrderPaymentLifecycle(
            session, self._clock, self.calculator, self.commission,
        )

        self.payments = EscrowPaymentService(
            session, self.lifecycle, gateway, self._clock, payment_methods,
        )
        self.milestones = MilestoneApprovalEngine(
            session,
            self.lifecycle,
            self.payments,
            notifier,
            self._clock,
            approval_window_hours=approval_window_hours,
        )
        self.disputes = DisputeResolutionEngine(
            session, self.lifecycle, notifier, self._clock, self.commission,
        )
        self.reconciliation = EscrowReconciliationService(
            session, self.lifecycle, self._clock,
        )

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock
