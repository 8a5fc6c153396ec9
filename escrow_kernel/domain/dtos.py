"""
escrow_kernel.domain.dtos -- Immutable values crossing the service boundary.

Services return these frozen dataclasses rather than live ORM objects, so
callers can hold them after the session closes.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from escrow_kernel.domain.lifecycle import (
    ActorRole,
    ApprovalAction,
    DisputeStatus,
    EscrowStage,
    EscrowTransactionType,
    MilestoneStatus,
    OrderStage,
    ResolutionType,
    TransactionStatus,
)

SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the upstream auth layer."""

    actor_id: UUID
    role: ActorRole

    @classmethod
    def system(cls) -> Actor:
        return cls(actor_id=SYSTEM_ACTOR_ID, role=ActorRole.SYSTEM)

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: UUID
    customer_id: UUID
    tailor_id: UUID
    total_amount: Decimal
    current_stage: OrderStage
    escrow_stage: EscrowStage
    deposit_amount: Decimal
    fitting_amount: Decimal
    final_amount: Decimal
    escrow_balance: Decimal
    released_amount: Decimal
    refunded_amount: Decimal
    payment_intent_id: str | None = None
    completed_at: datetime | None = None

    def is_participant(self, actor_id: UUID) -> bool:
        return actor_id in (self.customer_id, self.tailor_id)


@dataclass(frozen=True)
class MilestoneSnapshot:
    milestone_id: UUID
    order_id: UUID
    release_stage: EscrowStage
    approval_status: MilestoneStatus
    auto_approval_deadline: datetime
    submitted_at: datetime
    customer_reviewed_at: datetime | None = None
    rejection_reason: str | None = None
    dispute_eligible: bool = False


@dataclass(frozen=True)
class EscrowTransactionRecord:
    transaction_id: UUID
    order_id: UUID
    transaction_type: EscrowTransactionType
    amount: Decimal
    status: TransactionStatus
    from_stage: str | None = None
    to_stage: str | None = None
    milestone_id: UUID | None = None
    dispute_id: UUID | None = None
    external_reference: str | None = None


@dataclass(frozen=True)
class StageRelease:
    """Result of releasing one escrow tranche."""

    order_id: UUID
    escrow_stage: EscrowStage
    amount: Decimal
    from_order_stage: OrderStage
    to_order_stage: OrderStage
    transaction: EscrowTransactionRecord


@dataclass(frozen=True)
class ApprovalOutcome:
    milestone_id: UUID
    order_id: UUID
    action: ApprovalAction
    status: MilestoneStatus
    reviewed_at: datetime
    release: StageRelease | None = None
    payment_reference: str | None = None
    payment_failed: bool = False


@dataclass(frozen=True)
class DisputeSnapshot:
    dispute_id: UUID
    order_id: UUID
    status: DisputeStatus
    opened_by: UUID
    reason: str
    resolution_type: ResolutionType | None = None
    refund_amount: Decimal | None = None
    outcome: str | None = None
    reason_code: str | None = None
    resolved_at: datetime | None = None
    resolved_by: UUID | None = None


@dataclass(frozen=True)
class ResolutionOutcome:
    dispute: DisputeSnapshot
    order_stage: OrderStage
    refund: EscrowTransactionRecord | None = None


@dataclass(frozen=True)
class PaymentInitiation:
    """What the customer needs to complete the deposit with the provider."""

    order_id: UUID
    payment_intent_id: str
    deposit_amount: Decimal
    payment_url: str | None
    order_status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "paymentIntentId": self.payment_intent_id,
            "depositAmount": str(self.deposit_amount),
            "paymentUrl": self.payment_url,
            "orderStatus": self.order_status,
        }


@dataclass(frozen=True)
class ReconciliationResult:
    order_id: UUID
    is_valid: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReconciliationReport:
    """Escrow-wide view for the admin dashboard."""

    generated_at: datetime
    total_escrow_funds: Decimal
    total_released: Decimal
    total_refunded: Decimal
    orders_by_stage: dict[str, int] = field(default_factory=dict)
    discrepancies: tuple[ReconciliationResult, ...] = ()


@dataclass(frozen=True)
class UpcomingDeadline:
    milestone_id: UUID
    order_id: UUID
    release_stage: EscrowStage
    deadline: datetime
    hours_remaining: int


@dataclass(frozen=True)
class AutoApprovalHealth:
    """Auto-approval backlog and payout outcomes for the admin dashboard."""

    generated_at: datetime
    overall_health: str
    health_issues: tuple[str, ...]
    pending_milestones: int
    urgent_milestones: int
    critical_milestones: int
    overdue_milestones: int
    auto_approvals_last_24h: int
    releases_completed: int
    releases_failed: int
    releases_pending: int
    release_success_rate: int
    upcoming_deadlines: tuple[UpcomingDeadline, ...] = ()
