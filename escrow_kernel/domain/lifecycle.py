"""
escrow_kernel.domain.lifecycle -- Status vocabularies and transition tables.

Pure declarative data, zero I/O.  Every persisted status string in the
system is a value of one of the enums below, and every status change a
service performs is checked against the tables here before the
conditional UPDATE is issued.

Order payment stages
--------------------
::

    DRAFT -> PENDING -> DEPOSIT_PAID -> IN_PRODUCTION -> READY_FOR_FITTING
          -> FITTING_PAID -> COMPLETED

    CANCELLED is reachable from every non-terminal stage.
    COMPLETED and CANCELLED are terminal.  No stage may be skipped.

Escrow release schedule
-----------------------
The escrow stage names the next tranche awaiting release.  Releasing a
tranche is tied to exactly one order transition:

    =========  ===============================  =================
    Tranche    Order transition                 Next escrow stage
    =========  ===============================  =================
    DEPOSIT    DEPOSIT_PAID -> IN_PRODUCTION    FITTING
    FITTING    READY_FOR_FITTING -> FITTING_PAID FINAL
    FINAL      FITTING_PAID -> COMPLETED        RELEASED
    =========  ===============================  =================

Milestones and disputes
-----------------------
A milestone leaves PENDING exactly once.  A dispute moves
OPEN -> IN_PROGRESS -> RESOLVED (or straight from OPEN to RESOLVED);
RESOLVED and CLOSED are terminal and cannot be reopened.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from escrow_kernel.exceptions import InvalidTransitionError


# =========================================================================
# Status vocabularies
# =========================================================================


class OrderStage(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    DEPOSIT_PAID = "DEPOSIT_PAID"
    IN_PRODUCTION = "IN_PRODUCTION"
    READY_FOR_FITTING = "READY_FOR_FITTING"
    FITTING_PAID = "FITTING_PAID"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class EscrowStage(str, Enum):
    DEPOSIT = "DEPOSIT"
    FITTING = "FITTING"
    FINAL = "FINAL"
    RELEASED = "RELEASED"


class MilestoneStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUTO_APPROVED = "AUTO_APPROVED"


class ApprovalAction(str, Enum):
    """Decisions that can be recorded against a PENDING milestone."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUTO_APPROVED = "AUTO_APPROVED"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class ResolutionType(str, Enum):
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    NO_REFUND = "NO_REFUND"
    PARTIAL_COMPLETION = "PARTIAL_COMPLETION"


class EscrowTransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    DEPOSIT_RELEASE = "DEPOSIT_RELEASE"
    FITTING_RELEASE = "FITTING_RELEASE"
    FINAL_RELEASE = "FINAL_RELEASE"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ActorRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    TAILOR = "TAILOR"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


# =========================================================================
# Order stage machine
# =========================================================================

ORDER_STAGE_SEQUENCE: tuple[OrderStage, ...] = (
    OrderStage.DRAFT,
    OrderStage.PENDING,
    OrderStage.DEPOSIT_PAID,
    OrderStage.IN_PRODUCTION,
    OrderStage.READY_FOR_FITTING,
    OrderStage.FITTING_PAID,
    OrderStage.COMPLETED,
)

TERMINAL_ORDER_STAGES: frozenset[OrderStage] = frozenset({
    OrderStage.COMPLETED,
    OrderStage.CANCELLED,
})


def _build_order_transitions() -> dict[OrderStage, frozenset[OrderStage]]:
    table: dict[OrderStage, frozenset[OrderStage]] = {}
    for current, following in zip(ORDER_STAGE_SEQUENCE, ORDER_STAGE_SEQUENCE[1:]):
        table[current] = frozenset({following, OrderStage.CANCELLED})
    for terminal in TERMINAL_ORDER_STAGES:
        table[terminal] = frozenset()
    return table


ORDER_TRANSITIONS: dict[OrderStage, frozenset[OrderStage]] = _build_order_transitions()

# Stages from which escrow payment may be initiated
INITIATABLE_ORDER_STAGES: frozenset[OrderStage] = frozenset({
    OrderStage.DRAFT,
    OrderStage.PENDING,
})


def is_valid_order_transition(from_stage: OrderStage, to_stage: OrderStage) -> bool:
    return to_stage in ORDER_TRANSITIONS.get(OrderStage(from_stage), frozenset())


def validate_order_transition(
    order_id: str,
    from_stage: OrderStage,
    to_stage: OrderStage,
) -> None:
    """Raise InvalidTransitionError unless ``from_stage -> to_stage`` is legal."""
    if not is_valid_order_transition(from_stage, to_stage):
        raise InvalidTransitionError(
            "Order", order_id, OrderStage(from_stage).value, OrderStage(to_stage).value,
        )


# =========================================================================
# Escrow release schedule
# =========================================================================


@dataclass(frozen=True)
class ReleaseStep:
    """The order transition and ledger entry bound to releasing one tranche."""

    escrow_stage: EscrowStage
    from_order_stage: OrderStage
    to_order_stage: OrderStage
    transaction_type: EscrowTransactionType
    next_escrow_stage: EscrowStage


RELEASE_SCHEDULE: dict[EscrowStage, ReleaseStep] = {
    EscrowStage.DEPOSIT: ReleaseStep(
        escrow_stage=EscrowStage.DEPOSIT,
        from_order_stage=OrderStage.DEPOSIT_PAID,
        to_order_stage=OrderStage.IN_PRODUCTION,
        transaction_type=EscrowTransactionType.DEPOSIT_RELEASE,
        next_escrow_stage=EscrowStage.FITTING,
    ),
    EscrowStage.FITTING: ReleaseStep(
        escrow_stage=EscrowStage.FITTING,
        from_order_stage=OrderStage.READY_FOR_FITTING,
        to_order_stage=OrderStage.FITTING_PAID,
        transaction_type=EscrowTransactionType.FITTING_RELEASE,
        next_escrow_stage=EscrowStage.FINAL,
    ),
    EscrowStage.FINAL: ReleaseStep(
        escrow_stage=EscrowStage.FINAL,
        from_order_stage=OrderStage.FITTING_PAID,
        to_order_stage=OrderStage.COMPLETED,
        transaction_type=EscrowTransactionType.FINAL_RELEASE,
        next_escrow_stage=EscrowStage.RELEASED,
    ),
}

# Tranches a customer-facing milestone can release
MILESTONE_RELEASE_STAGES: frozenset[EscrowStage] = frozenset({
    EscrowStage.FITTING,
    EscrowStage.FINAL,
})

# Order stage a milestone may be submitted from, per tranche
MILESTONE_SUBMISSION_STAGES: dict[EscrowStage, OrderStage] = {
    EscrowStage.FITTING: OrderStage.IN_PRODUCTION,
    EscrowStage.FINAL: OrderStage.FITTING_PAID,
}


# =========================================================================
# Milestone and dispute status machines
# =========================================================================

MILESTONE_TRANSITIONS: dict[MilestoneStatus, frozenset[MilestoneStatus]] = {
    MilestoneStatus.PENDING: frozenset({
        MilestoneStatus.APPROVED,
        MilestoneStatus.REJECTED,
        MilestoneStatus.AUTO_APPROVED,
    }),
    MilestoneStatus.APPROVED: frozenset(),
    MilestoneStatus.REJECTED: frozenset(),
    MilestoneStatus.AUTO_APPROVED: frozenset(),
}

TERMINAL_MILESTONE_STATUSES: frozenset[MilestoneStatus] = frozenset({
    MilestoneStatus.APPROVED,
    MilestoneStatus.REJECTED,
    MilestoneStatus.AUTO_APPROVED,
})

# Statuses that release money
RELEASING_MILESTONE_STATUSES: frozenset[MilestoneStatus] = frozenset({
    MilestoneStatus.APPROVED,
    MilestoneStatus.AUTO_APPROVED,
})

DISPUTE_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.OPEN: frozenset({
        DisputeStatus.IN_PROGRESS,
        DisputeStatus.RESOLVED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.IN_PROGRESS: frozenset({
        DisputeStatus.RESOLVED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.RESOLVED: frozenset(),
    DisputeStatus.CLOSED: frozenset(),
}

ACTIVE_DISPUTE_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.IN_PROGRESS,
})

TERMINAL_DISPUTE_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.RESOLVED,
    DisputeStatus.CLOSED,
})

# Resolution types that must carry a positive refund
REFUND_REQUIRED_RESOLUTIONS: frozenset[ResolutionType] = frozenset({
    ResolutionType.FULL_REFUND,
    ResolutionType.PARTIAL_REFUND,
})

# Resolution types that may carry a refund
REFUND_ALLOWED_RESOLUTIONS: frozenset[ResolutionType] = REFUND_REQUIRED_RESOLUTIONS | {
    ResolutionType.PARTIAL_COMPLETION,
}
