"""
Pure domain layer.

Status vocabularies, transition tables, money arithmetic and the frozen
values services return.  NO dependencies on the ORM, the database or I/O.
"""

from escrow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from escrow_kernel.domain.commission import (
    AdjustmentType,
    CommissionAdjustment,
    CommissionCalculation,
    CommissionCalculator,
)
from escrow_kernel.domain.dtos import (
    Actor,
    ApprovalOutcome,
    AutoApprovalHealth,
    DisputeSnapshot,
    EscrowTransactionRecord,
    MilestoneSnapshot,
    OrderSnapshot,
    PaymentInitiation,
    ReconciliationReport,
    ReconciliationResult,
    ResolutionOutcome,
    StageRelease,
    UpcomingDeadline,
)
from escrow_kernel.domain.escrow import EscrowBreakdown, EscrowCalculator, EscrowPolicy
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

__all__ = [
    "Actor",
    "ActorRole",
    "AdjustmentType",
    "ApprovalAction",
    "ApprovalOutcome",
    "AutoApprovalHealth",
    "Clock",
    "CommissionAdjustment",
    "CommissionCalculation",
    "CommissionCalculator",
    "DeterministicClock",
    "DisputeSnapshot",
    "DisputeStatus",
    "EscrowBreakdown",
    "EscrowCalculator",
    "EscrowPolicy",
    "EscrowStage",
    "EscrowTransactionRecord",
    "EscrowTransactionType",
    "MilestoneSnapshot",
    "MilestoneStatus",
    "OrderSnapshot",
    "OrderStage",
    "PaymentInitiation",
    "ReconciliationReport",
    "ReconciliationResult",
    "ResolutionOutcome",
    "ResolutionType",
    "StageRelease",
    "SystemClock",
    "TransactionStatus",
    "UpcomingDeadline",
]
