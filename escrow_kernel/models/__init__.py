"""ORM models.  Importing this package registers every table on Base.metadata."""

from escrow_kernel.models.dispute import (
    DisputeActivityModel,
    DisputeModel,
    DisputeResolutionModel,
)
from escrow_kernel.models.escrow import CommissionRecordModel, EscrowTransactionModel
from escrow_kernel.models.milestone import MilestoneApprovalModel, MilestoneModel
from escrow_kernel.models.order import OrderModel

__all__ = [
    "OrderModel",
    "MilestoneModel",
    "MilestoneApprovalModel",
    "DisputeModel",
    "DisputeResolutionModel",
    "DisputeActivityModel",
    "EscrowTransactionModel",
    "CommissionRecordModel",
]
