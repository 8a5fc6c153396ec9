"""Pure batch result types."""

from escrow_batch.domain.types import (
    AutoApprovalItemResult,
    AutoApprovalItemStatus,
    AutoApprovalSummary,
)

__all__ = [
    "AutoApprovalItemResult",
    "AutoApprovalItemStatus",
    "AutoApprovalSummary",
]
