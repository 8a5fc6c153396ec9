"""
escrow_batch.domain.types -- Frozen result types for the auto-approval batch.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID


class AutoApprovalItemStatus(str, Enum):
    """Outcome of one milestone within a batch."""

    APPROVED = "approved"  # Auto-approval committed
    SKIPPED = "skipped"  # No longer PENDING, or order under dispute
    FAILED = "failed"  # Approval rolled back


@dataclass(frozen=True)
class AutoApprovalItemResult:
    """Result of processing a single overdue milestone.

    ``payment_error`` is set when the approval committed but the
    disbursement failed; the item still counts as approved.
    """

    milestone_id: UUID
    status: AutoApprovalItemStatus
    order_id: UUID | None = None
    error_code: str | None = None
    error_message: str | None = None
    payment_reference: str | None = None
    payment_error: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class AutoApprovalSummary:
    """Aggregate of one batch run, as reported to the cron trigger."""

    processed: int
    auto_approved: int
    failed: int
    skipped: int = 0
    disbursement_failures: int = 0
    errors: tuple[dict[str, str], ...] = ()
    approved_milestone_ids: tuple[UUID, ...] = ()
    execution_time_ms: int = 0
    items: tuple[AutoApprovalItemResult, ...] = ()

    @classmethod
    def from_items(
        cls,
        items: list[AutoApprovalItemResult] | tuple[AutoApprovalItemResult, ...],
        execution_time_ms: int,
    ) -> AutoApprovalSummary:
        approved = [i for i in items if i.status == AutoApprovalItemStatus.APPROVED]
        failed = [i for i in items if i.status == AutoApprovalItemStatus.FAILED]
        return cls(
            processed=len(items),
            auto_approved=len(approved),
            failed=len(failed),
            skipped=sum(1 for i in items if i.status == AutoApprovalItemStatus.SKIPPED),
            disbursement_failures=sum(1 for i in approved if i.payment_error),
            errors=tuple(
                {
                    "milestoneId": str(i.milestone_id),
                    "code": i.error_code or "UNKNOWN",
                    "error": i.error_message or "",
                }
                for i in failed
            ),
            approved_milestone_ids=tuple(i.milestone_id for i in approved),
            execution_time_ms=execution_time_ms,
            items=tuple(items),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "autoApproved": self.auto_approved,
            "failed": self.failed,
            "skipped": self.skipped,
            "disbursementFailures": self.disbursement_failures,
            "approvedMilestoneIds": [str(m) for m in self.approved_milestone_ids],
            "errors": list(self.errors),
            "executionTimeMs": self.execution_time_ms,
        }
