"""
Module: escrow_kernel.models.milestone
Responsibility: ORM persistence for milestones and their approval records.

Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - A milestone leaves PENDING exactly once.  The service changes status
      with ``UPDATE ... WHERE approval_status = 'PENDING'``; the ORM listener
      rejects any later mutation of a terminal milestone.
    - At most one PENDING milestone per (order, release_stage)
      (partial unique index).
    - One MilestoneApprovalModel per milestone (UNIQUE milestone_id); the
      record is append-only.

Failure modes:
    - IntegrityError on a second pending milestone for the same tranche.
    - IntegrityError on a second approval record for the same milestone.
    - ImmutabilityViolationError on UPDATE/DELETE of an approval record or
      of a terminal milestone.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, TrackedBase, UUIDString
from escrow_kernel.domain.dtos import MilestoneSnapshot
from escrow_kernel.domain.lifecycle import (
    ApprovalAction,
    EscrowStage,
    MilestoneStatus,
)

_PENDING_ONLY = text("approval_status = 'PENDING'")


class MilestoneModel(TrackedBase):
    """Tailor-submitted checkpoint whose approval releases a tranche."""

    __tablename__ = "milestones"

    __table_args__ = (
        CheckConstraint(
            "approval_status IN ('PENDING', 'APPROVED', 'REJECTED', 'AUTO_APPROVED')",
            name="ck_milestones_valid_status",
        ),
        CheckConstraint(
            "release_stage IN ('FITTING', 'FINAL')",
            name="ck_milestones_valid_release_stage",
        ),
        # Overdue scan for the auto-approval batch
        Index(
            "ix_milestones_status_deadline",
            "approval_status", "auto_approval_deadline",
        ),
        Index(
            "ux_milestones_pending_per_stage",
            "order_id", "release_stage",
            unique=True,
            postgresql_where=_PENDING_ONLY,
            sqlite_where=_PENDING_ONLY,
        ),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False,
    )
    release_stage: Mapped[str] = mapped_column(String(20), nullable=False)
    approval_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MilestoneStatus.PENDING.value,
    )
    submitted_by: Mapped[UUID] = mapped_column(nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)
    auto_approval_deadline: Mapped[datetime] = mapped_column(nullable=False)
    customer_reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    dispute_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )

    def __repr__(self) -> str:
        return (
            f"<MilestoneModel {self.id} order={self.order_id} "
            f"{self.release_stage} status={self.approval_status}>"
        )

    def to_snapshot(self) -> MilestoneSnapshot:
        return MilestoneSnapshot(
            milestone_id=self.id,
            order_id=self.order_id,
            release_stage=EscrowStage(self.release_stage),
            approval_status=MilestoneStatus(self.approval_status),
            auto_approval_deadline=self.auto_approval_deadline,
            submitted_at=self.submitted_at,
            customer_reviewed_at=self.customer_reviewed_at,
            rejection_reason=self.rejection_reason,
            dispute_eligible=self.dispute_eligible,
        )


class MilestoneApprovalModel(Base):
    """Append-only record of the single decision taken on a milestone."""

    __tablename__ = "milestone_approvals"

    __table_args__ = (
        UniqueConstraint("milestone_id", name="uq_milestone_approvals_milestone"),
        CheckConstraint(
            "action IN ('APPROVED', 'REJECTED', 'AUTO_APPROVED')",
            name="ck_milestone_approvals_valid_action",
        ),
        Index("ix_milestone_approvals_order", "order_id"),
    )

    milestone_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("milestones.id"), nullable=False,
    )
    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False,
    )
    actor_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[str | None] = mapped_column(String(500), nullable=True)
    reviewed_at: Mapped[datetime] = mapped_column(nullable=False)

    @property
    def approval_action(self) -> ApprovalAction:
        return ApprovalAction(self.action)
