"""
Module: escrow_kernel.models.dispute
Responsibility: ORM persistence for disputes, their resolution record and
    their activity log.

Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - At most one OPEN/IN_PROGRESS dispute per order (partial unique index).
    - RESOLVED and CLOSED disputes are immutable (ORM listener).
    - One DisputeResolutionModel per dispute (UNIQUE dispute_id), append-only.
    - DisputeActivityModel rows are append-only.
    - refund_amount is non-negative (CHECK); the upper bound (order total) is
      enforced by DisputeResolutionEngine before any write.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, TrackedBase, UUIDString
from escrow_kernel.domain.dtos import DisputeSnapshot
from escrow_kernel.domain.lifecycle import DisputeStatus, ResolutionType

_ACTIVE_ONLY = text("status IN ('OPEN', 'IN_PROGRESS')")


class DisputeModel(TrackedBase):
    """Customer or tailor complaint about an order, settled by an admin."""

    __tablename__ = "disputes"

    __table_args__ = (
        CheckConstraint(
            "status IN ('OPEN', 'IN_PROGRESS', 'RESOLVED', 'CLOSED')",
            name="ck_disputes_valid_status",
        ),
        CheckConstraint(
            "resolution_type IS NULL OR resolution_type IN "
            "('FULL_REFUND', 'PARTIAL_REFUND', 'NO_REFUND', 'PARTIAL_COMPLETION')",
            name="ck_disputes_valid_resolution_type",
        ),
        CheckConstraint(
            "refund_amount IS NULL OR refund_amount >= 0",
            name="ck_disputes_nonnegative_refund",
        ),
        Index(
            "ux_disputes_active_per_order",
            "order_id",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False,
    )
    opened_by: Mapped[UUID] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DisputeStatus.OPEN.value,
    )
    milestone_id: Mapped[UUID | None] = mapped_column(nullable=True)
    resolution_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    reason_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    assigned_admin_id: Mapped[UUID | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by: Mapped[UUID | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<DisputeModel {self.id} order={self.order_id} status={self.status}>"

    def to_snapshot(self) -> DisputeSnapshot:
        return DisputeSnapshot(
            dispute_id=self.id,
            order_id=self.order_id,
            status=DisputeStatus(self.status),
            opened_by=self.opened_by,
            reason=self.reason,
            resolution_type=(
                ResolutionType(self.resolution_type) if self.resolution_type else None
            ),
            refund_amount=self.refund_amount,
            outcome=self.outcome,
            reason_code=self.reason_code,
            resolved_at=self.resolved_at,
            resolved_by=self.resolved_by,
        )


class DisputeResolutionModel(Base):
    """Append-only record of the admin decision on a dispute."""

    __tablename__ = "dispute_resolutions"

    __table_args__ = (
        UniqueConstraint("dispute_id", name="uq_dispute_resolutions_dispute"),
    )

    dispute_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("disputes.id"), nullable=False,
    )
    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False,
    )
    resolution_type: Mapped[str] = mapped_column(String(30), nullable=False)
    outcome: Mapped[str] = mapped_column(String(1000), nullable=False)
    refund_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    reason_code: Mapped[str] = mapped_column(String(50), nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    resolved_by: Mapped[UUID] = mapped_column(nullable=False)
    resolved_at: Mapped[datetime] = mapped_column(nullable=False)


class DisputeActivityModel(Base):
    """Append-only activity log entry for a dispute."""

    __tablename__ = "dispute_activities"

    __table_args__ = (
        Index("ix_dispute_activities_dispute", "dispute_id", "occurred_at"),
    )

    dispute_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("disputes.id"), nullable=False,
    )
    actor_id: Mapped[UUID] = mapped_column(nullable=False)
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
