"""
Module: escrow_kernel.models.order
Responsibility: ORM persistence for orders and their escrow position.

Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - current_stage / escrow_stage restricted to the lifecycle vocabularies
      by CHECK constraints.
    - Stage columns are only ever changed by OrderPaymentLifecycle through a
      conditional UPDATE keyed on the expected stage.
    - escrow_balance == total_amount - released_amount - refunded_amount
      (floored at zero; verified by reconciliation, not by the database).
    - Orders are never deleted (db/immutability.py).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase
from escrow_kernel.db.types import ZERO
from escrow_kernel.domain.dtos import OrderSnapshot
from escrow_kernel.domain.escrow import EscrowBreakdown
from escrow_kernel.domain.lifecycle import EscrowStage, OrderStage


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


class OrderModel(TrackedBase):
    """Order with its escrow split and running escrow balance."""

    __tablename__ = "orders"

    __table_args__ = (
        CheckConstraint(
            _in_clause("current_stage", OrderStage),
            name="ck_orders_valid_stage",
        ),
        CheckConstraint(
            _in_clause("escrow_stage", EscrowStage),
            name="ck_orders_valid_escrow_stage",
        ),
        CheckConstraint("total_amount > 0", name="ck_orders_positive_total"),
        CheckConstraint("escrow_balance >= 0", name="ck_orders_nonnegative_balance"),
        Index("ix_orders_customer", "customer_id"),
        Index("ix_orders_tailor", "tailor_id"),
        Index("ix_orders_stage", "current_stage"),
    )

    customer_id: Mapped[UUID] = mapped_column(nullable=False)
    tailor_id: Mapped[UUID] = mapped_column(nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    current_stage: Mapped[str] = mapped_column(
        String(30), nullable=False, default=OrderStage.DRAFT.value,
    )
    escrow_stage: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EscrowStage.DEPOSIT.value,
    )
    deposit_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    fitting_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    final_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    escrow_balance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    released_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    refunded_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    customer_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<OrderModel {self.id} stage={self.current_stage} "
            f"escrow={self.escrow_stage} balance={self.escrow_balance}>"
        )

    @property
    def breakdown(self) -> EscrowBreakdown:
        return EscrowBreakdown(
            deposit_amount=self.deposit_amount,
            fitting_amount=self.fitting_amount,
            final_amount=self.final_amount,
            total_amount=self.total_amount,
        )

    def to_snapshot(self) -> OrderSnapshot:
        return OrderSnapshot(
            order_id=self.id,
            customer_id=self.customer_id,
            tailor_id=self.tailor_id,
            total_amount=self.total_amount,
            current_stage=OrderStage(self.current_stage),
            escrow_stage=EscrowStage(self.escrow_stage),
            deposit_amount=self.deposit_amount,
            fitting_amount=self.fitting_amount,
            final_amount=self.final_amount,
            escrow_balance=self.escrow_balance,
            released_amount=self.released_amount,
            refunded_amount=self.refunded_amount,
            payment_intent_id=self.payment_intent_id,
            completed_at=self.completed_at,
        )
