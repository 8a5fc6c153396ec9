"""
Module: escrow_kernel.models.escrow
Responsibility: ORM persistence for the escrow money ledger and the
    commission record written when an order completes.

Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - At most one non-refund transaction of each type per order (partial
      unique index): a tranche can never be released twice.
    - amount / transaction_type / order_id are frozen once written; only the
      settlement fields (status, external_reference, settled_at, notes) may
      change, and only away from PENDING.
    - One commission record per order (UNIQUE order_id), append-only.
    - commission_amount + net_amount == gross_amount (CHECK).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UUIDString
from escrow_kernel.domain.commission import CommissionCalculation
from escrow_kernel.domain.dtos import EscrowTransactionRecord
from escrow_kernel.domain.lifecycle import EscrowTransactionType, TransactionStatus

_NON_REFUND = text("transaction_type <> 'REFUND'")


class EscrowTransactionModel(Base):
    """One movement of money into or out of an order's escrow."""

    __tablename__ = "escrow_transactions"

    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('DEPOSIT', 'DEPOSIT_RELEASE', "
            "'FITTING_RELEASE', 'FINAL_RELEASE', 'REFUND')",
            name="ck_escrow_transactions_valid_type",
        ),
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED')",
            name="ck_escrow_transactions_valid_status",
        ),
        CheckConstraint("amount >= 0", name="ck_escrow_transactions_nonnegative"),
        Index(
            "ux_escrow_transactions_once_per_type",
            "order_id", "transaction_type",
            unique=True,
            postgresql_where=_NON_REFUND,
            sqlite_where=_NON_REFUND,
        ),
        Index("ix_escrow_transactions_status", "status", "created_at"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False,
    )
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value,
    )
    milestone_id: Mapped[UUID | None] = mapped_column(nullable=True)
    dispute_id: Mapped[UUID | None] = mapped_column(nullable=True)
    actor_id: Mapped[UUID] = mapped_column(nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    settled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<EscrowTransactionModel {self.transaction_type} {self.amount} "
            f"order={self.order_id} status={self.status}>"
        )

    def to_record(self) -> EscrowTransactionRecord:
        return EscrowTransactionRecord(
            transaction_id=self.id,
            order_id=self.order_id,
            transaction_type=EscrowTransactionType(self.transaction_type),
            amount=self.amount,
            status=TransactionStatus(self.status),
            from_stage=self.from_stage,
            to_stage=self.to_stage,
            milestone_id=self.milestone_id,
            dispute_id=self.dispute_id,
            external_reference=self.external_reference,
        )


class CommissionRecordModel(Base):
    """Commission split attached to a completed order."""

    __tablename__ = "commission_records"

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_commission_records_order"),
        CheckConstraint(
            "commission_amount + net_amount = gross_amount",
            name="ck_commission_records_balanced",
        ),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False,
    )
    gross_amount: Mapped[Decimal] = mapped_column(nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_calculation(self) -> CommissionCalculation:
        return CommissionCalculation(
            gross_amount=self.gross_amount,
            commission_rate=self.commission_rate,
            commission_amount=self.commission_amount,
            net_amount=self.net_amount,
        )
