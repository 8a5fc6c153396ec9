"""Request and response bodies for the escrow HTTP layer."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from escrow_kernel.services.dispute_resolution import (
    DEFAULT_REASON_CODE,
    MAX_ADMIN_NOTES_LENGTH,
    MAX_OUTCOME_LENGTH,
    MAX_REASON_CODE_LENGTH,
    MIN_OUTCOME_LENGTH,
)
from escrow_kernel.services.milestone_approval import MAX_COMMENT_LENGTH


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestModel(CamelModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# --- Disputes ---


class ResolveDisputeRequest(RequestModel):
    resolution_type: Literal[
        "FULL_REFUND", "PARTIAL_REFUND", "NO_REFUND", "PARTIAL_COMPLETION"
    ]
    outcome: str = Field(min_length=MIN_OUTCOME_LENGTH, max_length=MAX_OUTCOME_LENGTH)
    refund_amount: Decimal | None = None
    reason_code: str = Field(
        default=DEFAULT_REASON_CODE, min_length=1, max_length=MAX_REASON_CODE_LENGTH,
    )
    admin_notes: str | None = Field(default=None, max_length=MAX_ADMIN_NOTES_LENGTH)


class ResolvedDisputeSchema(CamelModel):
    id: UUID
    order_id: UUID
    status: str
    resolution_type: str | None
    outcome: str | None
    refund_amount: Decimal | None
    reason_code: str | None
    resolved_at: datetime | None
    resolved_by: UUID | None


class ResolveDisputeResponse(CamelModel):
    success: bool = True
    dispute: ResolvedDisputeSchema
    order_stage: str
    refund_transaction_id: UUID | None = None
    refund_status: str | None = None
    refund_reference: str | None = None


# --- Escrow breakdown ---


class BreakdownResponse(CamelModel):
    deposit_amount: Decimal
    fitting_amount: Decimal
    final_amount: Decimal
    total_amount: Decimal
    platform_commission: Decimal
    processing_fee: Decimal
    tailor_earnings: Decimal
    min_amount: Decimal
    max_amount: Decimal
    payment_methods: list[str]


# --- Payments ---


class InitiatePaymentRequest(RequestModel):
    order_id: UUID
    total_amount: Decimal
    customer_phone: str = Field(min_length=1)
    payment_method: str = "MTN_MOMO"


class InitiatePaymentResponse(CamelModel):
    payment_intent_id: str
    deposit_amount: Decimal
    payment_url: str | None
    order_status: str


# --- Milestones ---


class MilestoneApprovalRequest(RequestModel):
    action: Literal["APPROVED", "REJECTED"]
    comment: str | None = Field(default=None, max_length=MAX_COMMENT_LENGTH)


class MilestoneApprovalResponse(CamelModel):
    success: bool = True
    approval_status: str
    reviewed_at: datetime
    payment_triggered: bool
    payment_reference: str | None = None


class MilestoneStatusResponse(CamelModel):
    id: UUID
    order_id: UUID
    release_stage: str
    approval_status: str
    submitted_at: datetime
    customer_reviewed_at: datetime | None
    auto_approval_deadline: datetime
    rejection_reason: str | None
    dispute_eligible: bool


# --- Admin ---


class ReconciliationResponse(CamelModel):
    order_id: UUID
    is_valid: bool
    errors: list[str]


class ReconciliationReportResponse(CamelModel):
    generated_at: datetime
    total_escrow_funds: Decimal
    total_released: Decimal
    total_refunded: Decimal
    orders_by_stage: dict[str, int]
    discrepancies: list[ReconciliationResponse]


class UpcomingDeadlineSchema(CamelModel):
    milestone_id: UUID
    order_id: UUID
    release_stage: str
    deadline: datetime
    hours_remaining: int


class MilestoneBacklogSchema(CamelModel):
    total_pending: int
    urgent: int
    critical: int
    overdue: int


class ReleaseOutcomeSchema(CamelModel):
    success_rate: int
    completed_last_7_days: int = Field(serialization_alias="completedLast7Days")
    failed_last_7_days: int = Field(serialization_alias="failedLast7Days")
    pending_transactions: int


class AutoApprovalHealthResponse(CamelModel):
    success: bool = True
    timestamp: datetime
    overall_health: Literal["healthy", "warning", "critical"]
    health_issues: list[str]
    milestones: MilestoneBacklogSchema
    auto_approvals_last_24_hours: int = Field(serialization_alias="autoApprovalsLast24Hours")
    escrow: ReleaseOutcomeSchema
    upcoming_deadlines: list[UpcomingDeadlineSchema]
