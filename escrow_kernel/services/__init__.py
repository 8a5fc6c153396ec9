"""Services for the escrow kernel (write side)."""

from escrow_kernel.services.collaborators import (
    LoggingNotificationSink,
    NotificationSink,
    PaymentGateway,
    PaymentIntent,
    UnconfiguredPaymentGateway,
)
from escrow_kernel.services.dispute_resolution import DisputeResolutionEngine
from escrow_kernel.services.escrow_payment import EscrowPaymentService
from escrow_kernel.services.milestone_approval import MilestoneApprovalEngine
from escrow_kernel.services.orchestrator import EscrowOrchestrator
from escrow_kernel.services.order_lifecycle import OrderPaymentLifecycle
from escrow_kernel.services.reconciliation import EscrowReconciliationService

__all__ = [
    "DisputeResolutionEngine",
    "EscrowOrchestrator",
    "EscrowPaymentService",
    "EscrowReconciliationService",
    "LoggingNotificationSink",
    "MilestoneApprovalEngine",
    "NotificationSink",
    "OrderPaymentLifecycle",
    "PaymentGateway",
    "PaymentIntent",
    "UnconfiguredPaymentGateway",
]
