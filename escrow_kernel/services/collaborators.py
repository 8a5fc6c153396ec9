"""
escrow_kernel.services.collaborators -- Ports to the payment provider and
the notification system.

The kernel never talks to a provider SDK directly.  It calls the two
Protocols below; adapters live outside the kernel.  Any exception an
adapter raises is translated at the call site: payment failures become
PaymentServiceError, notification failures are logged and dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Protocol
from uuid import UUID

from escrow_kernel.exceptions import NotificationServiceError, PaymentServiceError
from escrow_kernel.logging_config import get_logger

logger = get_logger("services.collaborators")


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    payment_url: str | None = None


class PaymentGateway(Protocol):
    """Mobile-money provider operations used by the escrow flows."""

    def initiate_deposit(
        self,
        *,
        order_id: UUID,
        amount: Decimal,
        customer_phone: str,
        payment_method: str,
    ) -> PaymentIntent: ...

    def disburse(
        self,
        *,
        order_id: UUID,
        tailor_id: UUID,
        amount: Decimal,
        idempotency_key: str,
    ) -> str:
        """Pay ``amount`` out to the tailor; returns the provider reference."""
        ...

    def refund(
        self,
        *,
        order_id: UUID,
        customer_id: UUID,
        amount: Decimal,
        idempotency_key: str,
    ) -> str: ...


class NotificationSink(Protocol):
    def notify(
        self,
        *,
        recipient_id: UUID,
        event_type: str,
        payload: dict[str, Any],
    ) -> None: ...


class UnconfiguredPaymentGateway:
    """Gateway used when no provider adapter is wired in. Every call fails."""

    def _fail(self, operation: str):
        raise PaymentServiceError(operation, "no payment provider configured")

    def initiate_deposit(self, **kwargs) -> PaymentIntent:
        self._fail("initiate_deposit")

    def disburse(self, **kwargs) -> str:
        self._fail("disburse")

    def refund(self, **kwargs) -> str:
        self._fail("refund")


class LoggingNotificationSink:
    """Records notifications in the structured log instead of sending them."""

    def notify(
        self,
        *,
        recipient_id: UUID,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        logger.info(
            "notification_queued",
            extra={
                "recipient_id": str(recipient_id),
                "event_type": event_type,
                "payload": payload,
            },
        )


def notify_best_effort(
    sink: NotificationSink,
    recipients: Iterable[UUID],
    event_type: str,
    payload: dict[str, Any],
) -> int:
    """
    Deliver one notification per recipient, never raising.

    Returns the number of recipients that failed.
    """
    failures = 0
    for recipient_id in recipients:
        try:
            sink.notify(
                recipient_id=recipient_id,
                event_type=event_type,
                payload=payload,
            )
        except Exception as exc:
            failures += 1
            error = exc if isinstance(exc, NotificationServiceError) else (
                NotificationServiceError("notify", str(exc))
            )
            logger.warning(
                "notification_failed",
                extra={
                    "recipient_id": str(recipient_id),
                    "event_type": event_type,
                    "error_code": error.code,
                    "error": str(error),
                },
                exc_info=True,
            )
    return failures
