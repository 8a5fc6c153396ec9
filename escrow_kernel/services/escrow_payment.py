"""
escrow_kernel.services.escrow_payment -- Deposit initiation, payouts and refunds.

Responsibility:
    Validates an escrow payment request, obtains a payment intent from the
    provider, and binds the escrow breakdown to the order.  Also settles
    the ledger entry behind each tranche release once the provider has paid
    the tailor, and behind each dispute refund once the customer has been
    paid back.

Architecture position:
    Kernel > Services.  Talks to the provider only through PaymentGateway.

Failure modes:
    - ForbiddenError if the caller is not a participant of the order.
    - InvalidAmountError if the claimed total differs from the order's.
    - InvalidRequestError for a malformed phone number or payment method.
    - InvalidStateError if the order is past the initiation stages.
    - PaymentServiceError for any provider failure.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_kernel.db.types import CENT, to_money
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import (
    Actor,
    EscrowTransactionRecord,
    OrderSnapshot,
    PaymentInitiation,
    StageRelease,
)
from escrow_kernel.domain.lifecycle import (
    INITIATABLE_ORDER_STAGES,
    EscrowStage,
    EscrowTransactionType,
    TransactionStatus,
)
from escrow_kernel.exceptions import (
    ForbiddenError,
    InvalidAmountError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PaymentServiceError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.escrow import EscrowTransactionModel
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.collaborators import PaymentGateway
from escrow_kernel.services.order_lifecycle import OrderPaymentLifecycle

logger = get_logger("services.escrow_payment")

GHANA_PHONE_PATTERN = re.compile(r"^\+233\d{9}$")

DEFAULT_PAYMENT_METHODS: tuple[str, ...] = (
    "MTN_MOMO",
    "VODAFONE_CASH",
    "AIRTELTIGO_MONEY",
)

# Status reported to the customer once a deposit intent exists
PENDING_DEPOSIT = "PENDING_DEPOSIT"


def release_idempotency_key(order_id: UUID, escrow_stage: EscrowStage) -> str:
    """One key per order tranche; stable across retries of the same release."""
    return f"release:{order_id}:{EscrowStage(escrow_stage).value}"


def refund_idempotency_key(transaction_id: UUID) -> str:
    return f"refund:{transaction_id}"


class EscrowPaymentService(BaseService):
    """Entry point for the customer-facing escrow payment flow."""

    def __init__(
        self,
        session: Session,
        lifecycle: OrderPaymentLifecycle,
        gateway: PaymentGateway,
        clock: Clock | None = None,
        payment_methods: Iterable[str] = DEFAULT_PAYMENT_METHODS,
    ) -> None:
        super().__init__(session, clock)
        self._lifecycle = lifecycle
        self._gateway = gateway
        self._payment_methods = frozenset(payment_methods)

    def initiate_payment(
        self,
        order_id: UUID,
        actor: Actor,
        total_amount: object,
        customer_phone: str,
        payment_method: str,
    ) -> PaymentInitiation:
        """
        Start the escrow deposit for an order.

        The caller must be the order's customer or tailor and the claimed
        total must match the stored total to within one cent.
        """
        order = self._lifecycle.get_order(order_id)
        if not order.is_participant(actor.actor_id):
            raise ForbiddenError(
                str(actor.actor_id), "initiate escrow payment", "not a participant of this order",
            )

        claimed = to_money(total_amount)
        if abs(claimed - order.total_amount) > CENT:
            raise InvalidAmountError(
                total_amount, f"does not match order total {order.total_amount}",
            )
        if not GHANA_PHONE_PATTERN.match(customer_phone or ""):
            raise InvalidRequestError(
                "customerPhone", "must be a Ghana mobile number in the form +233XXXXXXXXX",
            )
        if payment_method not in self._payment_methods:
            raise InvalidRequestError(
                "paymentMethod", f"must be one of {sorted(self._payment_methods)}",
            )
        if order.current_stage not in INITIATABLE_ORDER_STAGES:
            raise InvalidStateError(
                "Order",
                str(order_id),
                order.current_stage.value,
                f"Escrow payment cannot be initiated for order in stage "
                f"{order.current_stage.value}",
            )

        breakdown = self._lifecycle.calculator.breakdown(order.total_amount)
        intent = self._request_intent(order, breakdown.deposit_amount, customer_phone, payment_method)
        self._lifecycle.initiate(
            order_id,
            breakdown,
            payment_intent_id=intent.intent_id,
            customer_phone=customer_phone,
        )

        logger.info(
            "escrow_payment_initiated",
            extra={
                "order_id": str(order_id),
                "actor_id": str(actor.actor_id),
                "payment_method": payment_method,
                "deposit_amount": breakdown.deposit_amount,
                "payment_intent_id": intent.intent_id,
            },
        )
        return PaymentInitiation(
            order_id=order_id,
            payment_intent_id=intent.intent_id,
            deposit_amount=breakdown.deposit_amount,
            payment_url=intent.payment_url,
            order_status=PENDING_DEPOSIT,
        )

    def _request_intent(
        self,
        order: OrderSnapshot,
        deposit_amount: Decimal,
        customer_phone: str,
        payment_method: str,
    ):
        try:
            return self._gateway.initiate_deposit(
                order_id=order.order_id,
                amount=deposit_amount,
                customer_phone=customer_phone,
                payment_method=payment_method,
            )
        except PaymentServiceError:
            raise
        except Exception as exc:
            logger.error(
                "payment_intent_failed",
                extra={"order_id": str(order.order_id), "error": str(exc)},
            )
            raise PaymentServiceError("initiate_deposit", str(exc)) from exc

    def confirm_deposit(
        self,
        order_id: UUID,
        paid_amount: object,
        payment_reference: str,
    ) -> OrderSnapshot:
        """Provider callback: the customer has paid the deposit."""
        return self._lifecycle.confirm_deposit(order_id, paid_amount, payment_reference)

    # -------------------------------------------------------------------------
    # Settlement of releases
    # -------------------------------------------------------------------------

    def disburse(self, release: StageRelease, tailor_id: UUID) -> EscrowTransactionRecord:
        """
        Pay a released tranche out to the tailor and settle its ledger entry.

        The provider idempotency key is derived from the order and the
        tranche, so a retry after a lost commit cannot pay the same tranche
        twice.  Raises PaymentServiceError if the provider refuses; the
        ledger entry is left PENDING for the caller to roll back or mark
        failed.
        """
        transaction_id = release.transaction.transaction_id
        try:
            reference = self._gateway.disburse(
                order_id=release.order_id,
                tailor_id=tailor_id,
                amount=release.amount,
                idempotency_key=release_idempotency_key(release.order_id, release.escrow_stage),
            )
        except PaymentServiceError:
            raise
        except Exception as exc:
            raise PaymentServiceError("disburse", str(exc)) from exc

        transaction = self._load_transaction(transaction_id)
        transaction.status = TransactionStatus.COMPLETED.value
        transaction.external_reference = reference
        transaction.settled_at = self._clock.now()
        self._session.flush()

        logger.info(
            "escrow_disbursed",
            extra={
                "order_id": str(release.order_id),
                "escrow_stage": release.escrow_stage.value,
                "amount": release.amount,
                "payment_reference": reference,
            },
        )
        return transaction.to_record()

    def start_production(self, order_id: UUID, actor: Actor) -> EscrowTransactionRecord:
        """
        Tailor starts work: release the deposit tranche and pay it out.

        The release stands even if the provider refuses the payout; the
        ledger entry is then marked FAILED for out-of-band retry and the
        FAILED record is returned.
        """
        release = self._lifecycle.start_production(order_id, actor)
        tailor_id = self._lifecycle.load_order(order_id).tailor_id
        try:
            return self.disburse(release, tailor_id)
        except PaymentServiceError as exc:
            return self.mark_failed(release.transaction.transaction_id, str(exc))

    def settle_refund(self, transaction_id: UUID) -> EscrowTransactionRecord:
        """
        Return a recorded refund to the customer through the provider.

        Called once the resolution that recorded the refund has committed.
        A provider failure marks the refund FAILED instead of raising.
        """
        transaction = self._load_transaction(transaction_id)
        if transaction.transaction_type != EscrowTransactionType.REFUND.value:
            raise InvalidStateError(
                "EscrowTransaction", str(transaction_id), transaction.transaction_type,
                f"Transaction {transaction_id} is not a refund",
            )
        if transaction.status != TransactionStatus.PENDING.value:
            raise InvalidStateError(
                "EscrowTransaction", str(transaction_id), transaction.status,
                f"Refund {transaction_id} is already {transaction.status}",
            )
        order = self._lifecycle.load_order(transaction.order_id)
        try:
            reference = self._gateway.refund(
                order_id=order.id,
                customer_id=order.customer_id,
                amount=transaction.amount,
                idempotency_key=refund_idempotency_key(transaction_id),
            )
        except Exception as exc:
            return self.mark_failed(transaction_id, str(exc))

        transaction.status = TransactionStatus.COMPLETED.value
        transaction.external_reference = reference
        transaction.settled_at = self._clock.now()
        self._session.flush()

        logger.info(
            "escrow_refunded",
            extra={
                "order_id": str(order.id),
                "dispute_id": str(transaction.dispute_id) if transaction.dispute_id else None,
                "amount": transaction.amount,
                "payment_reference": reference,
            },
        )
        return transaction.to_record()

    def mark_failed(self, transaction_id: UUID, reason: str) -> EscrowTransactionRecord:
        """Record that the provider could not settle a ledger entry."""
        transaction = self._load_transaction(transaction_id)
        transaction.status = TransactionStatus.FAILED.value
        transaction.notes = reason[:500]
        self._session.flush()

        logger.warning(
            "escrow_settlement_failed",
            extra={
                "order_id": str(transaction.order_id),
                "transaction_id": str(transaction_id),
                "transaction_type": transaction.transaction_type,
                "reason": reason,
            },
        )
        return transaction.to_record()

    def _load_transaction(self, transaction_id: UUID) -> EscrowTransactionModel:
        transaction = self._session.get(EscrowTransactionModel, transaction_id)
        if transaction is None:
            raise NotFoundError("EscrowTransaction", str(transaction_id))
        return transaction
