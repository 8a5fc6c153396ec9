"""
escrow_kernel.services.order_lifecycle -- Order payment-stage state machine.

Responsibility:
    Owns every write to an order's stage and escrow columns: creation,
    escrow initiation, deposit confirmation, tranche release, refunds and
    cancellation.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Only transitions present in ORDER_TRANSITIONS are issued.
    - Every stage change is a single conditional UPDATE keyed on the
      expected stage (and, for releases, the expected escrow stage).  Zero
      rows matched means another actor won: StaleStateError.
    - A tranche is released at most once: the CAS guarantees it, and the
      ledger's partial unique index backs it up.
    - escrow_balance never goes negative; released and refunded amounts only
      grow.

Failure modes:
    - OrderNotFoundError for unknown ids.
    - InvalidStateError / InvalidTransitionError for illegal stage changes.
    - StageAlreadyReleasedError when a concurrent actor released the tranche.
    - InvalidAmountError for deposit or refund amounts that do not fit.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from escrow_kernel.db.types import ZERO, is_whole_cents, to_money
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.commission import CommissionCalculator
from escrow_kernel.domain.dtos import (
    Actor,
    EscrowTransactionRecord,
    OrderSnapshot,
    ReconciliationResult,
    StageRelease,
    SYSTEM_ACTOR_ID,
)
from escrow_kernel.domain.escrow import EscrowBreakdown, EscrowCalculator
from escrow_kernel.domain.lifecycle import (
    INITIATABLE_ORDER_STAGES,
    ORDER_STAGE_SEQUENCE,
    RELEASE_SCHEDULE,
    TERMINAL_ORDER_STAGES,
    EscrowStage,
    EscrowTransactionType,
    OrderStage,
    TransactionStatus,
    validate_order_transition,
)
from escrow_kernel.exceptions import (
    ForbiddenError,
    InvalidAmountError,
    InvalidStateError,
    InvalidTransitionError,
    OrderNotFoundError,
    StageAlreadyReleasedError,
    StaleStateError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.escrow import CommissionRecordModel, EscrowTransactionModel
from escrow_kernel.models.order import OrderModel
from escrow_kernel.services.base import BaseService

logger = get_logger("services.order_lifecycle")


def _stage_position(stage: OrderStage) -> int:
    if stage in ORDER_STAGE_SEQUENCE:
        return ORDER_STAGE_SEQUENCE.index(stage)
    return -1


class OrderPaymentLifecycle(BaseService):
    """Legal order-stage and escrow-stage transitions for one session."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        calculator: EscrowCalculator | None = None,
        commission: CommissionCalculator | None = None,
    ) -> None:
        super().__init__(session, clock)
        self._calculator = calculator or EscrowCalculator()
        self._commission = commission or CommissionCalculator()

    @property
    def calculator(self) -> EscrowCalculator:
        return self._calculator

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def load_order(self, order_id: UUID) -> OrderModel:
        """Load the order, refreshing any stale identity-map copy."""
        order = self._session.get(OrderModel, order_id, populate_existing=True)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    def get_order(self, order_id: UUID) -> OrderSnapshot:
        return self.load_order(order_id).to_snapshot()

    # -------------------------------------------------------------------------
    # Creation and initiation
    # -------------------------------------------------------------------------

    def create_order(
        self,
        customer_id: UUID,
        tailor_id: UUID,
        total_amount: object,
        customer_phone: str | None = None,
    ) -> OrderSnapshot:
        """Create a DRAFT order with its escrow split computed up front."""
        breakdown = self._calculator.breakdown(total_amount)
        order = OrderModel(
            customer_id=customer_id,
            tailor_id=tailor_id,
            total_amount=breakdown.total_amount,
            current_stage=OrderStage.DRAFT.value,
            escrow_stage=EscrowStage.DEPOSIT.value,
            deposit_amount=breakdown.deposit_amount,
            fitting_amount=breakdown.fitting_amount,
            final_amount=breakdown.final_amount,
            escrow_balance=breakdown.total_amount,
            released_amount=ZERO,
            refunded_amount=ZERO,
            customer_phone=customer_phone,
        )
        self._session.add(order)
        self._session.flush()

        logger.info(
            "order_created",
            extra={
                "order_id": str(order.id),
                "total_amount": breakdown.total_amount,
            },
        )
        return order.to_snapshot()

    def initiate(
        self,
        order_id: UUID,
        breakdown: EscrowBreakdown,
        *,
        payment_intent_id: str | None = None,
        customer_phone: str | None = None,
    ) -> OrderSnapshot:
        """
        Bind an escrow breakdown to the order and move it to PENDING.

        Legal only from DRAFT or PENDING (re-initiation replaces the
        payment intent).
        """
        order = self.load_order(order_id)
        stage = OrderStage(order.current_stage)
        if stage not in INITIATABLE_ORDER_STAGES:
            raise InvalidStateError(
                "Order",
                str(order_id),
                stage.value,
                f"Escrow payment cannot be initiated for order in stage {stage.value}",
            )
        self._calculator.assert_valid(breakdown)
        if breakdown.total_amount != order.total_amount:
            raise InvalidAmountError(
                breakdown.total_amount,
                f"breakdown total does not match order total {order.total_amount}",
            )

        values: dict[str, object] = {
            "current_stage": OrderStage.PENDING.value,
            "escrow_stage": EscrowStage.DEPOSIT.value,
            "deposit_amount": breakdown.deposit_amount,
            "fitting_amount": breakdown.fitting_amount,
            "final_amount": breakdown.final_amount,
        }
        if payment_intent_id is not None:
            values["payment_intent_id"] = payment_intent_id
        if customer_phone is not None:
            values["customer_phone"] = customer_phone

        if stage != OrderStage.PENDING:
            validate_order_transition(str(order_id), stage, OrderStage.PENDING)
        self._compare_and_swap(order_id, stage, **values)

        logger.info(
            "escrow_initiated",
            extra={
                "order_id": str(order_id),
                "from_stage": stage.value,
                "deposit_amount": breakdown.deposit_amount,
                "payment_intent_id": payment_intent_id,
            },
        )
        return self.get_order(order_id)

    # -------------------------------------------------------------------------
    # Generic advance
    # -------------------------------------------------------------------------

    def advance(
        self,
        order_id: UUID,
        expected: OrderStage,
        target: OrderStage,
        **values: object,
    ) -> OrderSnapshot:
        """
        Move the order from ``expected`` to ``target`` in one conditional UPDATE.

        Raises:
            InvalidTransitionError: ``expected -> target`` is not in the table.
            StaleStateError: the order is no longer at ``expected``.
        """
        expected = OrderStage(expected)
        target = OrderStage(target)
        validate_order_transition(str(order_id), expected, target)
        self._compare_and_swap(order_id, expected, current_stage=target.value, **values)

        logger.info(
            "order_stage_advanced",
            extra={
                "order_id": str(order_id),
                "from_stage": expected.value,
                "to_stage": target.value,
            },
        )
        return self.get_order(order_id)

    def _compare_and_swap(
        self,
        order_id: UUID,
        expected_stage: OrderStage,
        expected_escrow_stage: EscrowStage | None = None,
        **values: object,
    ) -> None:
        stmt = update(OrderModel).where(
            OrderModel.id == order_id,
            OrderModel.current_stage == expected_stage.value,
        )
        if expected_escrow_stage is not None:
            stmt = stmt.where(OrderModel.escrow_stage == expected_escrow_stage.value)
        result = self._session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if self._session.get(OrderModel, order_id) is None:
                raise OrderNotFoundError(str(order_id))
            raise StaleStateError("Order", str(order_id), expected_stage.value)

    # -------------------------------------------------------------------------
    # Deposit
    # -------------------------------------------------------------------------

    def confirm_deposit(
        self,
        order_id: UUID,
        paid_amount: object,
        payment_reference: str,
    ) -> OrderSnapshot:
        """
        Record the provider's confirmation of the deposit: PENDING -> DEPOSIT_PAID.

        A repeated confirmation carrying the same reference is a no-op.
        """
        order = self.load_order(order_id)
        existing = self._session.execute(
            select(EscrowTransactionModel).where(
                EscrowTransactionModel.order_id == order_id,
                EscrowTransactionModel.transaction_type
                == EscrowTransactionType.DEPOSIT.value,
            )
        ).scalar_one_or_none()
        if existing is not None:
            if existing.external_reference == payment_reference:
                logger.info(
                    "deposit_already_confirmed",
                    extra={"order_id": str(order_id), "payment_reference": payment_reference},
                )
                return order.to_snapshot()
            raise InvalidStateError(
                "Order",
                str(order_id),
                order.current_stage,
                f"Deposit for order {order_id} already confirmed "
                f"with reference {existing.external_reference}",
            )

        stage = OrderStage(order.current_stage)
        if stage != OrderStage.PENDING:
            raise InvalidStateError(
                "Order",
                str(order_id),
                stage.value,
                f"Deposit can only be confirmed for PENDING orders, not {stage.value}",
            )
        amount = to_money(paid_amount)
        if amount != order.deposit_amount:
            raise InvalidAmountError(
                paid_amount, f"deposit of {order.deposit_amount} expected",
            )

        snapshot = self.advance(order_id, OrderStage.PENDING, OrderStage.DEPOSIT_PAID)
        now = self._clock.now()
        self._session.add(
            EscrowTransactionModel(
                order_id=order_id,
                transaction_type=EscrowTransactionType.DEPOSIT.value,
                amount=amount,
                from_stage=OrderStage.PENDING.value,
                to_stage=OrderStage.DEPOSIT_PAID.value,
                status=TransactionStatus.COMPLETED.value,
                actor_id=SYSTEM_ACTOR_ID,
                external_reference=payment_reference,
                created_at=now,
                settled_at=now,
            )
        )
        self._session.flush()

        logger.info(
            "deposit_confirmed",
            extra={
                "order_id": str(order_id),
                "amount": amount,
                "payment_reference": payment_reference,
            },
        )
        return snapshot

    # -------------------------------------------------------------------------
    # Tranche release
    # -------------------------------------------------------------------------

    def release_stage(
        self,
        order_id: UUID,
        escrow_stage: EscrowStage,
        *,
        actor_id: UUID,
        milestone_id: UUID | None = None,
    ) -> StageRelease:
        """
        Release one escrow tranche and advance the order accordingly.

        The order must sit at the tranche's source stage with the matching
        escrow stage.  A lost compare-and-swap is retried once after a
        re-read; a second loss, or a re-read showing the tranche already
        released, raises StageAlreadyReleasedError.
        """
        stage = EscrowStage(escrow_stage)
        step = RELEASE_SCHEDULE.get(stage)
        if step is None:
            raise InvalidStateError(
                "Order", str(order_id), stage.value,
                f"Escrow stage {stage.value} has no tranche to release",
            )

        for attempt in (1, 2):
            order = self.load_order(order_id)
            self._ensure_releasable(order, step)
            amount = order.breakdown.amount_for(stage)
            draw = min(amount, order.escrow_balance)
            now = self._clock.now()
            values: dict[str, object] = {
                "current_stage": step.to_order_stage.value,
                "escrow_stage": step.next_escrow_stage.value,
                "escrow_balance": OrderModel.escrow_balance - draw,
                "released_amount": OrderModel.released_amount + amount,
            }
            if step.to_order_stage == OrderStage.COMPLETED:
                values["completed_at"] = now
            try:
                self._compare_and_swap(order_id, step.from_order_stage, stage, **values)
                break
            except StaleStateError:
                if attempt == 2:
                    current = self.load_order(order_id)
                    raise StageAlreadyReleasedError(
                        str(order_id), stage.value, current.current_stage,
                    ) from None
                logger.warning(
                    "escrow_release_retry",
                    extra={"order_id": str(order_id), "escrow_stage": stage.value},
                )

        transaction = EscrowTransactionModel(
            order_id=order_id,
            transaction_type=step.transaction_type.value,
            amount=amount,
            from_stage=step.from_order_stage.value,
            to_stage=step.to_order_stage.value,
            status=TransactionStatus.PENDING.value,
            milestone_id=milestone_id,
            actor_id=actor_id,
            created_at=now,
        )
        self._session.add(transaction)
        self._session.flush()

        if step.to_order_stage == OrderStage.COMPLETED:
            self._record_commission(order_id)

        logger.info(
            "escrow_stage_released",
            extra={
                "order_id": str(order_id),
                "escrow_stage": stage.value,
                "amount": amount,
                "from_stage": step.from_order_stage.value,
                "to_stage": step.to_order_stage.value,
                "milestone_id": str(milestone_id) if milestone_id else None,
            },
        )
        return StageRelease(
            order_id=order_id,
            escrow_stage=stage,
            amount=amount,
            from_order_stage=step.from_order_stage,
            to_order_stage=step.to_order_stage,
            transaction=transaction.to_record(),
        )

    def _ensure_releasable(self, order: OrderModel, step) -> None:
        current = OrderStage(order.current_stage)
        if current == step.from_order_stage and order.escrow_stage == step.escrow_stage.value:
            return
        if current == OrderStage.CANCELLED:
            raise InvalidStateError(
                "Order", str(order.id), current.value,
                "Cancelled orders release no escrow",
            )
        if _stage_position(current) >= _stage_position(step.to_order_stage):
            raise StageAlreadyReleasedError(
                str(order.id), step.escrow_stage.value, current.value,
            )
        raise InvalidTransitionError(
            "Order", str(order.id), current.value, step.to_order_stage.value,
        )

    def _record_commission(self, order_id: UUID) -> None:
        order = self.load_order(order_id)
        gross = order.total_amount - order.refunded_amount
        calculation = self._commission.calculate(max(gross, ZERO))
        self._session.add(
            CommissionRecordModel(
                order_id=order_id,
                gross_amount=calculation.gross_amount,
                commission_rate=calculation.commission_rate,
                commission_amount=calculation.commission_amount,
                net_amount=calculation.net_amount,
                recorded_at=self._clock.now(),
            )
        )
        self._session.flush()
        logger.info(
            "commission_recorded",
            extra={
                "order_id": str(order_id),
                "gross_amount": calculation.gross_amount,
                "commission_amount": calculation.commission_amount,
            },
        )

    # -------------------------------------------------------------------------
    # Tailor / admin driven transitions
    # -------------------------------------------------------------------------

    def start_production(self, order_id: UUID, actor: Actor) -> StageRelease:
        """Tailor starts work: the deposit tranche is released to them."""
        order = self.load_order(order_id)
        if not actor.is_admin and actor.actor_id != order.tailor_id:
            raise ForbiddenError(
                str(actor.actor_id), "start production", "only the order's tailor",
            )
        return self.release_stage(order_id, EscrowStage.DEPOSIT, actor_id=actor.actor_id)

    def mark_ready_for_fitting(self, order_id: UUID) -> OrderSnapshot:
        return self.advance(order_id, OrderStage.IN_PRODUCTION, OrderStage.READY_FOR_FITTING)

    def cancel(self, order_id: UUID, actor_id: UUID, reason: str | None = None) -> OrderSnapshot:
        """Cancel from whatever non-terminal stage the order is in."""
        for attempt in (1, 2):
            order = self.load_order(order_id)
            current = OrderStage(order.current_stage)
            if current in TERMINAL_ORDER_STAGES:
                raise InvalidStateError(
                    "Order", str(order_id), current.value,
                    f"Order {order_id} is already {current.value}",
                )
            try:
                snapshot = self.advance(order_id, current, OrderStage.CANCELLED)
                break
            except StaleStateError:
                if attempt == 2:
                    raise
        logger.info(
            "order_cancelled",
            extra={
                "order_id": str(order_id),
                "from_stage": current.value,
                "actor_id": str(actor_id),
                "reason": reason,
            },
        )
        return snapshot

    # -------------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------------

    def apply_refund(
        self,
        order_id: UUID,
        amount: object,
        *,
        actor_id: UUID,
        dispute_id: UUID | None = None,
    ) -> EscrowTransactionRecord:
        """
        Record a refund owed to the customer.

        The refund draws on the remaining escrow balance; any part beyond it
        is still recorded as refunded so the ledger shows the full amount
        owed.  The transaction stays PENDING until the provider settles it.
        """
        refund = to_money(amount)
        order = self.load_order(order_id)
        if refund <= 0:
            raise InvalidAmountError(amount, "refund must be positive")
        if order.refunded_amount + refund > order.total_amount:
            raise InvalidAmountError(
                amount,
                f"refunds would exceed order total {order.total_amount}",
            )
        if not is_whole_cents(refund):
            raise InvalidAmountError(amount, "refund has sub-cent precision")
        draw = min(refund, order.escrow_balance)
        result = self._session.execute(
            update(OrderModel)
            .where(
                OrderModel.id == order_id,
                OrderModel.escrow_balance == order.escrow_balance,
                OrderModel.refunded_amount == order.refunded_amount,
            )
            .values(
                escrow_balance=order.escrow_balance - draw,
                refunded_amount=order.refunded_amount + refund,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StaleStateError("Order", str(order_id), order.current_stage)

        transaction = EscrowTransactionModel(
            order_id=order_id,
            transaction_type=EscrowTransactionType.REFUND.value,
            amount=refund,
            from_stage=order.current_stage,
            to_stage=order.current_stage,
            status=TransactionStatus.PENDING.value,
            dispute_id=dispute_id,
            actor_id=actor_id,
            created_at=self._clock.now(),
        )
        self._session.add(transaction)
        self._session.flush()

        logger.info(
            "refund_recorded",
            extra={
                "order_id": str(order_id),
                "amount": refund,
                "drawn_from_escrow": draw,
                "dispute_id": str(dispute_id) if dispute_id else None,
            },
        )
        return transaction.to_record()

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile(self, order_id: UUID) -> ReconciliationResult:
        """
        Re-check an order's escrow columns against each other.

        The breakdown must sum to the total and the balance must equal
        ``total - released - refunded``, floored at zero (a refund granted
        after funds were released can exceed what escrow still holds).
        """
        order = self.load_order(order_id)
        errors = list(self._calculator.validate(order.breakdown))
        expected_balance = max(
            ZERO, order.total_amount - order.released_amount - order.refunded_amount,
        )
        if order.escrow_balance != expected_balance:
            errors.append(
                f"escrow balance {order.escrow_balance} does not match "
                f"expected {expected_balance}"
            )
        stage = OrderStage(order.current_stage)
        if stage == OrderStage.COMPLETED and order.escrow_stage != EscrowStage.RELEASED.value:
            errors.append(
                f"completed order still awaits release of {order.escrow_stage}"
            )

        if errors:
            logger.warning(
                "escrow_reconciliation_failed",
                extra={"order_id": str(order_id), "errors": errors},
            )
        return ReconciliationResult(
            order_id=order_id, is_valid=not errors, errors=tuple(errors),
        )
