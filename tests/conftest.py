"""
Pytest fixtures for the escrow test suite.

Provides:
- A file-backed SQLite database per test (real ORM models, real
  conditional UPDATEs, visible across sessions and threads)
- A deterministic clock
- Fake payment gateway and notification sink
- Order fixtures driven through the public services to a given stage
- Structured-log capture
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session, sessionmaker

from escrow_kernel.db.engine import build_engine, create_tables
from escrow_kernel.db.immutability import register_immutability_listeners
from escrow_kernel.domain.clock import DeterministicClock
from escrow_kernel.domain.dtos import Actor
from escrow_kernel.domain.lifecycle import ActorRole, EscrowStage
from escrow_kernel.exceptions import PaymentServiceError
from escrow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from escrow_kernel.services.collaborators import PaymentIntent
from escrow_kernel.services.orchestrator import EscrowOrchestrator

CUSTOMER_PHONE = "+233241234567"
START_TIME = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture escrow_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, escrow):
            escrow.lifecycle.create_order(...)
            assert any(r["message"] == "order_created" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("escrow_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Collaborator fakes
# =============================================================================


class FakePaymentGateway:
    """Records every call; fails for operations listed in ``fail_on``."""

    def __init__(self):
        self.deposits: list[dict[str, Any]] = []
        self.disbursements: list[dict[str, Any]] = []
        self.refunds: list[dict[str, Any]] = []
        self.fail_on: set[str] = set()
        self.fail_for_orders: set[UUID] = set()

    def _check(self, operation: str, order_id: UUID) -> None:
        if operation in self.fail_on or order_id in self.fail_for_orders:
            raise PaymentServiceError(operation, "provider unavailable")

    def initiate_deposit(self, *, order_id, amount, customer_phone, payment_method):
        self._check("initiate_deposit", order_id)
        self.deposits.append({
            "order_id": order_id,
            "amount": amount,
            "customer_phone": customer_phone,
            "payment_method": payment_method,
        })
        return PaymentIntent(
            intent_id=f"pi_{len(self.deposits)}",
            payment_url=f"https://pay.example.test/{order_id}",
        )

    def disburse(self, *, order_id, tailor_id, amount, idempotency_key):
        self._check("disburse", order_id)
        self.disbursements.append({
            "order_id": order_id,
            "tailor_id": tailor_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
        })
        return f"po_{len(self.disbursements)}"

    def payouts(self, stage: EscrowStage | str) -> list[dict[str, Any]]:
        """Disbursements made for one escrow tranche."""
        suffix = f":{EscrowStage(stage).value}"
        return [d for d in self.disbursements if d["idempotency_key"].endswith(suffix)]

    def refund(self, *, order_id, customer_id, amount, idempotency_key):
        self._check("refund", order_id)
        self.refunds.append({
            "order_id": order_id,
            "customer_id": customer_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
        })
        return f"rf_{len(self.refunds)}"


class RecordingNotifier:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    def notify(self, *, recipient_id, event_type, payload):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append({
            "recipient_id": recipient_id,
            "event_type": event_type,
            "payload": payload,
        })

    def events(self) -> list[str]:
        return [n["event_type"] for n in self.sent]


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    register_immutability_listeners()
    eng = build_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(START_TIME)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_escrow(gateway, notifier, clock):
    """Build an EscrowOrchestrator bound to a given session."""

    def _build(session: Session) -> EscrowOrchestrator:
        return EscrowOrchestrator(session, gateway, notifier, clock=clock)

    return _build


@pytest.fixture
def escrow(session, make_escrow) -> EscrowOrchestrator:
    return make_escrow(session)


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def customer() -> Actor:
    return Actor(actor_id=uuid4(), role=ActorRole.CUSTOMER)


@pytest.fixture
def tailor() -> Actor:
    return Actor(actor_id=uuid4(), role=ActorRole.TAILOR)


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id=uuid4(), role=ActorRole.ADMIN)


# =============================================================================
# Orders at a given stage
# =============================================================================


class OrderDriver:
    """Moves an order forward through the public services."""

    def __init__(self, escrow: EscrowOrchestrator, customer: Actor, tailor: Actor):
        self.escrow = escrow
        self.customer = customer
        self.tailor = tailor

    def draft(self, total: str = "100.00") -> UUID:
        return self.escrow.lifecycle.create_order(
            self.customer.actor_id, self.tailor.actor_id, Decimal(total),
        ).order_id

    def pending(self, total: str = "100.00") -> UUID:
        order_id = self.draft(total)
        self.escrow.payments.initiate_payment(
            order_id, self.customer, Decimal(total), CUSTOMER_PHONE, "MTN_MOMO",
        )
        return order_id

    def deposit_paid(self, total: str = "100.00") -> UUID:
        order_id = self.pending(total)
        order = self.escrow.lifecycle.get_order(order_id)
        self.escrow.payments.confirm_deposit(
            order_id, order.deposit_amount, f"dep-{order_id}",
        )
        return order_id

    def in_production(self, total: str = "100.00") -> UUID:
        order_id = self.deposit_paid(total)
        self.escrow.payments.start_production(order_id, self.tailor)
        return order_id

    def fitting_submitted(self, total: str = "100.00") -> tuple[UUID, UUID]:
        order_id = self.in_production(total)
        milestone = self.escrow.milestones.submit_milestone(
            order_id, self.tailor.actor_id, EscrowStage.FITTING,
        )
        return order_id, milestone.milestone_id

    def fitting_paid(self, total: str = "100.00") -> UUID:
        order_id, milestone_id = self.fitting_submitted(total)
        self.escrow.milestones.approve(milestone_id, self.customer.actor_id, "APPROVED")
        return order_id

    def completed(self, total: str = "100.00") -> UUID:
        order_id = self.fitting_paid(total)
        milestone = self.escrow.milestones.submit_milestone(
            order_id, self.tailor.actor_id, EscrowStage.FINAL,
        )
        self.escrow.milestones.approve(
            milestone.milestone_id, self.customer.actor_id, "APPROVED",
        )
        return order_id


@pytest.fixture
def orders(escrow, customer, tailor) -> OrderDriver:
    return OrderDriver(escrow, customer, tailor)
