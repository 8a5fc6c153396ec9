"""
AutoApprovalScheduler -- Approves milestones whose review window has lapsed.

Contract:
    ``run_batch(now)`` is one bounded batch: select overdue PENDING
    milestones (oldest deadline first, at most ``batch_limit``), then
    for each one, independently:

        1. auto-approve and commit (conditional UPDATE on PENDING)
        2. disburse the released tranche and commit
        3. notify both participants

    A failure on one milestone is recorded and the batch moves on.

Architecture: escrow_batch/services.  Drives escrow_kernel services through
    an EscrowOrchestrator built per item.

Invariants enforced:
    - Per-item isolation: every milestone gets its own session; a rollback
      for one item never touches another.
    - Exactly-once approval: the kernel's conditional UPDATE decides the
      race with a customer approving the same milestone.  The loser is
      counted as skipped.
    - A disbursement failure does NOT roll back the committed approval.
      The ledger entry is marked FAILED for out-of-band retry.
    - All timestamps from the injected Clock.

The batch is triggered from outside (the cron endpoint); nothing here
runs on its own.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.lifecycle import MilestoneStatus
from escrow_kernel.exceptions import (
    EscrowKernelError,
    MilestoneAlreadyReviewedError,
    OrderUnderDisputeError,
    StageAlreadyReleasedError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.milestone import MilestoneModel
from escrow_kernel.services.orchestrator import EscrowOrchestrator

from escrow_batch.domain.types import (
    AutoApprovalItemResult,
    AutoApprovalItemStatus,
    AutoApprovalSummary,
)

logger = get_logger("batch.auto_approval")

DEFAULT_BATCH_LIMIT = 100

# Outcomes that mean another actor got there first
_SKIP_ERRORS = (
    MilestoneAlreadyReviewedError,
    OrderUnderDisputeError,
    StageAlreadyReleasedError,
)


class AutoApprovalScheduler:
    """Bounded auto-approval batch.

    Contract:
        - ``run_batch()`` processes one batch and returns its summary.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Concurrent
          runs are safe because every approval is a conditional UPDATE.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        orchestrator_factory: Callable[[Session], EscrowOrchestrator],
        clock: Clock | None = None,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
    ):
        self._session_factory = session_factory
        self._orchestrator_factory = orchestrator_factory
        self._clock = clock or SystemClock()
        self._batch_limit = batch_limit

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_batch(self, now: datetime | None = None) -> AutoApprovalSummary:
        """Process every overdue milestone found at ``now``."""
        start_time = time.monotonic()
        as_of = now or self._clock.now()
        batch_id = str(uuid4())

        with LogContext.bind(batch_id=batch_id):
            milestone_ids = self.collect_overdue(as_of)
            logger.info(
                "auto_approval_batch_started",
                extra={"candidate_count": len(milestone_ids), "as_of": as_of},
            )

            items = [self.process_milestone(m, as_of) for m in milestone_ids]

            summary = AutoApprovalSummary.from_items(
                items, int((time.monotonic() - start_time) * 1000),
            )
            logger.info(
                "auto_approval_batch_completed",
                extra={
                    "processed": summary.processed,
                    "auto_approved": summary.auto_approved,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "disbursement_failures": summary.disbursement_failures,
                    "duration_ms": summary.execution_time_ms,
                },
            )
            return summary

    def collect_overdue(self, now: datetime) -> list[UUID]:
        """Ids of PENDING milestones with deadline < now, oldest first."""
        session = self._session_factory()
        try:
            return list(
                session.execute(
                    select(MilestoneModel.id)
                    .where(
                        MilestoneModel.approval_status == MilestoneStatus.PENDING.value,
                        MilestoneModel.auto_approval_deadline < now,
                    )
                    .order_by(MilestoneModel.auto_approval_deadline.asc())
                    .limit(self._batch_limit)
                ).scalars().all()
            )
        finally:
            session.close()

    def process_milestone(self, milestone_id: UUID, now: datetime) -> AutoApprovalItemResult:
        """Auto-approve one milestone in its own session."""
        item_start = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - item_start) * 1000)

        session = self._session_factory()
        try:
            with LogContext.bind(milestone_id=str(milestone_id)):
                escrow = self._orchestrator_factory(session)

                # Step 1: approval, committed on its own
                try:
                    outcome = escrow.milestones.auto_approve(milestone_id, as_of=now)
                    session.commit()
                except _SKIP_ERRORS as exc:
                    session.rollback()
                    logger.info(
                        "auto_approval_item_skipped",
                        extra={"error_code": exc.code, "reason": str(exc)},
                    )
                    return AutoApprovalItemResult(
                        milestone_id=milestone_id,
                        status=AutoApprovalItemStatus.SKIPPED,
                        error_code=exc.code,
                        error_message=str(exc),
                        duration_ms=_elapsed(),
                    )
                except Exception as exc:
                    session.rollback()
                    logger.exception("auto_approval_item_failed")
                    return AutoApprovalItemResult(
                        milestone_id=milestone_id,
                        status=AutoApprovalItemStatus.FAILED,
                        error_code=getattr(exc, "code", "UNHANDLED_EXCEPTION"),
                        error_message=str(exc),
                        duration_ms=_elapsed(),
                    )

                # Step 2: disbursement, never reverts step 1
                payment_reference, payment_error = self._disburse(session, escrow, outcome)

                # Step 3: notifications are best-effort
                try:
                    escrow.milestones.notify_decision(outcome)
                except EscrowKernelError:
                    logger.warning("auto_approval_notification_skipped", exc_info=True)

                return AutoApprovalItemResult(
                    milestone_id=milestone_id,
                    status=AutoApprovalItemStatus.APPROVED,
                    order_id=outcome.order_id,
                    payment_reference=payment_reference,
                    payment_error=payment_error,
                    duration_ms=_elapsed(),
                )
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _disburse(self, session: Session, escrow: EscrowOrchestrator, outcome):
        if outcome.release is None:
            return None, None
        try:
            tailor_id = escrow.lifecycle.get_order(outcome.order_id).tailor_id
            settled = escrow.payments.disburse(outcome.release, tailor_id)
            session.commit()
            return settled.external_reference, None
        except Exception as exc:
            session.rollback()
            logger.error(
                "auto_approval_disbursement_failed",
                extra={
                    "order_id": str(outcome.order_id),
                    "amount": outcome.release.amount,
                    "error": str(exc),
                },
            )
            self._mark_failed(session, escrow, outcome.release.transaction.transaction_id, str(exc))
            return None, str(exc)

    @staticmethod
    def _mark_failed(session: Session, escrow: EscrowOrchestrator, transaction_id, reason: str) -> None:
        try:
            escrow.payments.mark_failed(transaction_id, reason)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception(
                "disbursement_failure_not_recorded",
                extra={"transaction_id": str(transaction_id)},
            )
