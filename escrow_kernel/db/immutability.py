"""
ORM-level immutability enforcement.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                   | When immutable                 | Allowed changes
-------------------------|--------------------------------|--------------------------------
MilestoneModel           | approval_status is terminal    | none (audit timestamps only)
DisputeModel             | status is RESOLVED / CLOSED    | none (audit timestamps only)
MilestoneApprovalModel   | always                         | none
DisputeResolutionModel   | always                         | none
DisputeActivityModel     | always                         | none
CommissionRecordModel    | always                         | none
EscrowTransactionModel   | money fields always            | status/settlement while PENDING
OrderModel               | never deleted                  | stage/escrow fields via lifecycle

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError
    [before_delete] --> _block_delete()

Listeners see ORM unit-of-work changes only.  Stage changes made by the
services' conditional UPDATE statements are guarded by their WHERE clause
instead; the services never issue an UPDATE that could touch a terminal
row.

===============================================================================
USAGE
===============================================================================

    from escrow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup
"""

from sqlalchemy import event
from sqlalchemy.orm import attributes

from escrow_kernel.exceptions import ImmutabilityViolationError
from escrow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Row audit metadata, never business data
_AUDIT_FIELDS = frozenset({"updated_at", "created_at"})

# Settlement fields of an escrow transaction
_SETTLEMENT_FIELDS = frozenset({"status", "external_reference", "settled_at", "notes"})


def _changed_fields(target) -> set[str]:
    state = attributes.instance_state(target)
    changed: set[str] = set()
    for attr in state.mapper.column_attrs:
        history = state.get_history(attr.key, attributes.PASSIVE_NO_INITIALIZE)
        if history.has_changes():
            changed.add(attr.key)
    return changed - _AUDIT_FIELDS


def _previous_value(target, field: str):
    history = attributes.get_history(target, field)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(target, field)


def _violation(target, operation: str, reason: str) -> ImmutabilityViolationError:
    entity_type = type(target).__name__
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_milestone_immutability(mapper, connection, target):
    """A milestone whose previous status is terminal cannot change."""
    from escrow_kernel.domain.lifecycle import (
        TERMINAL_MILESTONE_STATUSES,
        MilestoneStatus,
    )

    previous = _previous_value(target, "approval_status")
    if previous is None or MilestoneStatus(previous) not in TERMINAL_MILESTONE_STATUSES:
        return
    if not _changed_fields(target):
        return
    raise _violation(
        target, "UPDATE", f"Milestone is {previous} and can no longer change",
    )


def _check_dispute_immutability(mapper, connection, target):
    """RESOLVED and CLOSED disputes are frozen."""
    from escrow_kernel.domain.lifecycle import TERMINAL_DISPUTE_STATUSES, DisputeStatus

    previous = _previous_value(target, "status")
    if previous is None or DisputeStatus(previous) not in TERMINAL_DISPUTE_STATUSES:
        return
    if not _changed_fields(target):
        return
    raise _violation(
        target, "UPDATE", f"Dispute is {previous} and cannot be modified or reopened",
    )


def _check_escrow_transaction_immutability(mapper, connection, target):
    """Money fields are frozen; settlement happens once, away from PENDING."""
    from escrow_kernel.domain.lifecycle import TransactionStatus

    changed = _changed_fields(target)
    frozen = changed - _SETTLEMENT_FIELDS
    if frozen:
        raise _violation(
            target, "UPDATE",
            f"Escrow transaction fields {sorted(frozen)} are immutable",
        )
    previous = _previous_value(target, "status")
    if changed and previous != TransactionStatus.PENDING.value:
        raise _violation(
            target, "UPDATE", f"Escrow transaction already settled as {previous}",
        )


def _block_update(mapper, connection, target):
    """Append-only records never change."""
    if not _changed_fields(target):
        return
    raise _violation(target, "UPDATE", "Record is append-only")


def _block_delete(mapper, connection, target):
    raise _violation(target, "DELETE", "Record cannot be deleted")


def _listener_table():
    from escrow_kernel.models import (
        CommissionRecordModel,
        DisputeActivityModel,
        DisputeModel,
        DisputeResolutionModel,
        EscrowTransactionModel,
        MilestoneApprovalModel,
        MilestoneModel,
        OrderModel,
    )

    return (
        (MilestoneModel, "before_update", _check_milestone_immutability),
        (DisputeModel, "before_update", _check_dispute_immutability),
        (EscrowTransactionModel, "before_update", _check_escrow_transaction_immutability),
        (MilestoneApprovalModel, "before_update", _block_update),
        (DisputeResolutionModel, "before_update", _block_update),
        (DisputeActivityModel, "before_update", _block_update),
        (CommissionRecordModel, "before_update", _block_update),
        (OrderModel, "before_delete", _block_delete),
        (MilestoneModel, "before_delete", _block_delete),
        (DisputeModel, "before_delete", _block_delete),
        (EscrowTransactionModel, "before_delete", _block_delete),
        (MilestoneApprovalModel, "before_delete", _block_delete),
        (DisputeResolutionModel, "before_delete", _block_delete),
        (DisputeActivityModel, "before_delete", _block_delete),
        (CommissionRecordModel, "before_delete", _block_delete),
    )


def register_immutability_listeners() -> None:
    """Register all immutability listeners (idempotent)."""
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)
