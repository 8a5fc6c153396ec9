"""
Typed exception hierarchy for the escrow kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Money movement has to fail precisely.  Callers (HTTP layer, batch job,
tests) branch on the exception TYPE and its machine-readable ``code``,
never on message text:

    try:
        engine.approve(milestone_id, customer_id, ApprovalAction.APPROVED)
    except MilestoneAlreadyReviewedError as e:
        return {"error": e.code, "status": e.current_status}

Every exception stores its context as attributes so it survives logging
(``StructuredFormatter`` emits them as ``exc_*`` fields) and serialization.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EscrowKernelError (base)
    |
    +-- ValidationError                         -> HTTP 400
    |   +-- InvalidAmountError
    |   +-- InvalidRateError
    |   +-- InvalidRequestError
    |   +-- InvalidStateError
    |       +-- InvalidTransitionError
    |
    +-- AuthorizationError
    |   +-- AuthenticationRequiredError         -> HTTP 401
    |   +-- ForbiddenError                      -> HTTP 403
    |
    +-- NotFoundError                           -> HTTP 404
    |   +-- OrderNotFoundError
    |   +-- MilestoneNotFoundError
    |   +-- DisputeNotFoundError
    |
    +-- ConflictError                           -> HTTP 409
    |   +-- MilestoneAlreadyReviewedError
    |   +-- PendingMilestoneExistsError
    |   +-- DisputeAlreadyResolvedError
    |   +-- ActiveDisputeExistsError
    |   +-- OrderUnderDisputeError
    |   +-- StageAlreadyReleasedError
    |
    +-- ConcurrencyError                        -> HTTP 409
    |   +-- StaleStateError
    |
    +-- RateLimitExceededError                  -> HTTP 429
    |
    +-- ExternalServiceError                    -> HTTP 502
    |   +-- PaymentServiceError
    |   +-- NotificationServiceError
    |
    +-- ResolutionFailedError                   -> HTTP 500
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
PROPAGATION RULES
===============================================================================

1. Validation, authorization, not-found and conflict errors surface to the
   caller immediately.  Nothing has been written when they are raised.
2. StaleStateError is retried once by the service that raised it (re-read,
   re-attempt).  A second loss surfaces as a ConflictError subclass.
3. NotificationServiceError never escapes a service; it is logged.
4. PaymentServiceError escapes interactive approval (the caller rolls back)
   but is only logged during auto-approval, where the approval has already
   committed.
5. The batch job never aborts on a single item's error.
"""

from __future__ import annotations


class EscrowKernelError(Exception):
    """
    Base exception for all escrow kernel errors.

    Every subclass carries a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "ESCROW_KERNEL_ERROR"


# Validation


class ValidationError(EscrowKernelError):
    """Base exception for rejected input."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Monetary amount is non-finite, negative, sub-cent or out of bounds."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object, reason: str):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid amount {amount!s}: {reason}")


class InvalidRateError(ValidationError):
    """Commission rate outside [0, 1] or non-finite."""

    code: str = "INVALID_RATE"

    def __init__(self, rate: object):
        self.rate = str(rate)
        super().__init__(f"Commission rate must be between 0 and 1, got {rate!s}")


class InvalidRequestError(ValidationError):
    """A request field failed a business rule."""

    code: str = "INVALID_REQUEST"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidStateError(ValidationError):
    """Operation is not legal from the entity's current state."""

    code: str = "INVALID_STATE"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_state: str,
        message: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_state = current_state
        super().__init__(
            message
            or f"{entity_type} {entity_id} cannot perform this operation "
            f"in state {current_state}"
        )


class InvalidTransitionError(InvalidStateError):
    """Requested state change is not in the transition table."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        from_state: str,
        to_state: str,
    ):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            entity_type,
            entity_id,
            from_state,
            f"Illegal {entity_type} transition for {entity_id}: "
            f"{from_state} -> {to_state}",
        )


# Authorization


class AuthorizationError(EscrowKernelError):
    """Base exception for identity and permission failures."""

    code: str = "AUTHORIZATION_ERROR"


class AuthenticationRequiredError(AuthorizationError):
    """No caller identity, or the supplied credential did not match."""

    code: str = "AUTHENTICATION_REQUIRED"

    def __init__(self, reason: str = "Authentication required"):
        self.reason = reason
        super().__init__(reason)


class ForbiddenError(AuthorizationError):
    """Caller is authenticated but not allowed to perform the action."""

    code: str = "FORBIDDEN"

    def __init__(self, actor_id: str, action: str, reason: str):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not {action}: {reason}")


# Not found


class NotFoundError(EscrowKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class OrderNotFoundError(NotFoundError):
    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order", order_id)


class MilestoneNotFoundError(NotFoundError):
    code: str = "MILESTONE_NOT_FOUND"

    def __init__(self, milestone_id: str):
        self.milestone_id = milestone_id
        super().__init__("Milestone", milestone_id)


class DisputeNotFoundError(NotFoundError):
    code: str = "DISPUTE_NOT_FOUND"

    def __init__(self, dispute_id: str):
        self.dispute_id = dispute_id
        super().__init__("Dispute", dispute_id)


# Conflict


class ConflictError(EscrowKernelError):
    """Base exception for requests that lost to the current stored state."""

    code: str = "CONFLICT"


class MilestoneAlreadyReviewedError(ConflictError):
    """Milestone has already left PENDING."""

    code: str = "MILESTONE_ALREADY_REVIEWED"

    def __init__(self, milestone_id: str, current_status: str):
        self.milestone_id = milestone_id
        self.current_status = current_status
        super().__init__(
            f"Milestone {milestone_id} has already been reviewed "
            f"(status {current_status})"
        )


class PendingMilestoneExistsError(ConflictError):
    """A PENDING milestone for the same release stage already exists."""

    code: str = "PENDING_MILESTONE_EXISTS"

    def __init__(self, order_id: str, release_stage: str, milestone_id: str):
        self.order_id = order_id
        self.release_stage = release_stage
        self.milestone_id = milestone_id
        super().__init__(
            f"Order {order_id} already has pending {release_stage} "
            f"milestone {milestone_id}"
        )


class DisputeAlreadyResolvedError(ConflictError):
    """Dispute is RESOLVED or CLOSED and cannot change again."""

    code: str = "DISPUTE_ALREADY_RESOLVED"

    def __init__(self, dispute_id: str, status: str):
        self.dispute_id = dispute_id
        self.status = status
        super().__init__(f"Dispute {dispute_id} is already {status}")


class ActiveDisputeExistsError(ConflictError):
    """Order already has an OPEN or IN_PROGRESS dispute."""

    code: str = "ACTIVE_DISPUTE_EXISTS"

    def __init__(self, order_id: str, dispute_id: str):
        self.order_id = order_id
        self.dispute_id = dispute_id
        super().__init__(
            f"Order {order_id} already has active dispute {dispute_id}"
        )


class OrderUnderDisputeError(ConflictError):
    """Approval flow is blocked while a dispute is active."""

    code: str = "ORDER_UNDER_DISPUTE"

    def __init__(self, order_id: str, dispute_id: str):
        self.order_id = order_id
        self.dispute_id = dispute_id
        super().__init__(
            f"Order {order_id} is under dispute {dispute_id}; "
            "milestone approval is suspended"
        )


class StageAlreadyReleasedError(ConflictError):
    """The escrow tranche was released by a concurrent actor."""

    code: str = "STAGE_ALREADY_RELEASED"

    def __init__(self, order_id: str, escrow_stage: str, current_stage: str):
        self.order_id = order_id
        self.escrow_stage = escrow_stage
        self.current_stage = current_stage
        super().__init__(
            f"{escrow_stage} tranche of order {order_id} is no longer "
            f"releasable (order stage {current_stage})"
        )


# Concurrency


class ConcurrencyError(EscrowKernelError):
    """Base exception for optimistic-concurrency failures."""

    code: str = "CONCURRENCY_ERROR"


class StaleStateError(ConcurrencyError):
    """Conditional UPDATE matched no row: another actor moved the entity."""

    code: str = "STALE_STATE"

    def __init__(self, entity_type: str, entity_id: str, expected_state: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_state = expected_state
        super().__init__(
            f"{entity_type} {entity_id} is no longer in state {expected_state}: "
            "modified by another transaction"
        )


# Rate limiting


class RateLimitExceededError(EscrowKernelError):
    """Caller exceeded the per-window request allowance."""

    code: str = "RATE_LIMIT_EXCEEDED"

    def __init__(self, key: str, limit: int, window_seconds: int):
        self.key = key
        self.limit = limit
        self.window_seconds = window_seconds
        super().__init__(
            f"Rate limit of {limit} requests per {window_seconds}s exceeded"
        )


# External collaborators


class ExternalServiceError(EscrowKernelError):
    """Base exception for collaborator failures."""

    code: str = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, operation: str, reason: str):
        self.service = service
        self.operation = operation
        self.reason = reason
        super().__init__(f"{service}.{operation} failed: {reason}")


class PaymentServiceError(ExternalServiceError):
    code: str = "PAYMENT_SERVICE_ERROR"

    def __init__(self, operation: str, reason: str):
        super().__init__("payment", operation, reason)


class NotificationServiceError(ExternalServiceError):
    code: str = "NOTIFICATION_SERVICE_ERROR"

    def __init__(self, operation: str, reason: str):
        super().__init__("notification", operation, reason)


# Dispute resolution


class ResolutionFailedError(EscrowKernelError):
    """The store rejected the atomic resolution; nothing was applied."""

    code: str = "RESOLUTION_FAILED"

    def __init__(self, dispute_id: str, reason: str):
        self.dispute_id = dispute_id
        self.reason = reason
        super().__init__(f"Failed to resolve dispute {dispute_id}: {reason}")


# Immutability


class ImmutabilityError(EscrowKernelError):
    """Base exception for immutability errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Terminal milestones and disputes are frozen; approval, resolution and
    activity records are append-only.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
