"""
FastAPI dependencies: caller identity, units of work and rate limiting.

Identity comes from the upstream authentication layer as two headers,
``X-User-Id`` and ``X-User-Role``.  This layer trusts them as given.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from uuid import UUID

from fastapi import Depends, Header, Request

from escrow_kernel.db.engine import session_scope
from escrow_kernel.domain.dtos import Actor
from escrow_kernel.domain.lifecycle import ActorRole
from escrow_kernel.exceptions import AuthenticationRequiredError, ForbiddenError
from escrow_kernel.services.orchestrator import EscrowOrchestrator

from escrow_api.rate_limit import SlidingWindowRateLimiter

UnitOfWork = Callable[[], AbstractContextManager[EscrowOrchestrator]]


def get_actor(
    user_id: str | None = Header(default=None, alias="X-User-Id"),
    user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> Actor:
    if not user_id or not user_role:
        raise AuthenticationRequiredError()
    try:
        actor_id = UUID(user_id)
    except ValueError:
        raise AuthenticationRequiredError("X-User-Id is not a valid id") from None
    try:
        role = ActorRole(user_role.strip().upper())
    except ValueError:
        raise AuthenticationRequiredError("X-User-Role is not a known role") from None
    if role == ActorRole.SYSTEM:
        raise AuthenticationRequiredError("X-User-Role is not a known role")
    return Actor(actor_id=actor_id, role=role)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise ForbiddenError(str(actor.actor_id), "admin endpoint", "admin role required")
    return actor


def get_unit_of_work(request: Request) -> UnitOfWork:
    """
    Return a context manager factory yielding a per-request orchestrator.

    The transaction commits when the ``with`` block exits cleanly and rolls
    back when it raises, before the response is built:

        with unit_of_work() as escrow:
            escrow.disputes.resolve(...)
    """
    session_factory = request.app.state.session_factory
    build = request.app.state.orchestrator_factory

    @contextmanager
    def unit_of_work() -> Iterator[EscrowOrchestrator]:
        with session_scope(session_factory) as session:
            yield build(session)

    return unit_of_work


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


def limit_milestone_approvals(
    actor: Actor = Depends(get_actor),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> Actor:
    limiter.hit(f"milestone-approval:{actor.actor_id}")
    return actor
