"""
BaseService -- common constructor and session contract for kernel services.

Services receive a SQLAlchemy ``Session`` and a ``Clock`` from the caller.
They write with ``session.flush()`` and never commit or roll back: the
caller (HTTP dependency, batch job, test) owns the transaction boundary,
so a failure anywhere in a multi-step operation leaves no partial state
once the caller rolls back.
"""

from abc import ABC

from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """Holds the caller's session and clock."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock
