"""
FastAPI application factory for the escrow services.

Responsibility:
    Wires configuration, the session factory, collaborator adapters, the
    approval rate limiter and the auto-approval scheduler onto ``app.state``
    and maps the kernel's exception taxonomy to HTTP statuses.

Architecture position:
    Outermost layer.  Imports escrow_config, escrow_batch and escrow_kernel;
    nothing imports escrow_api.

Error mapping:
    Every EscrowKernelError subclass resolves to the status of its nearest
    ancestor in ERROR_STATUS_CODES.  The body is always
    ``{"detail", "error_type", "code"}``.  Unmapped kernel errors are 500.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from escrow_batch.services.auto_approval import AutoApprovalScheduler
from escrow_config import get_active_config
from escrow_config.bridges import (
    commission_rate_from_config,
    escrow_policy_from_config,
    orchestrator_factory,
    processing_fee_rate_from_config,
)
from escrow_config.schema import EscrowConfig
from escrow_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from escrow_kernel.db.immutability import register_immutability_listeners
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.commission import CommissionCalculator
from escrow_kernel.domain.escrow import EscrowCalculator
from escrow_kernel.exceptions import (
    AuthenticationRequiredError,
    AuthorizationError,
    ConcurrencyError,
    ConflictError,
    EscrowKernelError,
    ExternalServiceError,
    ImmutabilityError,
    NotFoundError,
    RateLimitExceededError,
    ResolutionFailedError,
    ValidationError,
)
from escrow_kernel.logging_config import LogContext, configure_logging, get_logger
from escrow_kernel.services.collaborators import (
    LoggingNotificationSink,
    NotificationSink,
    PaymentGateway,
    UnconfiguredPaymentGateway,
)

from escrow_api.rate_limit import SlidingWindowRateLimiter
from escrow_api.routers import ALL_ROUTERS

logger = get_logger("api")

REQUEST_ID_HEADER = "X-Request-Id"

# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    AuthenticationRequiredError: 401,
    AuthorizationError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    ConcurrencyError: 409,
    ImmutabilityError: 409,
    RateLimitExceededError: 429,
    ExternalServiceError: 502,
    ResolutionFailedError: 500,
}


def status_code_for(exc: EscrowKernelError) -> int:
    for klass in type(exc).__mro__:
        if klass in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[klass]
    return 500


async def escrow_error_handler(request: Request, exc: EscrowKernelError) -> JSONResponse:
    """Map EscrowKernelError subclasses to appropriate HTTP responses."""
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "http_request_rejected",
        extra={
            "path": request.url.path,
            "status_code": status_code,
            "error_code": exc.code,
            "error_type": type(exc).__name__,
        },
    )
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.window_seconds)}
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__, "code": exc.code},
        headers=headers,
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError,
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request data",
            "error_type": "RequestValidationError",
            "code": ValidationError.code,
            "errors": jsonable_encoder(exc.errors()),
        },
    )


def create_app(
    config: EscrowConfig | None = None,
    session_factory: Callable[[], Session] | None = None,
    gateway: PaymentGateway | None = None,
    notifier: NotificationSink | None = None,
    clock: Clock | None = None,
    rate_limiter: SlidingWindowRateLimiter | None = None,
) -> FastAPI:
    """
    Build the escrow API.

    Args:
        config: Runtime configuration.  Defaults to ``get_active_config()``.
        session_factory: Session factory.  Defaults to one built from
            ``config.database_url`` (tables are created on first use).
        gateway: Payment provider adapter.  Defaults to a gateway that
            fails every call.
        notifier: Notification adapter.  Defaults to structured logging.
        clock: Time source shared by the services and the scheduler.
        rate_limiter: Limiter for milestone approvals.  Defaults to the
            configured per-user window.
    """
    configure_logging()
    register_immutability_listeners()

    config = config or get_active_config()
    clock = clock or SystemClock()
    if session_factory is None:
        if not config.database_url:
            raise ValueError("database_url is not configured")
        engine = init_engine_from_url(config.database_url)
        create_tables(engine)
        session_factory = get_session_factory()

    build_orchestrator = orchestrator_factory(
        config,
        gateway or UnconfiguredPaymentGateway(),
        notifier or LoggingNotificationSink(),
        clock=clock,
    )
    scheduler = AutoApprovalScheduler(
        session_factory,
        build_orchestrator,
        clock=clock,
        batch_limit=config.auto_approval.batch_limit,
    )

    app = FastAPI(title="Escrow API", version="0.1.0")
    app.state.config = config
    app.state.clock = clock
    app.state.session_factory = session_factory
    app.state.orchestrator_factory = build_orchestrator
    app.state.calculator = EscrowCalculator(escrow_policy_from_config(config))
    app.state.commission = CommissionCalculator(commission_rate_from_config(config))
    app.state.processing_fee_rate = processing_fee_rate_from_config(config)
    app.state.scheduler = scheduler
    app.state.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
        config.rate_limit.max_requests, config.rate_limit.window_seconds,
    )

    app.add_exception_handler(EscrowKernelError, escrow_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        start = time.monotonic()
        with LogContext.bind(correlation_id=correlation_id):
            response = await call_next(request)
            logger.info(
                "http_request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response

    for router in ALL_ROUTERS:
        app.include_router(router)

    logger.info(
        "escrow_api_created",
        extra={"config_set_id": config.config_id, "environment": config.environment},
    )
    return app
