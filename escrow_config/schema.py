"""
EscrowConfig schema.

The YAML configuration set is parsed into these frozen dataclasses by the
loader.  Monetary values and rates stay strings here; bridges convert them
to Decimal when building kernel inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field

PRODUCTION = "production"


@dataclass(frozen=True)
class EscrowPolicyDef:
    """Tranche rates and order-total bounds."""

    deposit_rate: str
    fitting_rate: str
    min_amount: str
    max_amount: str


@dataclass(frozen=True)
class CommissionDef:
    rate: str
    processing_fee_rate: str = "0"


@dataclass(frozen=True)
class AutoApprovalDef:
    """Review window and batch sizing for the auto-approval job."""

    window_hours: int = 48
    batch_limit: int = 100


@dataclass(frozen=True)
class RateLimitDef:
    """Per-user limit for interactive milestone approvals."""

    max_requests: int = 10
    window_seconds: int = 60


@dataclass(frozen=True)
class EscrowConfig:
    """Runtime configuration for the escrow services and HTTP layer."""

    config_id: str
    version: int
    environment: str
    escrow: EscrowPolicyDef
    commission: CommissionDef
    auto_approval: AutoApprovalDef
    rate_limit: RateLimitDef
    payment_methods: tuple[str, ...]
    database_url: str | None = None
    cron_secret: str | None = field(default=None, repr=False)
    checksum: str = ""

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION
