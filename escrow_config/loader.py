"""
Configuration Loader (``escrow_config.loader``).

Responsibility
--------------
Loads the escrow YAML configuration set and parses it into typed
``escrow_config.schema`` dataclasses, overlaying the environment variables
that hold deployment-specific values.  The single public entry point for
runtime config is ``escrow_config.get_active_config()``.

Environment overlay
-------------------
* ``ESCROW_ENVIRONMENT`` -- replaces ``environment``.
* ``ESCROW_CRON_SECRET`` -- scheduler trigger secret.  Never read from
  YAML; unset or blank means no secret, and the trigger rejects everything.
* ``DATABASE_URL`` -- replaces ``database.url``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Non-numeric rate or bound  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from escrow_config.schema import (
    AutoApprovalDef,
    CommissionDef,
    EscrowConfig,
    EscrowPolicyDef,
    RateLimitDef,
)

ENV_ENVIRONMENT = "ESCROW_ENVIRONMENT"
ENV_CRON_SECRET = "ESCROW_CRON_SECRET"
ENV_DATABASE_URL = "DATABASE_URL"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _decimal_string(value: Any, name: str) -> str:
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{name} must be numeric, got {value!r}") from None
    if not parsed.is_finite():
        raise ValueError(f"{name} must be finite, got {value!r}")
    return str(parsed)


def parse_escrow_policy(data: dict[str, Any]) -> EscrowPolicyDef:
    return EscrowPolicyDef(
        deposit_rate=_decimal_string(data["deposit_rate"], "escrow.deposit_rate"),
        fitting_rate=_decimal_string(data["fitting_rate"], "escrow.fitting_rate"),
        min_amount=_decimal_string(data["min_amount"], "escrow.min_amount"),
        max_amount=_decimal_string(data["max_amount"], "escrow.max_amount"),
    )


def parse_commission(data: dict[str, Any]) -> CommissionDef:
    return CommissionDef(
        rate=_decimal_string(data["rate"], "commission.rate"),
        processing_fee_rate=_decimal_string(
            data.get("processing_fee_rate", "0"), "commission.processing_fee_rate",
        ),
    )


def parse_auto_approval(data: dict[str, Any]) -> AutoApprovalDef:
    parsed = AutoApprovalDef(
        window_hours=int(data.get("window_hours", 48)),
        batch_limit=int(data.get("batch_limit", 100)),
    )
    if parsed.window_hours <= 0 or parsed.batch_limit <= 0:
        raise ValueError("auto_approval.window_hours and batch_limit must be positive")
    return parsed


def parse_rate_limit(data: dict[str, Any]) -> RateLimitDef:
    parsed = RateLimitDef(
        max_requests=int(data.get("max_requests", 10)),
        window_seconds=int(data.get("window_seconds", 60)),
    )
    if parsed.max_requests <= 0 or parsed.window_seconds <= 0:
        raise ValueError("rate_limit values must be positive")
    return parsed


def parse_config(
    data: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> EscrowConfig:
    """Parse a loaded YAML dict, overlaying ``environ``."""
    environ = environ or {}
    methods = tuple(data.get("payment_methods") or ())
    if not methods:
        raise ValueError("payment_methods must list at least one method")

    cron_secret = (environ.get(ENV_CRON_SECRET) or "").strip() or None
    database = data.get("database") or {}

    return EscrowConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        environment=environ.get(ENV_ENVIRONMENT) or data.get("environment", "development"),
        escrow=parse_escrow_policy(data["escrow"]),
        commission=parse_commission(data["commission"]),
        auto_approval=parse_auto_approval(data.get("auto_approval") or {}),
        rate_limit=parse_rate_limit(data.get("rate_limit") or {}),
        payment_methods=methods,
        database_url=environ.get(ENV_DATABASE_URL) or database.get("url"),
        cron_secret=cron_secret,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of the YAML source."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
