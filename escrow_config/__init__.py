"""
escrow_config -- single public entrypoint for escrow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads the YAML set or the
    ``ESCROW_*`` environment variables directly.

Architecture position:
    Configuration.  This package sits above ``escrow_kernel`` and below
    ``escrow_api`` / ``escrow_batch``.  The kernel MUST NEVER import from
    ``escrow_config``; ``escrow_config.bridges`` translates the parsed
    configuration into kernel inputs.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Validation before use: rates and bounds are checked by building the
      kernel's EscrowPolicy before the config is returned.
    - Fail closed: an unset cron secret stays ``None``; it is never defaulted.

Failure modes:
    - ``FileNotFoundError`` -- the configured YAML file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema or range validation failures.

Audit relevance:
    Every successful call emits an ``ESCROW_CONFIG_TRACE`` log entry with the
    config id, version, checksum and environment.  The secret itself is
    never logged, only whether it is set.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from escrow_config.bridges import (
    commission_rate_from_config,
    escrow_policy_from_config,
    processing_fee_rate_from_config,
)
from escrow_config.loader import load_yaml_file, parse_config
from escrow_config.schema import EscrowConfig
from escrow_kernel.domain.commission import is_valid_rate

_logger = logging.getLogger("escrow_kernel.config")

ENV_CONFIG_PATH = "ESCROW_CONFIG_PATH"

# Default configuration set
_DEFAULT_CONFIG_FILE = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EscrowConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Override path to the YAML configuration set.  Defaults
            to ``$ESCROW_CONFIG_PATH``, then escrow_config/sets/default.yaml.
        environ: Environment mapping to overlay.  Defaults to ``os.environ``.

    Returns:
        EscrowConfig -- frozen runtime configuration.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If configuration validation fails.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(ENV_CONFIG_PATH) or _DEFAULT_CONFIG_FILE)

    config = parse_config(load_yaml_file(path), env)

    # Range checks live on the kernel's policy type
    escrow_policy_from_config(config)
    for name, rate in (
        ("commission.rate", commission_rate_from_config(config)),
        ("commission.processing_fee_rate", processing_fee_rate_from_config(config)),
    ):
        if not is_valid_rate(rate):
            raise ValueError(f"{name} must be between 0 and 1, got {rate}")
    malformed = [m for m in config.payment_methods if not m.isupper()]
    if malformed:
        raise ValueError(
            f"payment method identifiers must be upper case: {malformed}"
        )

    _logger.info(
        "ESCROW_CONFIG_TRACE",
        extra={
            "trace_type": "ESCROW_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "checksum": config.checksum,
            "environment": config.environment,
            "config_path": str(path),
            "cron_secret_configured": config.cron_secret is not None,
            "payment_method_count": len(config.payment_methods),
        },
    )
    return config


__all__ = ["EscrowConfig", "get_active_config"]
