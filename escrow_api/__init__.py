"""
escrow_api -- HTTP surface for the escrow services.

Build the application with ``create_app()``; every dependency it needs
(config, session factory, payment gateway, notifier, clock) can be
injected, and defaults come from ``escrow_config.get_active_config()``.
"""

from escrow_api.app import create_app

__all__ = ["create_app"]
