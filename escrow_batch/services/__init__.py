"""Batch services."""
