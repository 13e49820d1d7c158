"""Charging-session reconciliation service."""
