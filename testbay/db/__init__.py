"""Execution record persistence."""
