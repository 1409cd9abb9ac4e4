"""Outbound result channels for finished executions."""
