"""Inbound chat event handlers."""
