"""Shared services and command parsing."""
