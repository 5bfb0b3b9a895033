"""Adapters package: chat platform contract and transcript mirroring."""
