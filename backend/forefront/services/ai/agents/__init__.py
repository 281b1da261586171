"""Deterministic request-understanding agents."""
