"""Forefront: multi-model request orchestration."""
