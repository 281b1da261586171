"""
Core modules.
Contains configuration, logging, metrics, tracing and the circuit breaker.
"""
from .config import OrchestratorSettings, get_settings

__all__ = ["OrchestratorSettings", "get_settings"]
