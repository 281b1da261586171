"""
Shared fixtures.

Every test starts from fresh settings, a fresh LLM client and no circuit
breaker state, so provider failures in one test never open a breaker in another.
"""
import pytest

from forefront.core.circuit_breaker import reset_circuit_breakers
from forefront.core.config import reset_settings
from forefront.services.ai.llm_client import reset_llm_client


@pytest.fixture(autouse=True)
def reset_process_state():
    reset_settings()
    reset_llm_client()
    reset_circuit_breakers()
    yield
    reset_settings()
    reset_llm_client()
    reset_circuit_breakers()
