"""
Unit tests for Prometheus metrics collection.

Tests verify:
- Helper functions increment the labelled counters
- Histograms observe step, quality and orchestration values
- The circuit breaker gauge follows open/closed transitions
- The exposition output is valid Prometheus text
"""
import pytest
from prometheus_client import REGISTRY

from forefront.core.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_consensus_branch,
    record_intent_classification,
    record_llm_error,
    record_llm_request,
    record_llm_tokens_and_cost,
    record_orchestration,
    record_quality_score,
    record_re_research_cycle,
    record_step_execution,
    record_workflow_build,
    set_circuit_open,
)


def _value(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_record_llm_request_counts_and_observes_latency():
    labels = {"agent": "metrics-test", "model": "sonar"}
    before = _value("llm_requests_total", labels)
    before_count = _value("llm_request_duration_seconds_count", labels)

    record_llm_request("metrics-test", "sonar", duration_ms=250.0)

    assert _value("llm_requests_total", labels) == before + 1
    assert _value("llm_request_duration_seconds_count", labels) == before_count + 1


def test_record_llm_error():
    labels = {"agent": "metrics-test", "error_type": "timeout"}
    before = _value("llm_errors_total", labels)

    record_llm_error("metrics-test", "timeout")

    assert _value("llm_errors_total", labels) == before + 1


def test_record_tokens_and_cost():
    labels = {"agent": "metrics-test", "model": "llama-3.3-70b-versatile"}
    before_cost = _value("llm_cost_usd_total", labels)
    before_input = _value("llm_tokens_total", dict(labels, direction="input"))

    record_llm_tokens_and_cost("metrics-test", "llama-3.3-70b-versatile", 100, 50, cost_usd=0.002)

    assert _value("llm_tokens_total", dict(labels, direction="input")) == before_input + 100
    assert _value("llm_cost_usd_total", labels) == pytest.approx(before_cost + 0.002)


def test_zero_cost_is_not_recorded():
    labels = {"agent": "metrics-zero-cost", "model": "sonar"}

    record_llm_tokens_and_cost("metrics-zero-cost", "sonar", 10, 10)

    assert REGISTRY.get_sample_value("llm_cost_usd_total", labels) is None


@pytest.mark.parametrize("outcome", ["success", "skipped", "failed"])
def test_record_step_execution(outcome):
    labels = {"step_type": "research", "outcome": outcome}
    before = _value("step_executions_total", labels)

    record_step_execution("research", outcome, duration_seconds=1.2)

    assert _value("step_executions_total", labels) == before + 1


def test_pipeline_counters():
    before_intent = _value("intent_classifications_total", {"source": "default", "domain": "general"})
    before_build = _value("workflow_builds_total", {"workflow_type": "research-summary"})
    before_cycle = _value("re_research_cycles_total", {"workflow_type": "research-summary"})
    before_branch = _value("consensus_branches_total", {"outcome": "timeout"})

    record_intent_classification("default", "general")
    record_workflow_build("research-summary")
    record_re_research_cycle("research-summary")
    record_consensus_branch("timeout")

    assert _value("intent_classifications_total", {"source": "default", "domain": "general"}) == before_intent + 1
    assert _value("workflow_builds_total", {"workflow_type": "research-summary"}) == before_build + 1
    assert _value("re_research_cycles_total", {"workflow_type": "research-summary"}) == before_cycle + 1
    assert _value("consensus_branches_total", {"outcome": "timeout"}) == before_branch + 1


def test_quality_and_orchestration_histograms():
    quality = {"workflow_type": "code-generation"}
    before_quality = _value("quality_score_distribution_count", quality)
    before_requests = _value("orchestration_requests_total", {"outcome": "timeout"})
    before_duration = _value("orchestration_duration_seconds_count")

    record_quality_score("code-generation", 0.82)
    record_orchestration("timeout", 300.0)

    assert _value("quality_score_distribution_count", quality) == before_quality + 1
    assert _value("orchestration_requests_total", {"outcome": "timeout"}) == before_requests + 1
    assert _value("orchestration_duration_seconds_count") == before_duration + 1


def test_circuit_open_gauge():
    set_circuit_open("sonar-metrics-test", True)
    assert _value("circuit_breaker_open", {"circuit": "sonar-metrics-test"}) == 1

    set_circuit_open("sonar-metrics-test", False)
    assert _value("circuit_breaker_open", {"circuit": "sonar-metrics-test"}) == 0


def test_metrics_exposition():
    record_workflow_build("tutorial")

    output = get_metrics()

    assert isinstance(output, bytes)
    assert b"workflow_builds_total" in output
    assert b'workflow_type="tutorial"' in output
    assert get_metrics_content_type().startswith("text/plain")
