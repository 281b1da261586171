"""
Prometheus metrics collection module.

Metrics Categories:
- LLM metrics: request rate, latency, errors, token usage and cost per agent
- Pipeline metrics: classification path, workflow shape, step outcomes
- Quality metrics: validation scores, re-research cycles, consensus branches
- Request metrics: end-to-end orchestration outcome and duration

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration, _distribution for distributions
- Gauges: No special suffix
"""
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from forefront.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# LLM METRICS
# ============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of LLM provider requests",
    ["agent", "model"],
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM provider request latency in seconds",
    ["agent", "model"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=registry,
)

llm_errors_total = Counter(
    "llm_errors_total",
    "Total number of LLM provider errors",
    ["agent", "error_type"],
    registry=registry,
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total number of LLM tokens consumed",
    ["agent", "model", "direction"],  # direction: input | output
    registry=registry,
)

llm_cost_usd_total = Counter(
    "llm_cost_usd_total",
    "Estimated LLM cost in USD",
    ["agent", "model"],
    registry=registry,
)

llm_low_confidence_total = Counter(
    "llm_low_confidence_total",
    "Total number of LLM outputs discarded for low confidence",
    ["agent"],
    registry=registry,
)

llm_schema_validation_failures_total = Counter(
    "llm_schema_validation_failures_total",
    "Total number of LLM outputs that failed schema validation",
    ["agent"],
    registry=registry,
)

# ============================================================================
# PIPELINE METRICS
# ============================================================================

intent_classifications_total = Counter(
    "intent_classifications_total",
    "Total number of intent classifications",
    ["source", "domain"],  # source: heuristic | model | default
    registry=registry,
)

workflow_builds_total = Counter(
    "workflow_builds_total",
    "Total number of workflows built",
    ["workflow_type"],
    registry=registry,
)

step_executions_total = Counter(
    "step_executions_total",
    "Total number of workflow step executions",
    ["step_type", "outcome"],  # outcome: success | skipped | failed
    registry=registry,
)

step_duration_seconds = Histogram(
    "step_duration_seconds",
    "Workflow step execution latency in seconds",
    ["step_type"],
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=registry,
)

# ============================================================================
# QUALITY METRICS
# ============================================================================

quality_score_distribution = Histogram(
    "quality_score_distribution",
    "Distribution of overall quality scores",
    ["workflow_type"],
    buckets=[0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
    registry=registry,
)

re_research_cycles_total = Counter(
    "re_research_cycles_total",
    "Total number of re-research cycles triggered by validation",
    ["workflow_type"],
    registry=registry,
)

consensus_branches_total = Counter(
    "consensus_branches_total",
    "Total number of consensus fan-out branches by outcome",
    ["outcome"],  # outcome: vote | timeout | error
    registry=registry,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

orchestration_requests_total = Counter(
    "orchestration_requests_total",
    "Total number of orchestrated requests by outcome",
    ["outcome"],  # outcome: success | failed | timeout | cancelled
    registry=registry,
)

orchestration_duration_seconds = Histogram(
    "orchestration_duration_seconds",
    "End-to-end orchestration latency in seconds",
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
    registry=registry,
)

circuit_breaker_open = Gauge(
    "circuit_breaker_open",
    "Whether a provider circuit breaker is open (1) or not (0)",
    ["circuit"],
    registry=registry,
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def record_llm_request(agent: str, model: str, duration_ms: float) -> None:
    """Record one LLM request and its latency (recorded for failures too)."""
    llm_requests_total.labels(agent=agent, model=model).inc()
    llm_request_duration_seconds.labels(agent=agent, model=model).observe(
        duration_ms / 1000.0
    )


def record_llm_error(agent: str, error_type: str) -> None:
    llm_errors_total.labels(agent=agent, error_type=error_type).inc()


def record_llm_tokens_and_cost(
    agent: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    cost_usd: float = 0.0,
) -> None:
    """
    Record token usage and estimated cost.

    Args:
        agent: Logical caller ("intent", "research", "consensus", ...)
        model: Model id
        input_tokens: Prompt tokens reported by the provider
        output_tokens: Completion tokens reported by the provider
        cost_usd: Estimated cost, 0 when no price is configured
    """
    if input_tokens:
        llm_tokens_total.labels(agent=agent, model=model, direction="input").inc(input_tokens)
    if output_tokens:
        llm_tokens_total.labels(agent=agent, model=model, direction="output").inc(output_tokens)
    if cost_usd > 0:
        llm_cost_usd_total.labels(agent=agent, model=model).inc(cost_usd)


def record_llm_low_confidence(agent: str) -> None:
    llm_low_confidence_total.labels(agent=agent).inc()


def record_llm_schema_validation_failure(agent: str) -> None:
    llm_schema_validation_failures_total.labels(agent=agent).inc()


def record_intent_classification(source: str, domain: str) -> None:
    intent_classifications_total.labels(source=source, domain=domain).inc()


def record_workflow_build(workflow_type: str) -> None:
    workflow_builds_total.labels(workflow_type=workflow_type).inc()


def record_step_execution(
    step_type: str,
    outcome: str,
    duration_seconds: Optional[float] = None,
) -> None:
    """
    Record a step outcome.

    Args:
        step_type: Step type value ("research", "text-generation", ...)
        outcome: "success", "skipped" or "failed"
        duration_seconds: Step latency, observed when provided
    """
    step_executions_total.labels(step_type=step_type, outcome=outcome).inc()
    if duration_seconds is not None:
        step_duration_seconds.labels(step_type=step_type).observe(duration_seconds)


def record_quality_score(workflow_type: str, score: float) -> None:
    quality_score_distribution.labels(workflow_type=workflow_type).observe(score)


def record_re_research_cycle(workflow_type: str) -> None:
    re_research_cycles_total.labels(workflow_type=workflow_type).inc()


def record_consensus_branch(outcome: str) -> None:
    consensus_branches_total.labels(outcome=outcome).inc()


def record_orchestration(outcome: str, duration_seconds: float) -> None:
    orchestration_requests_total.labels(outcome=outcome).inc()
    orchestration_duration_seconds.observe(duration_seconds)


def set_circuit_open(circuit: str, is_open: bool) -> None:
    circuit_breaker_open.labels(circuit=circuit).set(1 if is_open else 0)


def get_metrics() -> bytes:
    """Get Prometheus metrics in text exposition format."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
