"""
Unit tests for the Orchestrator:
- End-to-end scenarios: image, research with re-research, code, consensus
- Bounded re-research and the quality report trail
- Recoverable fallbacks (classification, plan building, consensus)
- Terminal failures: generation step error or timeout, request timeout
- Cancellation, streaming callbacks, persistence and conversation history
- Trace correlation and process startup/shutdown

These tests use in-memory stubs/mocks only and do NOT perform real HTTP calls.
"""
import asyncio

import pytest

from forefront.core import tracing
from forefront.core.config import OrchestratorSettings
from forefront.core.logging import get_trace_id
from forefront.services.ai import orchestration
from forefront.services.ai.agents.intent import IntentClassifier
from forefront.services.ai.agents.refine import QueryRefinementAgent
from forefront.services.ai.consensus import ConsensusSynthesizer
from forefront.services.ai.context import QueueCallbacks
from forefront.services.ai.errors import OrchestrationError, PlanBuildError
from forefront.services.ai.executor import StepExecutor
from forefront.services.ai.orchestration import Orchestrator, get_orchestrator, shutdown, startup
from forefront.services.ai.providers import ProviderResult
from forefront.services.ai.schema import (
    ConversationTurn,
    IntentSource,
    OrchestratorRequest,
    OrchestratorState,
    StepType,
    TaskType,
    WorkflowType,
)
from forefront.services.ai.validation import QualityValidator
from forefront.services.ai.workflow import WorkflowBuilder

S = OrchestratorState

IMAGE_MESSAGE = "Draw a cat wearing a space helmet"
IMAGE_ANSWER = "![Generated image](https://img.example/cat.png)"

RESEARCH_MESSAGE = "Research the latest breakthroughs in solid-state batteries"
WEAK_RESEARCH = "Weak findings."
WEAK_ANSWER = "Batteries are improving."
STRONG_RESEARCH = (
    "According to a 2024 study, the latest breakthroughs in solid-state batteries "
    "raised energy density by 40% [1][2]."
)
STRONG_ANSWER = (
    "The latest breakthroughs in solid-state batteries come from sulfide electrolytes, "
    "according to a 2024 study [1]. Reports at https://example.org/a and "
    "https://example.org/b describe faster charging and longer cycle life."
)

CODE_MESSAGE = "Write a Python function that parses CSV files"
CODE_ANSWER = (
    "```python\nimport csv\n\ndef parse_csv(path):\n    with open(path) as handle:\n"
    "        return list(csv.DictReader(handle))\n```\n\n"
    "This function parses CSV files with the csv module and returns each row as a "
    "dictionary keyed by column name."
)
SYNTH_ANSWER = (
    "```python\nimport csv\n\ndef parse_csv(path):\n    with open(path, newline='') as handle:\n"
    "        return list(csv.DictReader(handle))\n```\n\n"
    "Both answers agree: this function parses CSV files with the standard csv module and "
    "returns every row as a dictionary keyed by the header names."
)


class Slow:
    def __init__(self, seconds: float):
        self.seconds = seconds


class DummyProvider:
    """Scripted ModelProvider; responses are looked up by (agent, model), agent, then model."""

    def __init__(self, responses=None, default: str = "Default answer."):
        self.responses = dict(responses or {})
        self.default = default
        self.calls = []

    async def invoke(self, model_id, prompt, options):
        self.calls.append((options.agent, model_id, prompt, options))
        response = self.default
        for key in ((options.agent, model_id), options.agent, model_id):
            if key in self.responses:
                response = self.responses[key]
                break
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Slow):
            await asyncio.sleep(response.seconds)
            response = "late"
        if isinstance(response, BaseException):
            raise response
        return ProviderResult(content=response)

    def prompts_for(self, agent):
        return [prompt for a, _, prompt, _ in self.calls if a == agent]

    def options_for(self, agent):
        return [options for a, _, _, options in self.calls if a == agent]


class DummyLLMClient:
    """Classifier client that is always unavailable, so inconclusive requests fall back."""

    async def chat(self, agent, messages, model=None, max_tokens=0, temperature=0.0,
                   response_format=None, timeout=None):
        raise RuntimeError("groq API key not configured")


class RecordingCallbacks:
    """Collects (kind, id) pairs in emission order."""

    def __init__(self):
        self.events = []

    def on_step_start(self, event):
        self.events.append(("start", event.step_id))

    def on_step_complete(self, result):
        self.events.append(("complete", result.step_id))

    def on_coordinator_update(self, update):
        self.events.append(("update", update.stage))

    def step_events(self, step_id):
        return [kind for kind, name in self.events if name == step_id and kind != "update"]


class RecordingSink:
    def __init__(self):
        self.saved = []

    async def save(self, request, response):
        self.saved.append((request, response))


class FailingSink:
    async def save(self, request, response):
        raise ConnectionError("database unavailable")


class DummyHistoryProvider:
    def __init__(self, turns):
        self.turns = turns
        self.calls = 0

    async def get_history(self, session_id):
        self.calls += 1
        return self.turns


def _settings(**overrides):
    values = dict(
        step_timeout_seconds=5.0,
        request_timeout_seconds=10.0,
        re_research_budget=1,
        consensus_models=("model-a", "model-b", "model-c"),
        consensus_branch_timeout_seconds=0.05,
        synthesis_model="synth",
    )
    values.update(overrides)
    return OrchestratorSettings(**values)


def _orchestrator(provider, settings=None, **kwargs):
    settings = settings or _settings()
    return Orchestrator(
        settings=settings,
        classifier=IntentClassifier(confidence_threshold=0.6, llm_client=DummyLLMClient()),
        executor=StepExecutor(
            provider, ConsensusSynthesizer(provider, settings.consensus_branch_timeout_seconds)
        ),
        validator=QualityValidator(settings.re_research_categories),
        refiner=QueryRefinementAgent(settings.re_research_categories),
        **kwargs,
    )


# ============================================================================
# SCENARIOS
# ============================================================================


@pytest.mark.asyncio
async def test_simple_image_request():
    provider = DummyProvider({"image-generation": IMAGE_ANSWER})

    response = await _orchestrator(provider).execute(OrchestratorRequest(message=IMAGE_MESSAGE))

    assert response.intent.task_type == TaskType.IMAGE_GENERATION
    assert response.workflow.workflow_type == WorkflowType.IMAGE_GENERATION
    assert [r.step_type for r in response.steps] == [StepType.IMAGE_GENERATION]
    assert response.response == IMAGE_ANSWER
    assert response.quality_score == pytest.approx(1.0)
    assert response.re_research_performed is False
    assert response.states == (S.CLASSIFY, S.BUILD_PLAN, S.EXECUTE, S.VALIDATE, S.DONE)
    assert response.execution_time_ms > 0


@pytest.mark.asyncio
async def test_research_request_with_one_re_research_cycle():
    provider = DummyProvider({
        "research": [WEAK_RESEARCH, STRONG_RESEARCH],
        "text-generation": [WEAK_ANSWER, STRONG_ANSWER],
    })

    response = await _orchestrator(provider).execute(OrchestratorRequest(message=RESEARCH_MESSAGE))

    assert response.workflow.workflow_type == WorkflowType.RESEARCH_SUMMARY
    assert response.re_research_performed is True
    assert response.re_research_iterations == 1
    assert [s.id for s in response.workflow.steps] == [
        "research",
        "text-generation",
        "research-retry1",
        "text-generation-retry1",
    ]

    first, second = response.quality_reports
    assert first.needs_re_research is True
    assert second.passed
    assert response.quality_score == second.overall_score
    for report in response.quality_reports:
        assert report.gates == response.workflow.quality_gates

    assert provider.prompts_for("research") == [
        RESEARCH_MESSAGE,
        RESEARCH_MESSAGE
        + "\n\nBe more specific about cited sources for latest breakthroughs in solid-state batteries.",
    ]
    assert STRONG_RESEARCH in provider.prompts_for("text-generation")[1]
    assert "https://example.org/a" in response.response
    assert WEAK_ANSWER not in response.response
    assert response.states == (
        S.CLASSIFY, S.BUILD_PLAN, S.EXECUTE, S.VALIDATE,
        S.REFINE_AND_REEXECUTE, S.VALIDATE, S.DONE,
    )


@pytest.mark.asyncio
async def test_re_research_is_bounded_by_budget():
    provider = DummyProvider({"research": WEAK_RESEARCH, "text-generation": WEAK_ANSWER})
    orchestrator = _orchestrator(provider, _settings(re_research_budget=2))

    response = await orchestrator.execute(OrchestratorRequest(message=RESEARCH_MESSAGE))

    assert response.re_research_iterations == 2
    assert len(response.quality_reports) == 3
    assert len(provider.prompts_for("research")) == 3
    assert response.states.count(S.REFINE_AND_REEXECUTE) == 2
    retry2 = response.workflow.get_step("research-retry2")
    assert retry2.supersedes == "research-retry1"
    assert response.workflow.get_step("text-generation-retry2").depends_on == "research-retry2"


@pytest.mark.asyncio
async def test_re_research_can_be_disabled():
    provider = DummyProvider({"research": WEAK_RESEARCH, "text-generation": WEAK_ANSWER})

    response = await _orchestrator(provider).execute(
        OrchestratorRequest(message=RESEARCH_MESSAGE, enable_re_research=False)
    )

    assert response.re_research_iterations == 0
    assert len(response.quality_reports) == 1
    assert response.quality_reports[0].needs_re_research is True
    assert len(provider.prompts_for("research")) == 1


@pytest.mark.asyncio
async def test_quality_validation_can_be_disabled():
    provider = DummyProvider({"image-generation": IMAGE_ANSWER})

    response = await _orchestrator(provider).execute(
        OrchestratorRequest(message=IMAGE_MESSAGE, enable_quality_validation=False)
    )

    assert response.quality_score is None
    assert response.quality_reports == ()
    assert S.VALIDATE not in response.states


@pytest.mark.asyncio
async def test_coding_request_without_research():
    provider = DummyProvider({"code-generation": CODE_ANSWER})

    response = await _orchestrator(provider).execute(OrchestratorRequest(message=CODE_MESSAGE))

    assert response.workflow.workflow_type == WorkflowType.CODE_GENERATION
    assert [s.step_type for s in response.workflow.steps] == [StepType.CODE_GENERATION]
    assert response.response == CODE_ANSWER
    assert response.quality_reports[0].passed


@pytest.mark.asyncio
async def test_consensus_with_one_branch_timing_out():
    provider = DummyProvider({
        "code-generation": CODE_ANSWER,
        "model-a": "Vote A",
        "model-b": "Vote B",
        "model-c": Slow(5),
        "synth": SYNTH_ANSWER,
    })
    callbacks = RecordingCallbacks()

    response = await _orchestrator(provider).execute(
        OrchestratorRequest(message=CODE_MESSAGE, enable_consensus=True), callbacks
    )

    # One start/complete pair around the whole fan-out
    assert callbacks.step_events("consensus") == ["start", "complete"]
    assert response.consensus_used is True
    assert response.response == SYNTH_ANSWER
    consensus_step = response.workflow.steps[-1]
    assert consensus_step.step_type == StepType.CONSENSUS
    assert consensus_step.supersedes == "code-generation"
    assert consensus_step.branch_model_ids == ("model-a", "model-b", "model-c")

    consensus_result = response.steps[-1]
    assert consensus_result.metadata["votes"] == 2
    assert consensus_result.metadata["failed_models"] == {"model-c": "timeout"}
    assert len(response.quality_reports) == 2
    assert response.states[-2:] == (S.CONSENSUS_SYNTHESIS, S.DONE)


@pytest.mark.asyncio
async def test_rejected_consensus_keeps_previous_answer():
    provider = DummyProvider({
        "code-generation": CODE_ANSWER,
        "model-a": "meh",
        "model-b": "meh",
        "model-c": "meh",
        "synth": "still meh",
    })

    response = await _orchestrator(provider).execute(
        OrchestratorRequest(message=CODE_MESSAGE, enable_consensus=True)
    )

    assert response.consensus_used is False
    assert response.response == CODE_ANSWER
    assert response.steps[-1].metadata["accepted"] is False
    assert len(response.quality_reports) == 1


@pytest.mark.asyncio
async def test_failed_consensus_is_not_fatal():
    provider = DummyProvider({
        "code-generation": CODE_ANSWER,
        "model-a": RuntimeError("down"),
        "model-b": RuntimeError("down"),
        "model-c": RuntimeError("down"),
    })
    callbacks = RecordingCallbacks()

    response = await _orchestrator(provider).execute(
        OrchestratorRequest(message=CODE_MESSAGE, enable_consensus=True), callbacks
    )

    assert response.consensus_used is False
    assert response.response == CODE_ANSWER
    assert response.states[-1] == S.DONE

    # The abandoned consensus step is closed with an unaccepted, failed result
    assert [s.id for s in response.workflow.steps] == ["code-generation", "consensus"]
    assert len(response.steps) == len(response.workflow.steps)
    failed = response.steps[-1]
    assert failed.step_id == "consensus"
    assert failed.error
    assert failed.metadata["accepted"] is False
    assert callbacks.step_events("consensus") == ["start", "complete"]
    assert ("update", "consensus-failed") in callbacks.events


# ============================================================================
# FALLBACKS & FAILURES
# ============================================================================


@pytest.mark.asyncio
async def test_inconclusive_classification_uses_default_intent():
    provider = DummyProvider()

    response = await _orchestrator(provider).execute(OrchestratorRequest(message="Tell me something nice"))

    assert response.intent.source == IntentSource.DEFAULT
    assert response.workflow.workflow_type == WorkflowType.DIRECT_GENERATION
    assert response.response == "Default answer."
    assert response.re_research_performed is False


@pytest.mark.asyncio
async def test_plan_build_failure_uses_minimal_workflow():
    class BrokenBuilder(WorkflowBuilder):
        def build(self, intent, semantics):
            raise PlanBuildError("template produced a cycle")

    provider = DummyProvider({"text-generation": "Plain answer."})

    response = await _orchestrator(provider, builder=BrokenBuilder()).execute(
        OrchestratorRequest(message=RESEARCH_MESSAGE)
    )

    assert response.workflow.workflow_type == WorkflowType.DIRECT_GENERATION
    assert [s.step_type for s in response.workflow.steps] == [StepType.TEXT_GENERATION]


@pytest.mark.asyncio
async def test_generation_failure_surfaces_partial_results():
    provider = DummyProvider({
        "research": "FINDINGS",
        "text-generation": RuntimeError("upstream 503"),
    })
    sink = RecordingSink()

    with pytest.raises(OrchestrationError) as exc_info:
        await _orchestrator(provider, persistence=sink).execute(
            OrchestratorRequest(message=RESEARCH_MESSAGE)
        )

    assert exc_info.value.stage == S.EXECUTE.value
    assert [r.step_id for r in exc_info.value.partial_results] == ["research"]
    assert sink.saved == []


@pytest.mark.asyncio
async def test_generation_step_timeout_is_terminal():
    provider = DummyProvider({"research": "FINDINGS", "text-generation": Slow(5)})
    callbacks = RecordingCallbacks()
    orchestrator = _orchestrator(provider, _settings(step_timeout_seconds=0.05))

    with pytest.raises(OrchestrationError) as exc_info:
        await orchestrator.execute(OrchestratorRequest(message=RESEARCH_MESSAGE), callbacks)

    assert exc_info.value.stage == S.EXECUTE.value
    assert [r.step_id for r in exc_info.value.partial_results] == ["research"]
    assert callbacks.step_events("research") == ["start", "complete"]
    assert callbacks.step_events("text-generation") == ["start"]


@pytest.mark.asyncio
async def test_request_timeout_surfaces_partial_results():
    provider = DummyProvider({"research": "FINDINGS", "text-generation": Slow(5)})
    orchestrator = _orchestrator(provider, _settings(request_timeout_seconds=0.2))

    with pytest.raises(OrchestrationError) as exc_info:
        await orchestrator.execute(OrchestratorRequest(message=RESEARCH_MESSAGE))

    assert "timed out" in str(exc_info.value)
    assert [r.step_id for r in exc_info.value.partial_results] == ["research"]


@pytest.mark.asyncio
async def test_cancellation_propagates_and_nothing_is_persisted():
    provider = DummyProvider({"research": Slow(5)})
    sink = RecordingSink()
    orchestrator = _orchestrator(provider, persistence=sink)

    task = asyncio.create_task(orchestrator.execute(OrchestratorRequest(message=RESEARCH_MESSAGE)))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert sink.saved == []


# ============================================================================
# CALLBACKS, PERSISTENCE, HISTORY
# ============================================================================


@pytest.mark.asyncio
async def test_queue_callbacks_receive_ordered_events():
    provider = DummyProvider({"image-generation": IMAGE_ANSWER})
    callbacks = QueueCallbacks()

    await _orchestrator(provider).execute(OrchestratorRequest(message=IMAGE_MESSAGE), callbacks)
    callbacks.close()

    events = []
    while True:
        event = callbacks.queue.get_nowait()
        if event is None:
            break
        events.append(event)

    assert [e.kind for e in events] == [
        "coordinator-update",
        "coordinator-update",
        "step-start",
        "step-complete",
    ]
    assert [e.payload.stage for e in events[:2]] == ["classified", "plan-built"]
    assert events[2].payload.step_id == events[3].payload.step_id == "image-generation"
    assert events[3].to_dict()["type"] == "step-complete"


@pytest.mark.asyncio
async def test_successful_response_is_persisted_once():
    provider = DummyProvider({"image-generation": IMAGE_ANSWER})
    sink = RecordingSink()
    request = OrchestratorRequest(message=IMAGE_MESSAGE, session_id="s-1")

    response = await _orchestrator(provider, persistence=sink).execute(request)

    assert sink.saved == [(request, response)]


@pytest.mark.asyncio
async def test_persistence_failure_does_not_fail_the_request():
    provider = DummyProvider({"image-generation": IMAGE_ANSWER})

    response = await _orchestrator(provider, persistence=FailingSink()).execute(
        OrchestratorRequest(message=IMAGE_MESSAGE)
    )

    assert response.response == IMAGE_ANSWER


@pytest.mark.asyncio
async def test_history_is_loaded_and_trimmed():
    turns = [ConversationTurn(role="user", content=f"turn {i}") for i in range(12)]
    history_provider = DummyHistoryProvider(turns)
    provider = DummyProvider({"code-generation": CODE_ANSWER})
    orchestrator = _orchestrator(
        provider, _settings(history_max_turns=4), history_provider=history_provider
    )

    await orchestrator.execute(OrchestratorRequest(message=CODE_MESSAGE, session_id="s-1"))

    history = provider.options_for("code-generation")[0].history
    assert [t.content for t in history] == ["turn 8", "turn 9", "turn 10", "turn 11"]


@pytest.mark.asyncio
async def test_request_history_takes_precedence():
    history_provider = DummyHistoryProvider([ConversationTurn(role="user", content="stored")])
    provider = DummyProvider({"code-generation": CODE_ANSWER})
    inline = (ConversationTurn(role="user", content="inline"),)

    await _orchestrator(provider, history_provider=history_provider).execute(
        OrchestratorRequest(message=CODE_MESSAGE, session_id="s-1", history=inline)
    )

    assert history_provider.calls == 0
    assert provider.options_for("code-generation")[0].history == inline


@pytest.mark.asyncio
async def test_logs_carry_the_request_trace_id():
    seen = []

    class TraceRecordingProvider(DummyProvider):
        async def invoke(self, model_id, prompt, options):
            seen.append(get_trace_id())
            return await super().invoke(model_id, prompt, options)

    provider = TraceRecordingProvider({"code-generation": CODE_ANSWER})

    await _orchestrator(provider).execute(OrchestratorRequest(message=CODE_MESSAGE))

    assert len(seen) == 1
    assert seen[0] is not None and len(seen[0]) == 32


@pytest.mark.asyncio
async def test_startup_and_shutdown_manage_process_resources():
    orchestrator = startup(_settings())

    assert get_orchestrator() is orchestrator
    assert tracing._tracer is not None

    await shutdown()

    assert tracing._tracer is None
    assert orchestration._orchestrator is None
