"""
Unit tests for ConsensusSynthesizer:
- Fan-out with one branch timing out (bounded by the branch timeout)
- A step budget shared by the fan-out and the synthesis call
- Synthesis over the surviving votes
- Judge-based acceptance: synthesis, best vote, or rejection
- ConsensusError when every branch fails

These tests use a scripted in-memory provider and do NOT call any model.
"""
import asyncio
import time

import pytest

from forefront.services.ai.consensus import ConsensusSynthesizer
from forefront.services.ai.errors import ConsensusError
from forefront.services.ai.providers import ProviderOptions, ProviderResult

MODELS = ["model-a", "model-b", "model-c"]


class Slow:
    def __init__(self, seconds: float):
        self.seconds = seconds


class DummyProvider:
    """Scripted ModelProvider keyed by model id."""

    def __init__(self, responses):
        self.responses = dict(responses)
        self.calls = []

    async def invoke(self, model_id, prompt, options):
        self.calls.append((model_id, prompt))
        response = self.responses[model_id]
        if isinstance(response, Slow):
            await asyncio.sleep(response.seconds)
            response = "late"
        if isinstance(response, BaseException):
            raise response
        return ProviderResult(content=response)


@pytest.mark.asyncio
async def test_one_timeout_leaves_two_votes():
    provider = DummyProvider({
        "model-a": "Answer A",
        "model-b": "Answer B",
        "model-c": Slow(5),
        "synth": "Reconciled answer",
    })
    synthesizer = ConsensusSynthesizer(provider, branch_timeout_seconds=0.05)

    start = time.perf_counter()
    outcome = await synthesizer.synthesize("Compare SQL and NoSQL", MODELS, "synth", ProviderOptions())
    elapsed = time.perf_counter() - start

    assert elapsed < 2.0
    assert [v.model_id for v in outcome.votes] == ["model-a", "model-b"]
    assert [(v.model_id, v.error) for v in outcome.failed] == [("model-c", "timeout")]
    assert outcome.content == "Reconciled answer"
    assert outcome.accepted is True
    assert outcome.selected == "synthesis"

    metadata = outcome.metadata()
    assert metadata["votes"] == 2
    assert metadata["failed_models"] == {"model-c": "timeout"}

    synthesis_prompt = next(prompt for model_id, prompt in provider.calls if model_id == "synth")
    assert "# ANSWER 1 (model-a)\nAnswer A" in synthesis_prompt
    assert "# ANSWER 2 (model-b)\nAnswer B" in synthesis_prompt


@pytest.mark.asyncio
async def test_single_vote_skips_synthesis():
    provider = DummyProvider({
        "model-a": "Only answer",
        "model-b": RuntimeError("503"),
        "synth": "never used",
    })
    synthesizer = ConsensusSynthesizer(provider, branch_timeout_seconds=1.0)

    outcome = await synthesizer.synthesize("q", ["model-a", "model-b"], "synth", ProviderOptions())

    assert outcome.content == "Only answer"
    assert outcome.selected == "vote:model-a"
    assert outcome.synthesized is None
    assert all(model_id != "synth" for model_id, _ in provider.calls)


@pytest.mark.asyncio
async def test_all_branches_failing_raises():
    provider = DummyProvider({"model-a": RuntimeError("down"), "model-b": Slow(5)})
    synthesizer = ConsensusSynthesizer(provider, branch_timeout_seconds=0.05)

    with pytest.raises(ConsensusError):
        await synthesizer.synthesize("q", ["model-a", "model-b"], "synth", ProviderOptions())


@pytest.mark.asyncio
async def test_failed_synthesis_falls_back_to_first_vote():
    provider = DummyProvider({
        "model-a": "Answer A",
        "model-b": "Answer B",
        "synth": RuntimeError("synthesis model down"),
    })
    synthesizer = ConsensusSynthesizer(provider, branch_timeout_seconds=1.0)

    outcome = await synthesizer.synthesize("q", ["model-a", "model-b"], "synth", ProviderOptions())

    assert outcome.synthesized is None
    assert outcome.content == "Answer A"


@pytest.mark.asyncio
async def test_judge_prefers_best_vote_when_synthesis_rejected():
    provider = DummyProvider({"model-a": "weak", "model-b": "strong", "synth": "muddled"})
    scores = {"weak": 0.4, "strong": 0.9, "muddled": 0.5}

    def judge(candidate):
        return scores[candidate] >= 0.8, scores[candidate]

    synthesizer = ConsensusSynthesizer(provider, branch_timeout_seconds=1.0)
    outcome = await synthesizer.synthesize(
        "q", ["model-a", "model-b"], "synth", ProviderOptions(), judge=judge
    )

    assert outcome.accepted is True
    assert outcome.content == "strong"
    assert outcome.selected == "vote:model-b"
    assert outcome.score == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_judge_rejecting_everything_marks_outcome_unaccepted():
    provider = DummyProvider({"model-a": "weak", "model-b": "weaker", "synth": "muddled"})

    def judge(candidate):
        return False, 0.1

    synthesizer = ConsensusSynthesizer(provider, branch_timeout_seconds=1.0)
    outcome = await synthesizer.synthesize(
        "q", ["model-a", "model-b"], "synth", ProviderOptions(), judge=judge
    )

    assert outcome.accepted is False
    assert outcome.metadata()["accepted"] is False


@pytest.mark.asyncio
async def test_step_budget_bounds_fan_out_and_synthesis():
    provider = DummyProvider({
        "model-a": "Answer A",
        "model-b": "Answer B",
        "model-c": Slow(5),
        "synth": Slow(5),
    })
    synthesizer = ConsensusSynthesizer(provider, branch_timeout_seconds=5.0)

    start = time.perf_counter()
    outcome = await synthesizer.synthesize(
        "q", MODELS, "synth", ProviderOptions(), step_timeout_seconds=0.2
    )
    elapsed = time.perf_counter() - start

    # Both calls together stay within one step budget, not two branch timeouts
    assert elapsed < 1.0
    assert [(v.model_id, v.error) for v in outcome.failed] == [("model-c", "timeout")]
    assert outcome.synthesized is None
    assert outcome.content == "Answer A"
