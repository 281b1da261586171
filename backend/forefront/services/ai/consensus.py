"""
Consensus synthesis: fan one prompt out to N models, then reconcile.

Each branch runs under its own timeout; a branch that times out or fails casts
no vote and never blocks the others. The votes are handed to a synthesis model,
and the caller's judge decides whether the synthesized answer (or, failing
that, the best single vote) is accepted.

When the caller passes a step budget, the fan-out and the synthesis call share
it: each call waits for the smaller of the branch timeout and what is left of
the budget.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from forefront.core.logging import get_logger
from forefront.core.metrics import record_consensus_branch
from forefront.services.ai.context import AnswerJudge
from forefront.services.ai.errors import ConsensusError
from forefront.services.ai.prompts import FINAL_COMPOSER, synthesis_prompt
from forefront.services.ai.providers import ModelProvider, ProviderOptions

logger = get_logger(__name__)


@dataclass(frozen=True)
class Vote:
    model_id: str
    content: Optional[str] = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.content is not None


@dataclass
class ConsensusOutcome:
    content: str
    accepted: bool
    selected: str  # "synthesis" or "vote:<model_id>"
    votes: List[Vote] = field(default_factory=list)
    failed: List[Vote] = field(default_factory=list)
    synthesized: Optional[str] = None
    score: Optional[float] = None

    def metadata(self) -> dict:
        return {
            "accepted": self.accepted,
            "selected": self.selected,
            "votes": len(self.votes),
            "vote_models": [v.model_id for v in self.votes],
            "failed_models": {v.model_id: v.error for v in self.failed},
            "synthesized": self.synthesized is not None,
            "quality_score": self.score,
        }


class ConsensusSynthesizer:
    def __init__(self, provider: ModelProvider, branch_timeout_seconds: float = 45.0):
        self._provider = provider
        self.branch_timeout_seconds = branch_timeout_seconds

    def _call_timeout(self, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.branch_timeout_seconds
        remaining = deadline - asyncio.get_running_loop().time()
        return max(0.0, min(self.branch_timeout_seconds, remaining))

    async def _branch(
        self, model_id: str, prompt: str, options: ProviderOptions, timeout: float
    ) -> Vote:
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._provider.invoke(model_id, prompt, options),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            record_consensus_branch("timeout")
            logger.warning(
                "consensus_branch_timeout",
                model=model_id,
                timeout_seconds=timeout,
            )
            return Vote(model_id=model_id, error="timeout")
        except Exception as exc:
            record_consensus_branch("error")
            logger.warning(
                "consensus_branch_failed",
                model=model_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return Vote(model_id=model_id, error=str(exc) or type(exc).__name__)

        record_consensus_branch("vote")
        return Vote(
            model_id=model_id,
            content=result.content,
            execution_time_ms=(time.perf_counter() - start) * 1000.0,
        )

    async def _synthesize(
        self,
        prompt: str,
        votes: Sequence[Vote],
        synthesis_model: str,
        options: ProviderOptions,
        timeout: float,
    ) -> Optional[str]:
        synthesis_options = ProviderOptions(
            agent="consensus",
            system_prompt=FINAL_COMPOSER,
            max_tokens=options.max_tokens,
            temperature=0.2,
            timeout_seconds=options.timeout_seconds,
        )
        try:
            result = await asyncio.wait_for(
                self._provider.invoke(
                    synthesis_model,
                    synthesis_prompt(prompt, [(v.model_id, v.content) for v in votes]),
                    synthesis_options,
                ),
                timeout=timeout,
            )
        except Exception as exc:
            # asyncio.TimeoutError is an Exception subclass as well.
            logger.warning(
                "consensus_synthesis_failed",
                model=synthesis_model,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        return result.content

    async def synthesize(
        self,
        prompt: str,
        model_ids: Sequence[str],
        synthesis_model: str,
        options: ProviderOptions,
        judge: Optional[AnswerJudge] = None,
        step_timeout_seconds: Optional[float] = None,
    ) -> ConsensusOutcome:
        """
        Run the fan-out, the synthesis call and the acceptance check.

        Raises:
            ConsensusError when no branch produced a vote.
        """
        deadline = None
        if step_timeout_seconds is not None:
            deadline = asyncio.get_running_loop().time() + step_timeout_seconds

        fan_out_timeout = self._call_timeout(deadline)
        branches = await asyncio.gather(
            *(self._branch(model_id, prompt, options, fan_out_timeout) for model_id in model_ids)
        )
        votes = [v for v in branches if v.ok]
        failed = [v for v in branches if not v.ok]
        logger.info(
            "consensus_fan_out_completed",
            votes=len(votes),
            failed=len(failed),
            models=list(model_ids),
        )
        if not votes:
            raise ConsensusError(f"all {len(model_ids)} consensus branches failed")

        synthesized: Optional[str] = None
        synthesis_timeout = self._call_timeout(deadline)
        if len(votes) > 1 and synthesis_timeout > 0:
            synthesized = await self._synthesize(
                prompt, votes, synthesis_model, options, synthesis_timeout
            )
        elif len(votes) > 1:
            logger.warning("consensus_synthesis_skipped", reason="step budget exhausted")

        content, accepted, selected, score = self._select(synthesized, votes, judge)
        return ConsensusOutcome(
            content=content,
            accepted=accepted,
            selected=selected,
            votes=votes,
            failed=failed,
            synthesized=synthesized,
            score=score,
        )

    @staticmethod
    def _select(
        synthesized: Optional[str],
        votes: Sequence[Vote],
        judge: Optional[AnswerJudge],
    ) -> Tuple[str, bool, str, Optional[float]]:
        """Synthesis first, then the best-scoring vote; nothing accepted keeps the old answer."""
        if judge is None:
            if synthesized is not None:
                return synthesized, True, "synthesis", None
            return votes[0].content, True, f"vote:{votes[0].model_id}", None

        synthesis_score: Optional[float] = None
        if synthesized is not None:
            accepted, synthesis_score = judge(synthesized)
            if accepted:
                return synthesized, True, "synthesis", synthesis_score

        scored = [(judge(v.content), v) for v in votes]
        # max() keeps the first of equal scores, so branch order breaks ties.
        (best_accepted, best_score), best = max(scored, key=lambda item: item[0][1])
        if best_accepted:
            return best.content, True, f"vote:{best.model_id}", best_score

        if synthesized is not None:
            return synthesized, False, "synthesis", synthesis_score
        return best.content, False, f"vote:{best.model_id}", best_score
