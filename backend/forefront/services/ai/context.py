"""
Request-scoped execution context and the collaborator interfaces around it.

The context is created once per request and passed explicitly through every
stage; nothing in it is shared with other requests.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, Union

from forefront.core.logging import get_logger
from forefront.services.ai.schema import (
    ConversationTurn,
    CoordinatorUpdate,
    Intent,
    OrchestratorRequest,
    OrchestratorResponse,
    Semantics,
    StepResult,
    StepStartEvent,
)

logger = get_logger(__name__)


# ============================================================================
# PROGRESS CALLBACKS
# ============================================================================


class ProgressCallbacks(Protocol):
    """Synchronous progress hooks, invoked in step execution order."""

    def on_step_start(self, event: StepStartEvent) -> None:
        ...

    def on_step_complete(self, result: StepResult) -> None:
        ...

    def on_coordinator_update(self, update: CoordinatorUpdate) -> None:
        ...


class NullCallbacks:
    """Callbacks for the synchronous-return variant."""

    def on_step_start(self, event: StepStartEvent) -> None:
        pass

    def on_step_complete(self, result: StepResult) -> None:
        pass

    def on_coordinator_update(self, update: CoordinatorUpdate) -> None:
        pass


@dataclass(frozen=True)
class StepEvent:
    """One progress event as drained by a streaming transport."""

    kind: str  # step-start | step-complete | coordinator-update
    payload: Union[StepStartEvent, StepResult, CoordinatorUpdate]

    def to_dict(self) -> dict:
        return {"type": self.kind, "data": self.payload.model_dump(mode="json")}


class QueueCallbacks:
    """
    Writes ordered StepEvents to an asyncio.Queue.

    The transport drains the queue at its own pace, so a slow client never
    blocks step execution. ``close()`` enqueues a ``None`` sentinel.
    """

    def __init__(self, queue: Optional["asyncio.Queue[Optional[StepEvent]]"] = None):
        self.queue: "asyncio.Queue[Optional[StepEvent]]" = (
            queue if queue is not None else asyncio.Queue()
        )

    def on_step_start(self, event: StepStartEvent) -> None:
        self.queue.put_nowait(StepEvent("step-start", event))

    def on_step_complete(self, result: StepResult) -> None:
        self.queue.put_nowait(StepEvent("step-complete", result))

    def on_coordinator_update(self, update: CoordinatorUpdate) -> None:
        self.queue.put_nowait(StepEvent("coordinator-update", update))

    def close(self) -> None:
        self.queue.put_nowait(None)


# ============================================================================
# EXTERNAL COLLABORATORS
# ============================================================================


class ConversationHistoryProvider(Protocol):
    async def get_history(self, session_id: str) -> Sequence[ConversationTurn]:
        ...


class PersistenceSink(Protocol):
    async def save(
        self, request: OrchestratorRequest, response: OrchestratorResponse
    ) -> None:
        ...


def trim_history(
    turns: Sequence[ConversationTurn],
    max_turns: int,
    max_chars: int,
) -> Tuple[ConversationTurn, ...]:
    """
    Keep the most recent turns that fit both budgets, in original order.

    A single turn longer than the character budget is dropped rather than cut.
    """
    kept: List[ConversationTurn] = []
    used = 0
    for turn in reversed(turns):
        if len(kept) >= max_turns:
            break
        if len(turn.content) > max_chars:
            continue
        if used + len(turn.content) > max_chars:
            break
        kept.append(turn)
        used += len(turn.content)
    kept.reverse()
    return tuple(kept)


# ============================================================================
# EXECUTION CONTEXT
# ============================================================================

# (candidate content) -> (accepted, score)
AnswerJudge = Callable[[str], Tuple[bool, float]]


@dataclass
class ExecutionContext:
    """Everything one request's execution needs, passed explicitly between stages."""

    request: OrchestratorRequest
    intent: Intent
    semantics: Semantics
    request_id: str
    history: Tuple[ConversationTurn, ...] = ()
    step_timeout_seconds: float = 60.0
    results: List[StepResult] = field(default_factory=list)
    answer_judge: Optional[AnswerJudge] = None

    @property
    def message(self) -> str:
        return self.request.message

    def result_for(self, step_id: str) -> Optional[StepResult]:
        for result in self.results:
            if result.step_id == step_id:
                return result
        return None


def emit_safely(callback: Callable, payload, stage: str) -> None:
    """Invoke a progress callback; a failing callback never stops the pipeline."""
    try:
        callback(payload)
    except Exception as exc:
        logger.warning(
            "progress_callback_failed",
            stage=stage,
            error=str(exc),
            error_type=type(exc).__name__,
        )
