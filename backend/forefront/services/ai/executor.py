"""
Step executor.

Walks a workflow in plan order. For each step:
1. Emit on_step_start
2. Resolve the input (raw message, input override, or the nearest completed
   ancestor's output plus the message for chained steps)
3. Invoke the bound model under the per-step timeout
4. On success append the StepResult and emit on_step_complete
5. On failure skip research/enhancement steps (coordinator update, input passes
   through) or abort on generation steps with StepExecutionError

Results are appended to the request's ExecutionContext in execution order, so
partial results survive a terminal failure or a request timeout.
"""
import asyncio
import time
from typing import Dict, List, Optional, Sequence

from forefront.core.logging import get_logger
from forefront.core.metrics import record_step_execution
from forefront.core.tracing import get_tracer
from forefront.services.ai.catalog import model_label
from forefront.services.ai.consensus import ConsensusSynthesizer
from forefront.services.ai.context import (
    ExecutionContext,
    NullCallbacks,
    ProgressCallbacks,
    emit_safely,
)
from forefront.services.ai.errors import StepExecutionError
from forefront.services.ai.prompts import STEP_LABELS, chained_input, role_prompt
from forefront.services.ai.providers import ModelProvider, ProviderOptions, get_provider_pool
from forefront.services.ai.schema import (
    USER_FACING_STEP_TYPES,
    CoordinatorUpdate,
    OrchestratorResponse,
    Step,
    StepResult,
    StepStartEvent,
    StepType,
    Workflow,
)

logger = get_logger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"

MAX_TOKENS: Dict[StepType, int] = {
    StepType.RESEARCH: 2048,
    StepType.PROMPT_ENHANCEMENT: 512,
    StepType.TEXT_GENERATION: 2048,
    StepType.REASONING: 2048,
    StepType.CODE_GENERATION: 4096,
    StepType.CONSENSUS: 2048,
}

TEMPERATURES: Dict[StepType, float] = {
    StepType.RESEARCH: 0.2,
    StepType.PROMPT_ENHANCEMENT: 0.7,
    StepType.TEXT_GENERATION: 0.7,
    StepType.REASONING: 0.3,
    StepType.CODE_GENERATION: 0.2,
    StepType.CONSENSUS: 0.7,
}

# Step types that see the conversation history
HISTORY_STEP_TYPES = frozenset(
    {StepType.TEXT_GENERATION, StepType.REASONING, StepType.CODE_GENERATION, StepType.CONSENSUS}
)


def visible_results(workflow: Workflow, results: Sequence[StepResult]) -> List[StepResult]:
    """Results that make up the answer: rejected results and superseded ones are hidden."""
    accepted = [r for r in results if r.metadata.get("accepted", True)]
    superseded = set()
    for result in accepted:
        step = workflow.get_step(result.step_id)
        if step is not None and step.supersedes:
            superseded.add(step.supersedes)
    return [r for r in accepted if r.step_id not in superseded]


def _template_type(step: Step, workflow: Workflow) -> StepType:
    """Consensus steps prompt and answer like the step they replace."""
    if step.step_type == StepType.CONSENSUS and step.supersedes:
        replaced = workflow.get_step(step.supersedes)
        if replaced is not None:
            return replaced.step_type
    return step.step_type


class StepExecutor:
    """Executes workflow steps sequentially against the provider pool."""

    def __init__(
        self,
        provider: Optional[ModelProvider] = None,
        consensus: Optional[ConsensusSynthesizer] = None,
    ):
        self._provider = provider or get_provider_pool()
        self._consensus = consensus or ConsensusSynthesizer(self._provider)

    async def execute(
        self,
        workflow: Workflow,
        context: ExecutionContext,
        callbacks: Optional[ProgressCallbacks] = None,
        start_index: int = 0,
    ) -> OrchestratorResponse:
        """
        Run ``workflow.steps[start_index:]`` and assemble the response.

        Raises:
            StepExecutionError when a generation step fails; its
            ``partial_results`` hold every result produced so far.
        """
        callbacks = callbacks or NullCallbacks()
        for index in range(start_index, len(workflow.steps)):
            await self._run_step(workflow, index, context, callbacks)
        return self.assemble(workflow, context)

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        workflow: Workflow,
        index: int,
        context: ExecutionContext,
        callbacks: ProgressCallbacks,
    ) -> None:
        step = workflow.steps[index]
        emit_safely(
            callbacks.on_step_start,
            StepStartEvent(
                step_id=step.id,
                step_type=step.step_type,
                model_id=step.model_id,
                purpose=step.purpose,
                index=index,
                total_steps=len(workflow.steps),
            ),
            "step_start",
        )

        prompt = self.resolve_input(step, workflow, context)
        options = self._options_for(step, workflow, context)
        start = time.perf_counter()
        reason: Optional[str] = None
        content = ""
        metadata: dict = {}

        with get_tracer().start_as_current_span(f"step.{step.step_type.value}") as span:
            span.set_attribute("step.id", step.id)
            span.set_attribute("step.model_id", step.model_id)
            try:
                if step.step_type == StepType.CONSENSUS:
                    outcome = await self._consensus.synthesize(
                        prompt=prompt,
                        model_ids=step.branch_model_ids,
                        synthesis_model=step.model_id,
                        options=options,
                        judge=context.answer_judge,
                        step_timeout_seconds=context.step_timeout_seconds,
                    )
                    content, metadata = outcome.content, outcome.metadata()
                else:
                    result = await asyncio.wait_for(
                        self._provider.invoke(step.model_id, prompt, options),
                        timeout=context.step_timeout_seconds,
                    )
                    content, metadata = result.content, dict(result.metadata)
            except asyncio.TimeoutError:
                reason = f"timed out after {context.step_timeout_seconds}s"
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
            if reason is not None:
                span.set_attribute("step.failed", True)

        duration = time.perf_counter() - start

        if reason is not None:
            self._handle_failure(step, reason, duration, context, callbacks)
            return

        step_result = StepResult(
            step_id=step.id,
            step_type=step.step_type,
            model_id=step.model_id,
            content=content,
            execution_time_ms=round(duration * 1000.0, 2),
            metadata=metadata,
        )
        context.results.append(step_result)
        record_step_execution(step.step_type.value, "success", duration)
        logger.info(
            "step_completed",
            step_id=step.id,
            step_type=step.step_type.value,
            model=step.model_id,
            execution_time_ms=step_result.execution_time_ms,
        )
        emit_safely(callbacks.on_step_complete, step_result, "step_complete")

    def _handle_failure(
        self,
        step: Step,
        reason: str,
        duration: float,
        context: ExecutionContext,
        callbacks: ProgressCallbacks,
    ) -> None:
        if step.is_skippable:
            record_step_execution(step.step_type.value, "skipped", duration)
            logger.warning(
                "step_skipped",
                step_id=step.id,
                step_type=step.step_type.value,
                model=step.model_id,
                reason=reason,
            )
            emit_safely(
                callbacks.on_coordinator_update,
                CoordinatorUpdate(
                    stage="step-skipped",
                    notes=f"{STEP_LABELS[step.step_type]} failed; continuing with the original input",
                    data={"step_id": step.id, "reason": reason},
                ),
                "coordinator_update",
            )
            return

        record_step_execution(step.step_type.value, "failed", duration)
        logger.error(
            "step_failed",
            step_id=step.id,
            step_type=step.step_type.value,
            model=step.model_id,
            reason=reason,
        )
        raise StepExecutionError(step, reason, fatal=True, partial_results=context.results)

    # ------------------------------------------------------------------
    # Input resolution
    # ------------------------------------------------------------------

    def resolve_input(self, step: Step, workflow: Workflow, context: ExecutionContext) -> str:
        message = step.input_override or context.message
        if not step.chained:
            return message

        ancestor = self._nearest_completed_ancestor(step, workflow, context)
        if ancestor is None:
            # Every ancestor was skipped: pass the request through unchanged.
            return message

        return chained_input(_template_type(step, workflow), ancestor.content, message)

    @staticmethod
    def _nearest_completed_ancestor(
        step: Step, workflow: Workflow, context: ExecutionContext
    ) -> Optional[StepResult]:
        visited = set()
        dependency = step.depends_on
        while dependency is not None and dependency not in visited:
            visited.add(dependency)
            result = context.result_for(dependency)
            if result is not None and result.error is None:
                return result
            parent = workflow.get_step(dependency)
            dependency = parent.depends_on if parent is not None else None
        return None

    def _options_for(
        self, step: Step, workflow: Workflow, context: ExecutionContext
    ) -> ProviderOptions:
        template_type = _template_type(step, workflow)
        return ProviderOptions(
            agent=step.step_type.value,
            system_prompt=role_prompt(template_type),
            history=context.history if step.step_type in HISTORY_STEP_TYPES else (),
            max_tokens=MAX_TOKENS.get(template_type, 2048),
            temperature=TEMPERATURES.get(template_type, 0.7),
            timeout_seconds=context.step_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def assemble(self, workflow: Workflow, context: ExecutionContext) -> OrchestratorResponse:
        """Build the response from the results produced so far."""
        sections = [
            r for r in visible_results(workflow, context.results)
            if r.step_type in USER_FACING_STEP_TYPES
        ]

        if len(sections) == 1:
            response = sections[0].content
        else:
            response = SECTION_SEPARATOR.join(
                f"## Step {number}: {STEP_LABELS[r.step_type]} ({model_label(r.model_id)})"
                f"\n\n{r.content.strip()}"
                for number, r in enumerate(sections, start=1)
            )

        return OrchestratorResponse(
            steps=tuple(context.results),
            intent=context.intent,
            semantics=context.semantics,
            workflow=workflow,
            response=response,
            is_chained=any(step.chained for step in workflow.steps),
        )
