"""
Orchestrator: the request-scoped state machine over the whole pipeline.

CLASSIFY -> BUILD_PLAN -> EXECUTE -> VALIDATE
    -> REFINE_AND_REEXECUTE (bounded by the re-research budget) -> VALIDATE
    -> CONSENSUS_SYNTHESIS (opt-in)
    -> DONE

Recoverable failures degrade in place:
- ClassificationError -> default intent
- PlanBuildError -> minimal single-step workflow
- skippable step failures -> handled by the executor
- consensus failure or rejection -> previous answer stands

A generation step failure in any pass, or the overall request timeout, raises
OrchestrationError with the partial step trace. Cancellation propagates and
nothing is persisted.
"""
import asyncio
import dataclasses
import time
from typing import List, Optional, Tuple

from forefront.core.config import OrchestratorSettings, get_settings
from forefront.core.logging import (
    bind_request_context,
    configure_logging,
    generate_request_id,
    get_logger,
    set_trace_id,
)
from forefront.core.metrics import (
    record_intent_classification,
    record_orchestration,
    record_quality_score,
    record_re_research_cycle,
)
from forefront.core.tracing import (
    configure_tracing,
    get_trace_id_from_context,
    get_tracer,
    record_exception,
    set_span_attribute,
    shutdown_tracing,
)
from forefront.services.ai.agents.intent import IntentClassifier, get_intent_classifier
from forefront.services.ai.agents.refine import QueryRefinementAgent
from forefront.services.ai.agents.semantic import SemanticAnalyzer, get_semantic_analyzer
from forefront.services.ai.catalog import model_for
from forefront.services.ai.consensus import ConsensusSynthesizer
from forefront.services.ai.context import (
    ConversationHistoryProvider,
    ExecutionContext,
    NullCallbacks,
    PersistenceSink,
    ProgressCallbacks,
    emit_safely,
    trim_history,
)
from forefront.services.ai.errors import (
    ClassificationError,
    OrchestrationError,
    PlanBuildError,
    StepExecutionError,
)
from forefront.services.ai.executor import StepExecutor, visible_results
from forefront.services.ai.llm_client import get_llm_client, reset_llm_client
from forefront.services.ai.providers import get_provider_pool
from forefront.services.ai.schema import (
    DEFAULT_INTENT,
    Intent,
    TEXT_LIKE_STEP_TYPES,
    ConversationTurn,
    CoordinatorUpdate,
    OrchestratorRequest,
    OrchestratorResponse,
    OrchestratorState,
    QualityReport,
    Step,
    StepResult,
    StepType,
    Workflow,
)
from forefront.services.ai.validation import QualityValidator
from forefront.services.ai.workflow import WorkflowBuilder, get_workflow_builder

logger = get_logger(__name__)

RETRY_MARKER = "-retry"


@dataclasses.dataclass
class _RequestState:
    """Progress of one request, readable after a timeout."""

    states: List[OrchestratorState] = dataclasses.field(default_factory=list)
    context: Optional[ExecutionContext] = None

    @property
    def current(self) -> str:
        return self.states[-1].value if self.states else OrchestratorState.CLASSIFY.value

    def enter(self, state: OrchestratorState) -> None:
        self.states.append(state)
        logger.debug("orchestrator_state", state=state.value)

    def partial_results(self) -> Tuple[StepResult, ...]:
        return tuple(self.context.results) if self.context else ()


def _effective_steps(workflow: Workflow) -> List[Step]:
    """Plan steps not replaced by a later appended step."""
    replaced = {step.supersedes for step in workflow.steps if step.supersedes}
    return [step for step in workflow.steps if step.id not in replaced]


def _retry_id(step_id: str, iteration: int) -> str:
    return f"{step_id.split(RETRY_MARKER, 1)[0]}{RETRY_MARKER}{iteration}"


class Orchestrator:
    """Composes analysis, classification, planning, execution and validation."""

    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        analyzer: Optional[SemanticAnalyzer] = None,
        classifier: Optional[IntentClassifier] = None,
        builder: Optional[WorkflowBuilder] = None,
        executor: Optional[StepExecutor] = None,
        validator: Optional[QualityValidator] = None,
        refiner: Optional[QueryRefinementAgent] = None,
        history_provider: Optional[ConversationHistoryProvider] = None,
        persistence: Optional[PersistenceSink] = None,
    ):
        self.settings = settings or get_settings()
        self._analyzer = analyzer or get_semantic_analyzer()
        self._classifier = classifier or get_intent_classifier()
        self._builder = builder or get_workflow_builder()
        if executor is None:
            provider = get_provider_pool()
            executor = StepExecutor(
                provider,
                ConsensusSynthesizer(provider, self.settings.consensus_branch_timeout_seconds),
            )
        self._executor = executor
        self._validator = validator or QualityValidator(self.settings.re_research_categories)
        self._refiner = refiner or QueryRefinementAgent(self.settings.re_research_categories)
        self._history_provider = history_provider
        self._persistence = persistence

    async def execute(
        self,
        request: OrchestratorRequest,
        callbacks: Optional[ProgressCallbacks] = None,
    ) -> OrchestratorResponse:
        """
        Run one request to completion.

        Without callbacks this is the synchronous-return variant; with
        callbacks every step transition is reported as it happens.

        Raises:
            OrchestrationError on a terminal generation failure or request
            timeout, carrying the StepResults produced so far.
            asyncio.CancelledError when the calling task is cancelled.
        """
        callbacks = callbacks or NullCallbacks()
        request_id = generate_request_id()
        bind_request_context(request_id, request.user_id, request.session_id)

        state = _RequestState()
        start = time.perf_counter()
        logger.info(
            "orchestration_started",
            session_id=request.session_id,
            consensus=request.enable_consensus,
            quality_validation=request.enable_quality_validation,
        )

        try:
            response = await asyncio.wait_for(
                self._run(request, callbacks, state, request_id, start),
                timeout=self.settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            record_orchestration("timeout", time.perf_counter() - start)
            logger.error(
                "orchestration_timeout",
                stage=state.current,
                timeout_seconds=self.settings.request_timeout_seconds,
                completed_steps=len(state.partial_results()),
            )
            raise OrchestrationError(
                stage=state.current,
                message=f"request timed out after {self.settings.request_timeout_seconds}s",
                partial_results=state.partial_results(),
            ) from None
        except asyncio.CancelledError:
            record_orchestration("cancelled", time.perf_counter() - start)
            logger.info("orchestration_cancelled", stage=state.current)
            raise
        except OrchestrationError as exc:
            record_orchestration("failed", time.perf_counter() - start)
            logger.error(
                "orchestration_failed",
                stage=exc.stage,
                error=str(exc),
                error_type=type(exc).__name__,
                completed_steps=len(exc.partial_results),
            )
            raise

        await self._persist(request, response)
        record_orchestration("success", time.perf_counter() - start)
        logger.info(
            "orchestration_completed",
            workflow_type=response.workflow.workflow_type.value,
            steps=len(response.steps),
            quality_score=response.quality_score,
            re_research_iterations=response.re_research_iterations,
            consensus_used=response.consensus_used,
            execution_time_ms=response.execution_time_ms,
        )
        return response

    async def _run(
        self,
        request: OrchestratorRequest,
        callbacks: ProgressCallbacks,
        state: _RequestState,
        request_id: str,
        start: float,
    ) -> OrchestratorResponse:
        with get_tracer().start_as_current_span("orchestrator.execute") as span:
            span.set_attribute("request.id", request_id)
            set_trace_id(get_trace_id_from_context())

            # CLASSIFY
            state.enter(OrchestratorState.CLASSIFY)
            semantics = self._analyzer.analyze(request.message)
            try:
                intent = await self._classifier.classify(request.message, semantics)
            except ClassificationError as exc:
                logger.warning(
                    "intent_classification_fallback",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                intent = DEFAULT_INTENT
                record_intent_classification(intent.source.value, intent.domain.value)
            self._update(callbacks, "classified", f"{intent.domain.value} / {intent.task_type.value}", {
                "intent": intent.model_dump(mode="json"),
                "semantics": semantics.model_dump(mode="json"),
            })

            history = await self._load_history(request)

            # BUILD_PLAN
            state.enter(OrchestratorState.BUILD_PLAN)
            try:
                workflow = self._builder.build(intent, semantics)
            except PlanBuildError as exc:
                logger.warning(
                    "workflow_build_fallback",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                workflow = self._builder.minimal(intent)
            set_span_attribute("workflow.type", workflow.workflow_type.value)
            self._update(callbacks, "plan-built", workflow.workflow_type.value, {
                "steps": [step.id for step in workflow.steps],
                "quality_gates": [gate.validator_name for gate in workflow.quality_gates],
                "estimated_time_ms": workflow.estimated_time_ms,
            })

            context = ExecutionContext(
                request=request,
                intent=intent,
                semantics=semantics,
                request_id=request_id,
                history=history,
                step_timeout_seconds=self.settings.step_timeout_seconds,
            )
            state.context = context

            # EXECUTE
            state.enter(OrchestratorState.EXECUTE)
            response = await self._execute_pass(workflow, context, callbacks, 0, state)

            # VALIDATE, then REFINE_AND_REEXECUTE while the budget allows
            reports: List[QualityReport] = []
            iterations = 0
            if request.enable_quality_validation:
                state.enter(OrchestratorState.VALIDATE)
                report = self._validate(response.response, workflow, context)
                reports.append(report)

                while (
                    report.needs_re_research
                    and request.enable_re_research
                    and iterations < self.settings.re_research_budget
                ):
                    iterations += 1
                    state.enter(OrchestratorState.REFINE_AND_REEXECUTE)
                    record_re_research_cycle(workflow.workflow_type.value)
                    refined = self._refiner.refine(request.message, report)
                    retry_steps = self._re_research_steps(workflow, intent, refined, iterations)
                    if not retry_steps:
                        break

                    start_index = len(workflow.steps)
                    workflow = workflow.with_appended_steps(retry_steps)
                    self._update(callbacks, "re-research", f"iteration {iterations}", {
                        "refined_query": refined,
                        "steps": [step.id for step in retry_steps],
                        "previous_score": report.overall_score,
                    })
                    response = await self._execute_pass(
                        workflow, context, callbacks, start_index, state
                    )

                    state.enter(OrchestratorState.VALIDATE)
                    report = self._validate(response.response, workflow, context)
                    reports.append(report)

            # CONSENSUS_SYNTHESIS
            consensus_used = False
            if request.enable_consensus:
                state.enter(OrchestratorState.CONSENSUS_SYNTHESIS)
                workflow, response, consensus_used = await self._consensus_pass(
                    workflow, context, callbacks, response, reports
                )

            state.enter(OrchestratorState.DONE)
            quality_score = reports[-1].overall_score if reports else None
            if quality_score is not None:
                record_quality_score(workflow.workflow_type.value, quality_score)

            return response.model_copy(update={
                "quality_score": quality_score,
                "quality_reports": tuple(reports),
                "execution_time_ms": round((time.perf_counter() - start) * 1000.0, 2),
                "re_research_performed": iterations > 0,
                "re_research_iterations": iterations,
                "consensus_used": consensus_used,
                "states": tuple(state.states),
            })

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _execute_pass(
        self,
        workflow: Workflow,
        context: ExecutionContext,
        callbacks: ProgressCallbacks,
        start_index: int,
        state: _RequestState,
    ) -> OrchestratorResponse:
        try:
            return await self._executor.execute(workflow, context, callbacks, start_index)
        except StepExecutionError as exc:
            record_exception(exc)
            raise OrchestrationError(
                stage=state.current,
                message=str(exc),
                partial_results=exc.partial_results,
                cause=exc,
            ) from exc

    def _validate(self, content: str, workflow: Workflow, context: ExecutionContext) -> QualityReport:
        return self._validator.validate(
            content,
            context.intent,
            context.semantics,
            gates=workflow.quality_gates,
            threshold=workflow.quality_threshold,
        )

    def _re_research_steps(
        self,
        workflow: Workflow,
        intent: Intent,
        refined_query: str,
        iteration: int,
    ) -> List[Step]:
        """
        Steps for one re-research pass, each superseding the step it re-runs.

        Re-runs the first research step and everything transitively chained
        from it; without a research step, adds one ahead of the final
        generation step.
        """
        # Retry ids keep the base id of the step they replace: text-generation-retry2
        effective = _effective_steps(workflow)
        root = next((s for s in effective if s.step_type == StepType.RESEARCH), None)

        if root is None:
            final = next((s for s in reversed(effective) if not s.is_skippable), None)
            if final is None:
                return []
            research = Step(
                id=_retry_id(StepType.RESEARCH.value, iteration),
                step_type=StepType.RESEARCH,
                model_id=model_for(StepType.RESEARCH, intent.complexity),
                purpose="Research to ground the answer",
                input_override=refined_query,
            )
            return [research, final.model_copy(update={
                "id": _retry_id(final.id, iteration),
                "depends_on": research.id,
                "chained": True,
                "supersedes": final.id,
            })]

        renamed = {root.id: _retry_id(root.id, iteration)}
        chain = [root]
        for step in effective[effective.index(root) + 1:]:
            if step.chained and step.depends_on in renamed:
                renamed[step.id] = _retry_id(step.id, iteration)
                chain.append(step)

        retry_steps = []
        for step in chain:
            update = {
                "id": renamed[step.id],
                "supersedes": step.id,
                "purpose": step.purpose if step.supersedes else f"{step.purpose} (refined)",
            }
            if step is root:
                update["input_override"] = refined_query
            if step.depends_on in renamed:
                update["depends_on"] = renamed[step.depends_on]
            retry_steps.append(step.model_copy(update=update))
        return retry_steps

    async def _consensus_pass(
        self,
        workflow: Workflow,
        context: ExecutionContext,
        callbacks: ProgressCallbacks,
        response: OrchestratorResponse,
        reports: List[QualityReport],
    ) -> Tuple[Workflow, OrchestratorResponse, bool]:
        target = next(
            (
                r for r in reversed(visible_results(workflow, context.results))
                if r.step_type in TEXT_LIKE_STEP_TYPES
            ),
            None,
        )
        if target is None:
            self._update(callbacks, "consensus-skipped", "no text answer to reconcile", {})
            return workflow, response, False

        replaced = workflow.get_step(target.step_id)
        models = tuple(dict.fromkeys(self.settings.consensus_models))
        step = Step(
            id="consensus",
            step_type=StepType.CONSENSUS,
            model_id=self.settings.synthesis_model,
            purpose=f"Reconcile answers from {len(models)} models",
            depends_on=replaced.depends_on,
            chained=replaced.chained,
            input_override=replaced.input_override,
            supersedes=replaced.id,
            branch_model_ids=models,
        )
        start_index = len(workflow.steps)
        workflow = workflow.with_appended_steps([step])

        if context.request.enable_quality_validation:
            context.answer_judge = self._make_judge(workflow, step, context, reports)
        try:
            response = await self._executor.execute(workflow, context, callbacks, start_index)
        except StepExecutionError as exc:
            logger.warning(
                "consensus_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            failed = StepResult(
                step_id=step.id,
                step_type=step.step_type,
                model_id=step.model_id,
                error=exc.reason,
                metadata={"accepted": False},
            )
            context.results.append(failed)
            emit_safely(callbacks.on_step_complete, failed, "step_complete")
            self._update(callbacks, "consensus-failed", exc.reason, {})
            return workflow, self._executor.assemble(workflow, context), False
        finally:
            context.answer_judge = None

        result = context.result_for(step.id)
        accepted = bool(result and result.metadata.get("accepted", True))
        self._update(callbacks, "consensus", "accepted" if accepted else "rejected", dict(result.metadata))
        if accepted and context.request.enable_quality_validation:
            reports.append(self._validate(response.response, workflow, context))
        return workflow, response, accepted

    def _make_judge(
        self,
        workflow: Workflow,
        step: Step,
        context: ExecutionContext,
        reports: List[QualityReport],
    ):
        """Accept a candidate that passes the gates or scores at least as well as the current answer."""
        previous_score = reports[-1].overall_score if reports else None

        def judge(candidate: str) -> Tuple[bool, float]:
            trial = dataclasses.replace(
                context,
                results=list(context.results) + [
                    StepResult(
                        step_id=step.id,
                        step_type=step.step_type,
                        model_id=step.model_id,
                        content=candidate,
                    )
                ],
            )
            content = self._executor.assemble(workflow, trial).response
            report = self._validate(content, workflow, context)
            accepted = report.passed or (
                previous_score is not None and report.overall_score >= previous_score
            )
            return accepted, report.overall_score

        return judge

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _load_history(self, request: OrchestratorRequest) -> Tuple[ConversationTurn, ...]:
        turns = list(request.history)
        if not turns and self._history_provider is not None and request.session_id:
            try:
                turns = list(await self._history_provider.get_history(request.session_id))
            except Exception as exc:
                logger.warning(
                    "conversation_history_failed",
                    session_id=request.session_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                turns = []
        return trim_history(
            turns, self.settings.history_max_turns, self.settings.history_max_chars
        )

    async def _persist(self, request: OrchestratorRequest, response: OrchestratorResponse) -> None:
        if self._persistence is None:
            return
        try:
            await self._persistence.save(request, response)
        except Exception as exc:
            logger.error(
                "persistence_failed",
                session_id=request.session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @staticmethod
    def _update(callbacks: ProgressCallbacks, stage: str, notes: str, data: dict) -> None:
        emit_safely(
            callbacks.on_coordinator_update,
            CoordinatorUpdate(stage=stage, notes=notes, data=data),
            "coordinator_update",
        )


_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Global singleton accessor for the orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator


def startup(settings: Optional[OrchestratorSettings] = None) -> Orchestrator:
    """Configure logging and tracing for the process and return the shared orchestrator."""
    settings = settings or get_settings()
    configure_logging(log_level=settings.log_level, json_output=settings.log_json)
    configure_tracing()
    logger.info("orchestrator_startup_completed")
    return get_orchestrator()


async def shutdown() -> None:
    """Close pooled provider connections and flush pending spans."""
    global _orchestrator
    logger.info("orchestrator_shutdown_started")
    await get_llm_client().aclose()
    reset_llm_client()
    shutdown_tracing()
    _orchestrator = None
    logger.info("orchestrator_shutdown_completed")
