"""
Workflow builder.

Turns (Intent, Semantics) into a Workflow:
1. Select a WorkflowType from the (domain x task type) table
2. Instantiate that type's template (one template function per WorkflowType)
3. Bind model ids by complexity from the catalog
4. Attach quality gates for the workflow type, with thresholds shifted by complexity
5. Validate the plan (non-empty, unique ids, backward dependencies)

Pure and deterministic: the same inputs always yield the same workflow.
"""
from typing import Callable, Dict, List, Optional, Tuple

from forefront.core.logging import get_logger
from forefront.core.metrics import record_workflow_build
from forefront.services.ai.catalog import model_for
from forefront.services.ai.errors import PlanBuildError
from forefront.services.ai.schema import (
    Complexity,
    Domain,
    Intent,
    QualityGate,
    Semantics,
    Step,
    StepType,
    TaskType,
    Workflow,
    WorkflowType,
)
from forefront.services.ai.validation import get_validator

logger = get_logger(__name__)

LOW_SPECIFICITY = 0.25

TASK_WORKFLOWS: Dict[TaskType, WorkflowType] = {
    TaskType.RESEARCH: WorkflowType.RESEARCH_SUMMARY,
    TaskType.ANALYSIS: WorkflowType.ANALYSIS,
    TaskType.CODE_GENERATION: WorkflowType.CODE_GENERATION,
    TaskType.TEACHING: WorkflowType.TUTORIAL,
    TaskType.TEXT_GENERATION: WorkflowType.DIRECT_GENERATION,
    TaskType.CONVERSATION: WorkflowType.DIRECT_GENERATION,
}

# Domain-specific overrides, checked before the task defaults
DOMAIN_WORKFLOWS: Dict[Tuple[Domain, TaskType], WorkflowType] = {
    (Domain.HYBRID, TaskType.IMAGE_GENERATION): WorkflowType.RESEARCHED_IMAGE,
    (Domain.CREATIVE, TaskType.TEXT_GENERATION): WorkflowType.CREATIVE_WRITING,
}

WORKFLOW_THRESHOLDS: Dict[Complexity, float] = {
    Complexity.LOW: 0.65,
    Complexity.MEDIUM: 0.7,
    Complexity.HIGH: 0.75,
}

GATE_SHIFT: Dict[Complexity, float] = {
    Complexity.LOW: -0.05,
    Complexity.MEDIUM: 0.0,
    Complexity.HIGH: 0.05,
}

# Gates that check the answer against its evidence
GROUNDING_GATES = ("factual-consistency", "citation-presence")

WORKFLOW_GATES: Dict[WorkflowType, Tuple[str, ...]] = {
    WorkflowType.DIRECT_GENERATION: ("length-adequacy",),
    WorkflowType.IMAGE_GENERATION: ("media-presence",),
    WorkflowType.RESEARCHED_IMAGE: ("media-presence",),
    WorkflowType.RESEARCH_SUMMARY: ("subject-coverage", "length-adequacy"),
    WorkflowType.ANALYSIS: ("subject-coverage", "length-adequacy"),
    WorkflowType.CODE_GENERATION: ("format-compliance", "length-adequacy"),
    WorkflowType.TUTORIAL: ("subject-coverage", "length-adequacy", "format-compliance"),
    WorkflowType.CREATIVE_WRITING: ("subject-coverage", "length-adequacy"),
    WorkflowType.HYBRID: ("subject-coverage", "length-adequacy"),
}

IMAGE_WORKFLOWS = frozenset({WorkflowType.IMAGE_GENERATION, WorkflowType.RESEARCHED_IMAGE})

STEP_ESTIMATES_MS: Dict[StepType, int] = {
    StepType.RESEARCH: 8000,
    StepType.PROMPT_ENHANCEMENT: 3000,
    StepType.TEXT_GENERATION: 6000,
    StepType.IMAGE_GENERATION: 15000,
    StepType.CODE_GENERATION: 8000,
    StepType.REASONING: 8000,
    StepType.CONSENSUS: 20000,
}


def select_workflow_type(intent: Intent) -> WorkflowType:
    """(domain x task type) -> WorkflowType; anything unmapped is direct generation."""
    override = DOMAIN_WORKFLOWS.get((intent.domain, intent.task_type))
    if override is not None:
        return override
    if intent.task_type == TaskType.IMAGE_GENERATION:
        return WorkflowType.IMAGE_GENERATION
    if intent.domain == Domain.GENERAL:
        return WorkflowType.DIRECT_GENERATION
    if intent.domain == Domain.HYBRID:
        return WorkflowType.HYBRID
    return TASK_WORKFLOWS.get(intent.task_type, WorkflowType.DIRECT_GENERATION)


class _PlanWriter:
    """Appends steps with models bound by complexity, chaining to the previous step."""

    def __init__(self, complexity: Complexity):
        self.complexity = complexity
        self.steps: List[Step] = []

    def add(self, step_type: StepType, purpose: str, chained: bool = True) -> "_PlanWriter":
        previous = self.steps[-1].id if self.steps else None
        self.steps.append(
            Step(
                id=step_type.value,
                step_type=step_type,
                model_id=model_for(step_type, self.complexity),
                purpose=purpose,
                depends_on=previous if chained else None,
                chained=chained and previous is not None,
            )
        )
        return self


def _needs_research(intent: Intent, semantics: Semantics) -> bool:
    if intent.complexity == Complexity.HIGH:
        return True
    return intent.complexity != Complexity.LOW and semantics.specificity < LOW_SPECIFICITY


# ============================================================================
# TEMPLATES (one per WorkflowType)
# ============================================================================


def _direct_generation(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    plan.add(StepType.TEXT_GENERATION, "Answer the request directly")
    return plan.steps


def _image_generation(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    if intent.complexity != Complexity.LOW:
        plan.add(StepType.PROMPT_ENHANCEMENT, "Expand the request into a detailed image prompt")
    plan.add(StepType.IMAGE_GENERATION, "Generate the image")
    return plan.steps


def _researched_image(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    plan.add(StepType.RESEARCH, "Gather visual references and facts")
    plan.add(StepType.PROMPT_ENHANCEMENT, "Turn the research into a detailed image prompt")
    plan.add(StepType.IMAGE_GENERATION, "Generate the image")
    return plan.steps


def _research_summary(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    plan.add(StepType.RESEARCH, "Search current sources")
    plan.add(StepType.TEXT_GENERATION, "Summarize the research findings")
    return plan.steps


def _analysis(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    plan.add(StepType.RESEARCH, "Collect evidence for the analysis")
    plan.add(StepType.REASONING, "Analyze the evidence and draw conclusions")
    return plan.steps


def _code_generation(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    if _needs_research(intent, semantics):
        plan.add(StepType.RESEARCH, "Look up APIs, libraries and current practice")
    plan.add(StepType.CODE_GENERATION, "Write the code")
    return plan.steps


def _tutorial(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    if _needs_research(intent, semantics):
        plan.add(StepType.RESEARCH, "Research the topic before teaching it")
    plan.add(StepType.TEXT_GENERATION, "Write a structured explanation")
    return plan.steps


def _creative_writing(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    plan.add(StepType.TEXT_GENERATION, "Write the piece")
    return plan.steps


def _hybrid(intent: Intent, semantics: Semantics) -> List[Step]:
    plan = _PlanWriter(intent.complexity)
    plan.add(StepType.RESEARCH, "Research the topic")
    plan.add(StepType.REASONING, "Work through the problem using the research")
    plan.add(StepType.TEXT_GENERATION, "Write the final answer")
    return plan.steps


Template = Callable[[Intent, Semantics], List[Step]]

TEMPLATES: Dict[WorkflowType, Template] = {
    WorkflowType.DIRECT_GENERATION: _direct_generation,
    WorkflowType.IMAGE_GENERATION: _image_generation,
    WorkflowType.RESEARCHED_IMAGE: _researched_image,
    WorkflowType.RESEARCH_SUMMARY: _research_summary,
    WorkflowType.ANALYSIS: _analysis,
    WorkflowType.CODE_GENERATION: _code_generation,
    WorkflowType.TUTORIAL: _tutorial,
    WorkflowType.CREATIVE_WRITING: _creative_writing,
    WorkflowType.HYBRID: _hybrid,
}

_missing_templates = set(WorkflowType) - set(TEMPLATES)
_missing_gates = set(WorkflowType) - set(WORKFLOW_GATES)
if _missing_templates or _missing_gates:
    raise RuntimeError(
        "Workflow types without a template or gates: "
        f"{sorted(t.value for t in _missing_templates | _missing_gates)}"
    )


# ============================================================================
# GATES & VALIDATION
# ============================================================================


def gate_threshold(validator_name: str, complexity: Complexity) -> float:
    base = get_validator(validator_name).default_threshold
    return round(min(max(base + GATE_SHIFT[complexity], 0.0), 1.0), 2)


def quality_gates_for(
    workflow_type: WorkflowType, steps: List[Step], complexity: Complexity
) -> Tuple[QualityGate, ...]:
    """Gates for a plan; research-fed text answers always get the grounding gates."""
    names: List[str] = []
    has_research = any(step.step_type == StepType.RESEARCH for step in steps)
    if has_research and workflow_type not in IMAGE_WORKFLOWS:
        names.extend(GROUNDING_GATES)
    names.extend(WORKFLOW_GATES[workflow_type])
    return tuple(
        QualityGate(validator_name=name, threshold=gate_threshold(name, complexity))
        for name in names
    )


def validate_workflow(workflow: Workflow) -> None:
    """
    Check plan invariants.

    Raises:
        PlanBuildError when the plan is empty, has duplicate ids, a dependency
        that does not point to an earlier step, or a chained step without one.
    """
    if not workflow.steps:
        raise PlanBuildError("workflow has no steps")

    seen = set()
    for step in workflow.steps:
        if step.id in seen:
            raise PlanBuildError(f"duplicate step id {step.id}")
        if step.depends_on is not None and step.depends_on not in seen:
            raise PlanBuildError(
                f"step {step.id} depends on {step.depends_on}, which is not an earlier step"
            )
        if step.chained and step.depends_on is None:
            raise PlanBuildError(f"chained step {step.id} has no predecessor")
        if not step.model_id:
            raise PlanBuildError(f"step {step.id} has no model")
        seen.add(step.id)


def _estimate_ms(steps: List[Step], complexity: Complexity) -> int:
    factor = 1.5 if complexity == Complexity.HIGH else 1.0
    return int(sum(STEP_ESTIMATES_MS[step.step_type] for step in steps) * factor)


class WorkflowBuilder:
    """Deterministic plan synthesis from intent and semantics."""

    def build(self, intent: Intent, semantics: Semantics) -> Workflow:
        """
        Build and validate the workflow for one request.

        Raises:
            PlanBuildError if the instantiated template violates plan invariants.
        """
        workflow_type = select_workflow_type(intent)
        steps = TEMPLATES[workflow_type](intent, semantics)

        workflow = Workflow(
            workflow_type=workflow_type,
            steps=tuple(steps),
            quality_gates=quality_gates_for(workflow_type, steps, intent.complexity),
            quality_threshold=WORKFLOW_THRESHOLDS[intent.complexity],
            estimated_time_ms=_estimate_ms(steps, intent.complexity),
        )
        validate_workflow(workflow)

        record_workflow_build(workflow_type.value)
        logger.info(
            "workflow_built",
            workflow_type=workflow_type.value,
            steps=[step.id for step in workflow.steps],
            gates=[gate.validator_name for gate in workflow.quality_gates],
            estimated_time_ms=workflow.estimated_time_ms,
        )
        return workflow

    def minimal(self, intent: Intent) -> Workflow:
        """Single-step direct generation, used when plan building fails."""
        steps = _direct_generation(intent, Semantics())
        workflow_type = WorkflowType.DIRECT_GENERATION
        return Workflow(
            workflow_type=workflow_type,
            steps=tuple(steps),
            quality_gates=quality_gates_for(workflow_type, steps, intent.complexity),
            quality_threshold=WORKFLOW_THRESHOLDS[intent.complexity],
            estimated_time_ms=_estimate_ms(steps, intent.complexity),
        )


_workflow_builder: Optional[WorkflowBuilder] = None


def get_workflow_builder() -> WorkflowBuilder:
    """Global singleton accessor."""
    global _workflow_builder
    if _workflow_builder is None:
        _workflow_builder = WorkflowBuilder()
    return _workflow_builder
