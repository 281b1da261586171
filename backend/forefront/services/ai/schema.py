"""
Pydantic models for the orchestration pipeline.

Everything here is request-scoped and immutable: the classifier produces one
Intent, the analyzer one Semantics, the builder one Workflow; the executor
appends StepResults; the validator produces one QualityReport per pass.
"""
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class Domain(str, Enum):
    CREATIVE = "creative"
    ANALYTICAL = "analytical"
    TECHNICAL = "technical"
    LEARNING = "learning"
    HYBRID = "hybrid"
    GENERAL = "general"


class TaskType(str, Enum):
    IMAGE_GENERATION = "image-generation"
    RESEARCH = "research"
    ANALYSIS = "analysis"
    CODE_GENERATION = "code-generation"
    TEACHING = "teaching"
    TEXT_GENERATION = "text-generation"
    CONVERSATION = "conversation"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IntentSource(str, Enum):
    HEURISTIC = "heuristic"
    MODEL = "model"
    DEFAULT = "default"


class EntityKind(str, Enum):
    PROPER_NOUN = "proper_noun"
    QUOTED = "quoted"
    QUANTITY = "quantity"
    DATE = "date"
    TOOL = "tool"


class StepType(str, Enum):
    RESEARCH = "research"
    PROMPT_ENHANCEMENT = "prompt-enhancement"
    TEXT_GENERATION = "text-generation"
    IMAGE_GENERATION = "image-generation"
    CODE_GENERATION = "code-generation"
    REASONING = "reasoning"
    CONSENSUS = "consensus"

    @property
    def is_skippable(self) -> bool:
        """Skippable steps degrade to pass-through on failure; the rest are terminal."""
        return self in SKIPPABLE_STEP_TYPES


SKIPPABLE_STEP_TYPES = frozenset({StepType.RESEARCH, StepType.PROMPT_ENHANCEMENT})

# Steps whose output is shown to the user.
USER_FACING_STEP_TYPES = frozenset(set(StepType) - {StepType.PROMPT_ENHANCEMENT})

# Step types a consensus pass may replace.
TEXT_LIKE_STEP_TYPES = frozenset(
    {StepType.TEXT_GENERATION, StepType.REASONING, StepType.CODE_GENERATION}
)


class WorkflowType(str, Enum):
    DIRECT_GENERATION = "direct-generation"
    IMAGE_GENERATION = "image-generation"
    RESEARCHED_IMAGE = "researched-image"
    RESEARCH_SUMMARY = "research-summary"
    ANALYSIS = "analysis"
    CODE_GENERATION = "code-generation"
    TUTORIAL = "tutorial"
    CREATIVE_WRITING = "creative-writing"
    HYBRID = "hybrid"


class ValidatorCategory(str, Enum):
    GROUNDING = "grounding"
    RELEVANCE = "relevance"
    FORMAT = "format"


class OrchestratorState(str, Enum):
    CLASSIFY = "classify"
    BUILD_PLAN = "build_plan"
    EXECUTE = "execute"
    VALIDATE = "validate"
    REFINE_AND_REEXECUTE = "refine_and_reexecute"
    CONSENSUS_SYNTHESIS = "consensus_synthesis"
    DONE = "done"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ============================================================================
# UNDERSTANDING
# ============================================================================


class Intent(_Frozen):
    """Coarse classification of one request."""

    domain: Domain
    task_type: TaskType
    complexity: Complexity
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    source: IntentSource = IntentSource.HEURISTIC


DEFAULT_INTENT = Intent(
    domain=Domain.GENERAL,
    task_type=TaskType.TEXT_GENERATION,
    complexity=Complexity.MEDIUM,
    confidence=0.0,
    source=IntentSource.DEFAULT,
)


class Entity(_Frozen):
    text: str
    kind: EntityKind


class Semantics(_Frozen):
    """Structural extraction of one request's text."""

    primary_action: str = ""
    primary_subject: str = ""
    entities: Tuple[Entity, ...] = ()
    constraints: Tuple[str, ...] = ()
    specificity: float = Field(0.0, ge=0.0, le=1.0)


# ============================================================================
# PLAN & EXECUTION
# ============================================================================


class Step(_Frozen):
    """
    One node of a workflow plan.

    Steps are never mutated once built. Re-research and consensus append new
    steps whose ``supersedes`` names the step they replace in the final answer.
    """

    id: str
    step_type: StepType
    model_id: str
    purpose: str = ""
    depends_on: Optional[str] = None
    chained: bool = False
    input_override: Optional[str] = None
    supersedes: Optional[str] = None
    branch_model_ids: Tuple[str, ...] = ()

    @property
    def is_skippable(self) -> bool:
        return self.step_type.is_skippable


class StepResult(_Frozen):
    step_id: str
    step_type: StepType
    model_id: str
    content: str = ""
    execution_time_ms: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class QualityGate(_Frozen):
    validator_name: str
    threshold: float = Field(..., ge=0.0, le=1.0)


class Workflow(_Frozen):
    workflow_type: WorkflowType
    steps: Tuple[Step, ...]
    quality_gates: Tuple[QualityGate, ...] = ()
    quality_threshold: float = Field(0.7, ge=0.0, le=1.0)
    estimated_time_ms: int = 0

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def with_appended_steps(self, steps: Iterable[Step]) -> "Workflow":
        """New workflow with ``steps`` added after the existing plan."""
        return self.model_copy(update={"steps": self.steps + tuple(steps)})


# ============================================================================
# QUALITY
# ============================================================================


class ValidationResult(_Frozen):
    validator: str
    category: ValidatorCategory
    score: float = Field(..., ge=0.0, le=1.0)
    threshold: float = Field(..., ge=0.0, le=1.0)
    passed: bool
    reason: Optional[str] = None


class QualityReport(_Frozen):
    overall_score: float = Field(..., ge=0.0, le=1.0)
    threshold: float
    needs_re_research: bool = False
    validator_results: Tuple[ValidationResult, ...] = ()
    gates: Tuple[QualityGate, ...] = ()

    @property
    def passed(self) -> bool:
        return self.overall_score >= self.threshold and all(
            r.passed for r in self.validator_results
        )

    @property
    def failing_results(self) -> Tuple[ValidationResult, ...]:
        return tuple(r for r in self.validator_results if not r.passed)


# ============================================================================
# REQUEST / RESPONSE
# ============================================================================


class ConversationTurn(_Frozen):
    role: str
    content: str


class OrchestratorRequest(_Frozen):
    message: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    history: Tuple[ConversationTurn, ...] = ()
    enable_quality_validation: bool = True
    enable_re_research: bool = True
    enable_consensus: bool = False

    @field_validator("message")
    @classmethod
    def validate_message(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("message must not be empty")
        return value


class OrchestratorResponse(_Frozen):
    """Terminal artifact of one request, with the full step trace."""

    steps: Tuple[StepResult, ...]
    intent: Intent
    semantics: Semantics
    workflow: Workflow
    quality_score: Optional[float] = None
    quality_reports: Tuple[QualityReport, ...] = ()
    execution_time_ms: float = 0.0
    response: str = ""
    is_chained: bool = False
    re_research_performed: bool = False
    re_research_iterations: int = 0
    consensus_used: bool = False
    states: Tuple[OrchestratorState, ...] = ()


# ============================================================================
# PROGRESS EVENTS
# ============================================================================


class StepStartEvent(_Frozen):
    step_id: str
    step_type: StepType
    model_id: str
    purpose: str = ""
    index: int
    total_steps: int


class CoordinatorUpdate(_Frozen):
    stage: str
    notes: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# MODEL OUTPUT CONTRACTS
# ============================================================================


class IntentModelOutput(BaseModel):
    """
    Structured output of the model-backed intent classification.

    Schema:
    {
      "domain": "creative | analytical | technical | learning | hybrid | general",
      "task_type": "image-generation | research | ... | conversation",
      "complexity": "low | medium | high",
      "confidence": 0.0-1.0
    }
    """

    domain: Domain
    task_type: TaskType
    complexity: Complexity
    confidence: float = Field(..., ge=0.0, le=1.0)

    @field_validator("domain", "task_type", "complexity", mode="before")
    @classmethod
    def normalize_enum_value(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower().strip().replace("_", "-")
        return value


class SchemaValidationError(Exception):
    """Raised when model output fails schema validation."""

    def __init__(self, agent: str, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.agent = agent
        self.raw_output = raw_output


def validate_intent_payload(payload: Dict[str, Any]) -> IntentModelOutput:
    """
    Validate raw JSON payload for model intent output.

    Raises:
        SchemaValidationError if validation fails.
    """
    try:
        return IntentModelOutput.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(
            agent="intent",
            message=f"Invalid intent payload: {exc}",
        ) from exc
