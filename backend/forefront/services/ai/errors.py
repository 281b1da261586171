"""
Error taxonomy for the orchestration pipeline.

Recovery happens as close to the source as possible:
- ClassificationError: degrade to the default intent
- PlanBuildError: degrade to the minimal single-step workflow
- StepExecutionError: skip research/enhancement steps, abort on generation steps
- ValidationError: the failing validator scores 0.0
- OrchestrationError: terminal, surfaced with the partial step trace
"""
from typing import Optional, Sequence, Tuple

from forefront.services.ai.schema import Step, StepResult


class ForefrontError(Exception):
    """Base class for orchestration errors."""


class ClassificationError(ForefrontError):
    """Both the heuristic path and the model call were inconclusive."""


class PlanBuildError(ForefrontError):
    """A built workflow violates the plan invariants."""


class ProviderError(ForefrontError):
    """A model provider could not produce content."""

    def __init__(self, model_id: str, message: str):
        super().__init__(f"{model_id}: {message}")
        self.model_id = model_id


class ConsensusError(ForefrontError):
    """No consensus branch produced a vote."""


class StepExecutionError(ForefrontError):
    def __init__(
        self,
        step: Step,
        reason: str,
        fatal: bool,
        partial_results: Sequence[StepResult] = (),
    ):
        super().__init__(f"Step {step.id} ({step.step_type.value}) failed: {reason}")
        self.step = step
        self.reason = reason
        self.fatal = fatal
        self.partial_results: Tuple[StepResult, ...] = tuple(partial_results)


class ValidationError(ForefrontError):
    """A validator raised while scoring content."""

    def __init__(self, validator: str, message: str):
        super().__init__(f"Validator {validator} failed: {message}")
        self.validator = validator


class OrchestrationError(ForefrontError):
    """Terminal failure of one request; carries whatever results were produced."""

    def __init__(
        self,
        stage: str,
        message: str,
        partial_results: Sequence[StepResult] = (),
        cause: Optional[BaseException] = None,
    ):
        super().__init__(f"Orchestration failed during {stage}: {message}")
        self.stage = stage
        self.partial_results: Tuple[StepResult, ...] = tuple(partial_results)
        self.cause = cause
