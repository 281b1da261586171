"""
Model catalog: which provider serves a model id, and what kind of content it
produces. The workflow builder binds model ids from here and the provider pool
dispatches on ``kind``.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from forefront.services.ai.schema import Complexity, StepType


class ModelKind(str, Enum):
    SEARCH = "search"
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class ModelSpec:
    model_id: str
    kind: ModelKind
    provider: str
    label: str


MODEL_CATALOG: Dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec("sonar", ModelKind.SEARCH, "perplexity", "Perplexity Sonar"),
        ModelSpec("sonar-pro", ModelKind.SEARCH, "perplexity", "Perplexity Sonar Pro"),
        ModelSpec("llama-3.1-8b-instant", ModelKind.TEXT, "groq", "Llama 3.1 8B"),
        ModelSpec("llama-3.3-70b-versatile", ModelKind.TEXT, "groq", "Llama 3.3 70B"),
        ModelSpec("openai/gpt-oss-120b", ModelKind.TEXT, "groq", "GPT-OSS 120B"),
        ModelSpec("qwen/qwen3-32b", ModelKind.TEXT, "groq", "Qwen3 32B"),
        ModelSpec("gemini-2.0-flash", ModelKind.TEXT, "gemini", "Gemini 2.0 Flash"),
        ModelSpec("seedream-4", ModelKind.IMAGE, "image", "Seedream 4"),
        ModelSpec("dall-e-3", ModelKind.IMAGE, "image", "DALL-E 3"),
    )
}

# Model bound to each step type per complexity tier; stronger models for harder requests.
STEP_MODELS: Dict[StepType, Dict[Complexity, str]] = {
    StepType.RESEARCH: {
        Complexity.LOW: "sonar",
        Complexity.MEDIUM: "sonar",
        Complexity.HIGH: "sonar-pro",
    },
    StepType.PROMPT_ENHANCEMENT: {
        Complexity.LOW: "llama-3.3-70b-versatile",
        Complexity.MEDIUM: "llama-3.3-70b-versatile",
        Complexity.HIGH: "llama-3.3-70b-versatile",
    },
    StepType.TEXT_GENERATION: {
        Complexity.LOW: "llama-3.1-8b-instant",
        Complexity.MEDIUM: "llama-3.3-70b-versatile",
        Complexity.HIGH: "openai/gpt-oss-120b",
    },
    StepType.REASONING: {
        Complexity.LOW: "llama-3.3-70b-versatile",
        Complexity.MEDIUM: "llama-3.3-70b-versatile",
        Complexity.HIGH: "openai/gpt-oss-120b",
    },
    StepType.CODE_GENERATION: {
        Complexity.LOW: "llama-3.3-70b-versatile",
        Complexity.MEDIUM: "qwen/qwen3-32b",
        Complexity.HIGH: "openai/gpt-oss-120b",
    },
    StepType.IMAGE_GENERATION: {
        Complexity.LOW: "seedream-4",
        Complexity.MEDIUM: "seedream-4",
        Complexity.HIGH: "seedream-4",
    },
}


def get_model_spec(model_id: str) -> ModelSpec:
    """
    Look up a model id.

    Raises:
        KeyError for ids missing from the catalog.
    """
    return MODEL_CATALOG[model_id]


def model_for(step_type: StepType, complexity: Complexity) -> str:
    return STEP_MODELS[step_type][complexity]


def model_label(model_id: str) -> str:
    spec = MODEL_CATALOG.get(model_id)
    return spec.label if spec else model_id
