"""
Environment-driven configuration for the orchestration core.

Values are read once from the process environment (optionally seeded from a
``.env`` file at the repository root) and exposed through ``get_settings()``.

Environment configuration:
- LOG_LEVEL / LOG_JSON: logging level and JSON output toggle
- FOREFRONT_STEP_TIMEOUT_SECONDS: per-step provider timeout (default: 60)
- FOREFRONT_REQUEST_TIMEOUT_SECONDS: overall request timeout (default: 300)
- FOREFRONT_RE_RESEARCH_BUDGET: max re-research passes per request (default: 1)
- FOREFRONT_INTENT_CONFIDENCE_THRESHOLD: heuristic/model confidence floor (default: 0.6)
- FOREFRONT_CONSENSUS_MODELS: comma-separated model ids for consensus fan-out
- FOREFRONT_CONSENSUS_BRANCH_TIMEOUT_SECONDS: per-branch timeout (default: 45)
- FOREFRONT_SYNTHESIS_MODEL: model used to reconcile consensus votes
- FOREFRONT_CLASSIFIER_MODEL: model used for ambiguous intent classification
- FOREFRONT_RE_RESEARCH_CATEGORIES: validator categories that may trigger re-research
- FOREFRONT_HISTORY_MAX_TURNS / FOREFRONT_HISTORY_MAX_CHARS: history trimming budget
- <PROVIDER>_API_BASE / <PROVIDER>_API_KEY for GROQ, PERPLEXITY, GEMINI, IMAGE
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from forefront.core.logging import get_logger

logger = get_logger(__name__)

env_path = Path(__file__).parent.parent.parent.parent / ".env"

DEFAULT_PROVIDER_BASES: Dict[str, str] = {
    "groq": "https://api.groq.com/openai/v1",
    "perplexity": "https://api.perplexity.ai",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
    "image": "https://api.openai.com/v1",
}

DEFAULT_CONSENSUS_MODELS: Tuple[str, ...] = (
    "llama-3.3-70b-versatile",
    "gemini-2.0-flash",
    "openai/gpt-oss-120b",
)


@dataclass(frozen=True)
class ProviderSettings:
    """Connection settings for one OpenAI-compatible provider."""

    name: str
    api_base: str
    api_key: Optional[str] = None
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class OrchestratorSettings:
    log_level: str = "INFO"
    log_json: bool = True
    step_timeout_seconds: float = 60.0
    request_timeout_seconds: float = 300.0
    re_research_budget: int = 1
    intent_confidence_threshold: float = 0.6
    classifier_model: str = "llama-3.1-8b-instant"
    consensus_models: Tuple[str, ...] = DEFAULT_CONSENSUS_MODELS
    consensus_branch_timeout_seconds: float = 45.0
    synthesis_model: str = "llama-3.3-70b-versatile"
    re_research_categories: Tuple[str, ...] = ("grounding",)
    history_max_turns: int = 10
    history_max_chars: int = 8000
    providers: Dict[str, ProviderSettings] = field(default_factory=dict)


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)) or str(default))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)) or str(default))


def _env_tuple(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def load_settings() -> OrchestratorSettings:
    """Build settings from the environment."""
    if env_path.exists():
        load_dotenv(env_path)
        logger.debug("env_loaded", env_path=str(env_path))

    step_timeout = _env_float("FOREFRONT_STEP_TIMEOUT_SECONDS", 60.0)
    providers = {
        name: ProviderSettings(
            name=name,
            api_base=os.getenv(f"{name.upper()}_API_BASE", base),
            api_key=os.getenv(f"{name.upper()}_API_KEY"),  # None disables the provider
            timeout_seconds=step_timeout,
        )
        for name, base in DEFAULT_PROVIDER_BASES.items()
    }

    return OrchestratorSettings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=os.getenv("LOG_JSON", "true").lower() == "true",
        step_timeout_seconds=step_timeout,
        request_timeout_seconds=_env_float("FOREFRONT_REQUEST_TIMEOUT_SECONDS", 300.0),
        re_research_budget=_env_int("FOREFRONT_RE_RESEARCH_BUDGET", 1),
        intent_confidence_threshold=_env_float("FOREFRONT_INTENT_CONFIDENCE_THRESHOLD", 0.6),
        classifier_model=os.getenv("FOREFRONT_CLASSIFIER_MODEL", "llama-3.1-8b-instant"),
        consensus_models=_env_tuple("FOREFRONT_CONSENSUS_MODELS", DEFAULT_CONSENSUS_MODELS),
        consensus_branch_timeout_seconds=_env_float(
            "FOREFRONT_CONSENSUS_BRANCH_TIMEOUT_SECONDS", 45.0
        ),
        synthesis_model=os.getenv("FOREFRONT_SYNTHESIS_MODEL", "llama-3.3-70b-versatile"),
        re_research_categories=_env_tuple("FOREFRONT_RE_RESEARCH_CATEGORIES", ("grounding",)),
        history_max_turns=_env_int("FOREFRONT_HISTORY_MAX_TURNS", 10),
        history_max_chars=_env_int("FOREFRONT_HISTORY_MAX_CHARS", 8000),
        providers=providers,
    )


_settings: Optional[OrchestratorSettings] = None


def get_settings() -> OrchestratorSettings:
    """Global singleton accessor for settings."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (used by tests that patch the environment)."""
    global _settings
    _settings = None
