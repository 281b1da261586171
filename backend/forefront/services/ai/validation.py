"""
Quality validation of assembled answers.

Validators are pure functions ``(content, intent, semantics) -> (score, reason)``
registered by name with a category:
- grounding: evidence and sources (factual-consistency, citation-presence)
- relevance: does the answer address the request (subject-coverage)
- format: shape of the output (length-adequacy, format-compliance, media-presence)

The report's overall score is the mean of the gate scores, floored to four
decimals. Re-research is requested only when the overall score is below the
workflow threshold and a failing validator belongs to a re-research category.
"""
import re
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from forefront.core.config import get_settings
from forefront.core.logging import get_logger
from forefront.services.ai.errors import ValidationError
from forefront.services.ai.schema import (
    Complexity,
    Intent,
    QualityGate,
    QualityReport,
    Semantics,
    TaskType,
    ValidationResult,
    ValidatorCategory,
)

logger = get_logger(__name__)

CheckResult = Tuple[float, Optional[str]]
Check = Callable[[str, Intent, Semantics], CheckResult]


@dataclass(frozen=True)
class Validator:
    name: str
    category: ValidatorCategory
    default_threshold: float
    check: Check


VALIDATORS: Dict[str, Validator] = {}


def register_validator(name: str, category: ValidatorCategory, default_threshold: float):
    """Decorator registering a check function under ``name``."""

    def decorator(check: Check) -> Check:
        VALIDATORS[name] = Validator(name, category, default_threshold, check)
        return check

    return decorator


def get_validator(name: str) -> Validator:
    return VALIDATORS[name]


def _words(text: str) -> List[str]:
    return re.findall(r"[A-Za-z0-9][\w'-]*", text)


def _topic(semantics: Semantics) -> str:
    return semantics.primary_subject or "the topic"


# ============================================================================
# GROUNDING
# ============================================================================

URL_RE = re.compile(r"https?://[^\s)\]>]+")
BRACKET_REF_RE = re.compile(r"\[\d+\]")
EVIDENCE_RE = re.compile(
    r"https?://\S+|\[\d+\]|\b(?:19|20)\d{2}\b|\b\d+(?:\.\d+)?\s?%"
    r"|\baccording to\b|\b(?:study|studies|survey|report|paper|published|researchers"
    r"|data shows?|found that)\b",
    re.IGNORECASE,
)
HEDGE_RE = re.compile(
    r"\b(?:might|possibly|perhaps|i think|i believe|not sure|unclear|as an ai"
    r"|i cannot|i can't|i don't have access|unable to)\b",
    re.IGNORECASE,
)


@register_validator("factual-consistency", ValidatorCategory.GROUNDING, 0.6)
def factual_consistency(content: str, intent: Intent, semantics: Semantics) -> CheckResult:
    """Evidence markers raise the score, hedging lowers it."""
    if not content.strip():
        return 0.0, "any content"
    evidence = len(EVIDENCE_RE.findall(content))
    hedges = len(HEDGE_RE.findall(content))
    score = 0.6 + 0.1 * min(evidence, 4) - 0.15 * min(hedges, 4)
    score = min(max(score, 0.0), 1.0)
    reason = None
    if score < 1.0:
        reason = f"verifiable facts and figures on {_topic(semantics)}"
    return score, reason


@register_validator("citation-presence", ValidatorCategory.GROUNDING, 0.5)
def citation_presence(content: str, intent: Intent, semantics: Semantics) -> CheckResult:
    citations = set(URL_RE.findall(content)) | set(BRACKET_REF_RE.findall(content))
    score = min(1.0, len(citations) / 2)
    reason = None if score >= 1.0 else f"cited sources for {_topic(semantics)}"
    return score, reason


# ============================================================================
# RELEVANCE
# ============================================================================

STOPWORDS = {
    "the", "and", "for", "with", "about", "into", "from", "that", "this", "of",
    "on", "in", "to", "a", "an", "its", "their", "how", "what", "why",
}


def _coverage_terms(semantics: Semantics) -> List[str]:
    terms: List[str] = []
    for word in _words(semantics.primary_subject):
        lowered = word.lower()
        if len(lowered) > 2 and lowered not in STOPWORDS and lowered not in terms:
            terms.append(lowered)
    for entity in semantics.entities:
        lowered = entity.text.lower()
        if lowered not in terms:
            terms.append(lowered)
    return terms


@register_validator("subject-coverage", ValidatorCategory.RELEVANCE, 0.5)
def subject_coverage(content: str, intent: Intent, semantics: Semantics) -> CheckResult:
    """Share of subject words and entities that the answer mentions."""
    terms = _coverage_terms(semantics)
    if not terms:
        return 1.0, None
    lowered = content.lower()
    missing = [term for term in terms if term not in lowered]
    score = (len(terms) - len(missing)) / len(terms)
    reason = f"coverage of {', '.join(missing)}" if missing else None
    return score, reason


# ============================================================================
# FORMAT
# ============================================================================

MIN_WORDS: Dict[Complexity, int] = {
    Complexity.LOW: 20,
    Complexity.MEDIUM: 60,
    Complexity.HIGH: 150,
}
CONVERSATION_MIN_WORDS = 3

HEADING_OR_LIST_RE = re.compile(r"^\s*(?:#{1,6}\s|[-*]\s|\d+\.\s)", re.MULTILINE)
MEDIA_RE = re.compile(r"https?://\S+|data:image/", re.IGNORECASE)


@register_validator("length-adequacy", ValidatorCategory.FORMAT, 0.6)
def length_adequacy(content: str, intent: Intent, semantics: Semantics) -> CheckResult:
    if intent.task_type == TaskType.CONVERSATION:
        minimum = CONVERSATION_MIN_WORDS
    else:
        minimum = MIN_WORDS[intent.complexity]
    count = len(_words(content))
    score = min(1.0, count / minimum)
    reason = None if score >= 1.0 else f"length ({count} of {minimum} expected words)"
    return score, reason


@register_validator("format-compliance", ValidatorCategory.FORMAT, 0.6)
def format_compliance(content: str, intent: Intent, semantics: Semantics) -> CheckResult:
    """Code answers need fenced blocks; teaching answers need headings or lists."""
    if not content.strip():
        return 0.0, "any content"
    if intent.task_type == TaskType.CODE_GENERATION:
        if "```" in content:
            return 1.0, None
        return 0.3, "fenced code blocks"
    if intent.task_type == TaskType.TEACHING:
        if HEADING_OR_LIST_RE.search(content):
            return 1.0, None
        return 0.5, "headings or lists"
    return 1.0, None


@register_validator("media-presence", ValidatorCategory.FORMAT, 0.9)
def media_presence(content: str, intent: Intent, semantics: Semantics) -> CheckResult:
    if MEDIA_RE.search(content):
        return 1.0, None
    return 0.0, "a generated image"


# ============================================================================
# AGGREGATION
# ============================================================================


def floor_score(value: float) -> float:
    """Floor to four decimals so borderline means round toward failing."""
    return float(Decimal(str(value)).quantize(Decimal("0.0001"), rounding=ROUND_FLOOR))


class QualityValidator:
    """Runs a workflow's quality gates against assembled content."""

    def __init__(
        self,
        re_research_categories: Optional[Iterable[str]] = None,
        validators: Optional[Dict[str, Validator]] = None,
    ):
        if re_research_categories is None:
            re_research_categories = get_settings().re_research_categories
        self.re_research_categories = frozenset(re_research_categories)
        self.validators = validators if validators is not None else VALIDATORS

    def default_gates(self) -> Tuple[QualityGate, ...]:
        return tuple(
            QualityGate(validator_name=v.name, threshold=v.default_threshold)
            for v in self.validators.values()
        )

    def validate(
        self,
        content: str,
        intent: Intent,
        semantics: Semantics,
        gates: Optional[Sequence[QualityGate]] = None,
        threshold: float = 0.7,
    ) -> QualityReport:
        """
        Score ``content`` against ``gates`` (every registered validator when None).

        Never raises: a validator that fails scores 0.0.
        """
        gates = tuple(gates) if gates is not None else self.default_gates()
        results = [self._run_gate(gate, content, intent, semantics) for gate in gates]

        if results:
            overall = floor_score(sum(r.score for r in results) / len(results))
        else:
            overall = 1.0

        needs_re_research = overall < threshold and any(
            not r.passed and r.category.value in self.re_research_categories
            for r in results
        )

        report = QualityReport(
            overall_score=overall,
            threshold=threshold,
            needs_re_research=needs_re_research,
            validator_results=tuple(results),
            gates=gates,
        )
        logger.info(
            "quality_validated",
            overall_score=overall,
            threshold=threshold,
            needs_re_research=needs_re_research,
            failing=[r.validator for r in report.failing_results],
        )
        return report

    def _run_gate(
        self,
        gate: QualityGate,
        content: str,
        intent: Intent,
        semantics: Semantics,
    ) -> ValidationResult:
        validator = self.validators.get(gate.validator_name)
        category = validator.category if validator else ValidatorCategory.GROUNDING
        try:
            if validator is None:
                raise ValidationError(gate.validator_name, "validator is not registered")
            score, reason = validator.check(content, intent, semantics)
            score = round(min(max(float(score), 0.0), 1.0), 4)
        except Exception as exc:
            error = exc if isinstance(exc, ValidationError) else ValidationError(
                gate.validator_name, str(exc)
            )
            logger.warning(
                "validator_failed",
                validator=gate.validator_name,
                error=str(error),
                error_type=type(exc).__name__,
            )
            score, reason = 0.0, str(error)

        return ValidationResult(
            validator=gate.validator_name,
            category=category,
            score=score,
            threshold=gate.threshold,
            passed=score >= gate.threshold,
            reason=reason,
        )
