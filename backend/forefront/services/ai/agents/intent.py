"""
Intent classification agent.

Responsibilities:
- Classify a raw request into domain, task type and complexity
- Fast keyword heuristics first; one model call only when they are inconclusive
- Enforce JSON-only model output via pydantic validation

Fallback to the default intent is handled by the Orchestrator.
"""
import json
import re
from typing import Dict, List, Optional

from forefront.core.config import get_settings
from forefront.core.logging import get_logger
from forefront.core.metrics import (
    record_intent_classification,
    record_llm_low_confidence,
    record_llm_schema_validation_failure,
)
from forefront.services.ai.agents.semantic import get_semantic_analyzer
from forefront.services.ai.errors import ClassificationError
from forefront.services.ai.llm_client import get_llm_client
from forefront.services.ai.prompts import INTENT_SYSTEM_PROMPT
from forefront.services.ai.schema import (
    Complexity,
    Domain,
    Intent,
    IntentSource,
    SchemaValidationError,
    Semantics,
    TaskType,
    validate_intent_payload,
)

logger = get_logger(__name__)

# Image requests: a drawing verb, or a creation verb together with a visual noun.
DRAW_RE = re.compile(r"\b(?:draw|paint|sketch|illustrate)\b", re.IGNORECASE)
CREATE_RE = re.compile(
    r"\b(?:generate|create|make|design|produce|render|show me)\b", re.IGNORECASE
)
IMAGE_NOUN_RE = re.compile(
    r"\b(?:images?|pictures?|photos?|illustrations?|drawings?|paintings?|artwork"
    r"|logos?|posters?|wallpapers?|portraits?|icons?|renders?|visuals?)\b",
    re.IGNORECASE,
)

TASK_PATTERNS: Dict[TaskType, re.Pattern] = {
    TaskType.RESEARCH: re.compile(
        r"\b(?:research|latest|recent|current|news|trends?|breakthroughs?|find out"
        r"|look up|sources?|citations?|statistics|state of the art|developments?"
        r"|investigate|survey)\b",
        re.IGNORECASE,
    ),
    TaskType.ANALYSIS: re.compile(
        r"\b(?:analy[sz]e|analysis|compare|comparison|versus|vs|evaluate|assess"
        r"|pros and cons|trade-?offs?|impact|implications|examine|critique)\b",
        re.IGNORECASE,
    ),
    TaskType.CODE_GENERATION: re.compile(
        r"\b(?:code|coding|function|script|program|implement|debug|refactor|api"
        r"|endpoint|class|algorithm|bug|regex|sql|unit tests?|python|javascript"
        r"|typescript|react|rust|java|component)\b",
        re.IGNORECASE,
    ),
    TaskType.TEACHING: re.compile(
        r"\b(?:explain|teach|tutorial|learn|lesson|how does|how do|how to|what is"
        r"|what are|guide|walk me through|step-by-step|for beginners|understand"
        r"|course|eli5)\b",
        re.IGNORECASE,
    ),
    TaskType.TEXT_GENERATION: re.compile(
        r"\b(?:write|draft|compose|essay|story|poem|article|blog|email|letter"
        r"|summary|summari[sz]e|rewrite|paraphrase|caption|slogan|tagline|outline)\b",
        re.IGNORECASE,
    ),
}

# Tie-break order when two families match equally often
TASK_PRIORITY: List[TaskType] = [
    TaskType.RESEARCH,
    TaskType.ANALYSIS,
    TaskType.CODE_GENERATION,
    TaskType.TEACHING,
    TaskType.TEXT_GENERATION,
]

TASK_DOMAINS: Dict[TaskType, Domain] = {
    TaskType.IMAGE_GENERATION: Domain.CREATIVE,
    TaskType.RESEARCH: Domain.ANALYTICAL,
    TaskType.ANALYSIS: Domain.ANALYTICAL,
    TaskType.CODE_GENERATION: Domain.TECHNICAL,
    TaskType.TEACHING: Domain.LEARNING,
    TaskType.TEXT_GENERATION: Domain.CREATIVE,
    TaskType.CONVERSATION: Domain.GENERAL,
}

GREETING_RE = re.compile(
    r"^\s*(?:hi|hello|hey|yo|thanks|thank you|good (?:morning|afternoon|evening)"
    r"|how are you|what's up)\b",
    re.IGNORECASE,
)
QUESTION_START_RE = re.compile(
    r"^\s*(?:what|why|how|when|where|which|who|is|are|can|could|should|does|do)\b",
    re.IGNORECASE,
)
MULTI_STEP_RE = re.compile(
    r"\b(?:then|after that|afterwards|finally|step by step|first\b.+\bthen)\b"
    r"|\band\s+(?:then\s+)?(?:summari[sz]e|explain|compare|analy[sz]e|write|create"
    r"|generate|build|list|describe|evaluate|implement)\b",
    re.IGNORECASE,
)
DEPTH_RE = re.compile(
    r"\b(?:comprehensive|in-depth|in depth|detailed|thorough|deep dive|advanced"
    r"|production|scalable|architecture|end-to-end|exhaustive|rigorous)\b",
    re.IGNORECASE,
)

GREETING_MAX_WORDS = 6


class IntentClassifier:
    """Heuristic-first intent classifier with model escalation."""

    def __init__(
        self,
        confidence_threshold: Optional[float] = None,
        model: Optional[str] = None,
        llm_client=None,
    ):
        settings = get_settings()
        self.confidence_threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else settings.intent_confidence_threshold
        )
        self.model = model or settings.classifier_model
        self._llm_client = llm_client or get_llm_client()

    async def classify(self, text: str, semantics: Optional[Semantics] = None) -> Intent:
        """
        Classify a request.

        Returns:
            Intent from the heuristic path when confident, otherwise from the model.

        Raises:
            ClassificationError when both paths are inconclusive. Callers fall
            back to the default intent.
        """
        if not text or not text.strip():
            raise ClassificationError("empty request")

        semantics = semantics or get_semantic_analyzer().analyze(text)
        heuristic = self.classify_heuristic(text, semantics)

        if heuristic.confidence >= self.confidence_threshold:
            record_intent_classification(IntentSource.HEURISTIC.value, heuristic.domain.value)
            logger.info(
                "intent_classified",
                source=IntentSource.HEURISTIC.value,
                domain=heuristic.domain.value,
                task_type=heuristic.task_type.value,
                complexity=heuristic.complexity.value,
                confidence=heuristic.confidence,
            )
            return heuristic

        logger.info(
            "intent_heuristic_inconclusive",
            confidence=heuristic.confidence,
            threshold=self.confidence_threshold,
        )
        intent = await self._classify_with_model(text)
        record_intent_classification(IntentSource.MODEL.value, intent.domain.value)
        logger.info(
            "intent_classified",
            source=IntentSource.MODEL.value,
            domain=intent.domain.value,
            task_type=intent.task_type.value,
            complexity=intent.complexity.value,
            confidence=intent.confidence,
        )
        return intent

    # ------------------------------------------------------------------
    # Heuristic path
    # ------------------------------------------------------------------

    def classify_heuristic(self, text: str, semantics: Semantics) -> Intent:
        """Keyword-family classification; low confidence means inconclusive."""
        complexity = self.score_complexity(text, semantics)
        word_count = len(text.split())
        counts = {task: len(pattern.findall(text)) for task, pattern in TASK_PATTERNS.items()}

        if DRAW_RE.search(text) or (CREATE_RE.search(text) and IMAGE_NOUN_RE.search(text)):
            domain = Domain.HYBRID if counts[TaskType.RESEARCH] else Domain.CREATIVE
            return Intent(
                domain=domain,
                task_type=TaskType.IMAGE_GENERATION,
                complexity=complexity,
                confidence=0.9,
            )

        if GREETING_RE.search(text) and word_count <= GREETING_MAX_WORDS:
            return Intent(
                domain=Domain.GENERAL,
                task_type=TaskType.CONVERSATION,
                complexity=Complexity.LOW,
                confidence=0.9,
            )

        matched = [task for task in TASK_PRIORITY if counts[task] > 0]
        if not matched:
            if text.strip().endswith("?") or QUESTION_START_RE.search(text):
                return Intent(
                    domain=Domain.LEARNING,
                    task_type=TaskType.TEACHING,
                    complexity=complexity,
                    confidence=0.65,
                )
            return Intent(
                domain=Domain.GENERAL,
                task_type=TaskType.TEXT_GENERATION,
                complexity=complexity,
                confidence=0.0,
            )

        # Highest count wins; sorted() is stable so ties keep priority order.
        ranked = sorted(matched, key=lambda task: counts[task], reverse=True)
        top = ranked[0]
        top_count = counts[top]
        second_count = counts[ranked[1]] if len(ranked) > 1 else 0
        confidence = round(0.5 + 0.4 * (top_count - second_count) / top_count, 3)

        domains = {TASK_DOMAINS[t] for t in matched if t != TaskType.TEXT_GENERATION}
        domain = Domain.HYBRID if len(domains) >= 2 else TASK_DOMAINS[top]

        return Intent(
            domain=domain,
            task_type=top,
            complexity=complexity,
            confidence=confidence,
        )

    @staticmethod
    def score_complexity(text: str, semantics: Semantics) -> Complexity:
        """Complexity tier from length, multi-step markers, depth keywords and constraints."""
        words = len(text.split())
        score = 0
        if words > 25:
            score += 2
        elif words > 12:
            score += 1
        score += min(len(MULTI_STEP_RE.findall(text)), 2)
        score += min(len(DEPTH_RE.findall(text)), 2)
        if len(semantics.constraints) >= 3:
            score += 1

        if score == 0:
            return Complexity.LOW
        if score <= 2:
            return Complexity.MEDIUM
        return Complexity.HIGH

    # ------------------------------------------------------------------
    # Model path
    # ------------------------------------------------------------------

    async def _classify_with_model(self, text: str) -> Intent:
        messages = [
            {"role": "system", "content": INTENT_SYSTEM_PROMPT},
            {"role": "user", "content": text},
        ]

        try:
            response = await self._llm_client.chat(
                agent="intent",
                messages=messages,
                model=self.model,
                max_tokens=128,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            logger.warning(
                "intent_llm_call_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ClassificationError(f"model call failed: {exc}") from exc

        # OpenAI-compatible shape: choices[0].message.content is a JSON string.
        try:
            content = (
                response.get("choices", [{}])[0]
                .get("message", {})
                .get("content", "")
            )
            payload = json.loads(content)
        except Exception as exc:
            record_llm_schema_validation_failure("intent")
            logger.warning(
                "intent_llm_invalid_json",
                error=str(exc),
                raw=response,
            )
            raise ClassificationError("model returned invalid JSON") from exc

        try:
            output = validate_intent_payload(payload)
        except SchemaValidationError as exc:
            record_llm_schema_validation_failure("intent")
            logger.warning(
                "intent_llm_schema_invalid",
                error=str(exc),
                raw_payload=payload,
            )
            raise ClassificationError("model output failed schema validation") from exc

        if output.confidence < self.confidence_threshold:
            record_llm_low_confidence("intent")
            raise ClassificationError(
                f"model confidence {output.confidence} below {self.confidence_threshold}"
            )

        return Intent(
            domain=output.domain,
            task_type=output.task_type,
            complexity=output.complexity,
            confidence=output.confidence,
            source=IntentSource.MODEL,
        )


_intent_classifier: Optional[IntentClassifier] = None


def get_intent_classifier() -> IntentClassifier:
    """Global singleton accessor."""
    global _intent_classifier
    if _intent_classifier is None:
        _intent_classifier = IntentClassifier()
    return _intent_classifier
