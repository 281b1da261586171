"""
Query refinement agent for re-research.

Responsibilities:
- Turn a failing quality report into a sharper research query
- Target the lowest-scoring failing grounding validator

Deterministic: the refined query is the original request plus
"Be more specific about <reason>", so a retry is reproducible from the report.
"""
from typing import Iterable, Optional

from forefront.core.logging import get_logger
from forefront.services.ai.schema import QualityReport, ValidationResult, ValidatorCategory

logger = get_logger(__name__)


class QueryRefinementAgent:
    """Builds refined research queries from validation failures."""

    def __init__(self, categories: Optional[Iterable[str]] = None):
        self.categories = frozenset(categories or (ValidatorCategory.GROUNDING.value,))

    def target(self, report: QualityReport) -> Optional[ValidationResult]:
        """Lowest-scoring failing validator in a re-research category (first wins ties)."""
        candidates = [
            r for r in report.failing_results if r.category.value in self.categories
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda r: r.score)

    def refine(self, message: str, report: QualityReport) -> str:
        target = self.target(report)
        if target is None:
            return message

        focus = target.reason or target.validator
        refined = f"{message.rstrip()}\n\nBe more specific about {focus}."
        logger.info(
            "query_refined",
            validator=target.validator,
            score=target.score,
            focus=focus,
        )
        return refined
