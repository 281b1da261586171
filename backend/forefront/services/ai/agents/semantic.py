"""
Semantic analysis of raw request text (rule-based, no model calls).

Extracts:
- Primary action: first known action verb ("ask" for questions)
- Primary subject: the words the action applies to
- Entities: quoted strings, quantities, dates, named tools, proper nouns
- Constraints: dates, quantities, tools and limiting phrases ("at least", ...)
- Specificity: 0..1 from entity count, constraint count and length

Deterministic and never raises; degenerate input yields empty fields.
"""
import re
from typing import List, Optional, Tuple

from forefront.core.logging import get_logger
from forefront.services.ai.schema import Entity, EntityKind, Semantics

logger = get_logger(__name__)

ACTION_VERBS = {
    "generate", "create", "make", "draw", "paint", "illustrate", "render",
    "design", "write", "draft", "compose", "rewrite", "summarize", "summarise",
    "research", "investigate", "find", "search", "explain", "teach", "describe",
    "analyze", "analyse", "compare", "evaluate", "assess", "review", "build",
    "implement", "code", "program", "develop", "debug", "fix", "refactor",
    "optimize", "translate", "list", "outline", "plan", "calculate", "show",
    "tell", "help", "brainstorm", "suggest", "recommend", "convert",
}

QUESTION_WORDS = {
    "what", "why", "how", "when", "where", "which", "who", "whom", "whose",
    "is", "are", "can", "could", "should", "would", "does", "do", "did", "will",
}

AUXILIARIES = {
    "is", "are", "was", "were", "do", "does", "did", "can", "could", "should",
    "would", "will", "i", "you", "we", "it", "to", "about",
}

DETERMINERS = {
    "a", "an", "the", "me", "us", "some", "this", "that", "these", "those",
    "my", "our", "your", "their", "his", "her", "them", "any",
}

CONJUNCTIONS = {"and", "or", "but", "then", "so", "because", "while", "with", "using"}

MAX_SUBJECT_WORDS = 8

# Known technologies, matched case-insensitively on single tokens
TOOL_NAMES = {
    "python", "javascript", "typescript", "java", "kotlin", "swift", "rust",
    "golang", "c++", "c#", "ruby", "php", "sql", "html", "css", "bash",
    "react", "vue", "angular", "svelte", "next.js", "node.js", "django",
    "flask", "fastapi", "express", "tailwind", "graphql", "postgresql",
    "postgres", "mysql", "sqlite", "mongodb", "redis", "kafka", "spark",
    "docker", "kubernetes", "terraform", "aws", "gcp", "azure", "linux",
    "git", "github", "supabase", "firebase", "pandas", "numpy", "pytorch",
    "tensorflow", "scikit-learn", "jupyter", "excel", "figma", "photoshop",
    "blender", "unity", "midjourney", "dall-e", "chatgpt", "gemini", "llama",
}

TOKEN_RE = re.compile(r"[A-Za-z0-9]+(?:['.+#-][A-Za-z0-9]+)*[+#]*")

QUOTED_RE = re.compile(r"\"([^\"]+)\"|“([^”]+)”|(?:(?<=\s)|^)'([^']+)'(?=[\s.,;:!?]|$)")

QUANTITY_RE = re.compile(
    r"[$€£]\s?\d[\d,]*(?:\.\d+)?(?:\s?(?:k|m|bn|million|billion)\b)?"
    r"|\b\d[\d,]*(?:\.\d+)?\s?(?:%|(?:percent|words?|pages?|paragraphs?|sentences?"
    r"|lines?|steps?|items?|examples?|slides?|minutes?|hours?|days?|weeks?|months?"
    r"|years?|seconds?|ms|px|kb|mb|gb|tb|kg|km|miles?|users?|dollars?|usd)\b)",
    re.IGNORECASE,
)

MONTHS = (
    r"(?:January|February|March|April|June|July|August|September|October|"
    r"November|December|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec|May(?=\s+\d))"
)

DATE_RE = re.compile(
    r"\b\d{4}-\d{2}-\d{2}\b"
    rf"|\b{MONTHS}\.?(?:\s+\d{{1,2}}(?:st|nd|rd|th)?)?(?:,?\s+(?:19|20)\d{{2}})?\b"
    r"|\b(?:19|20)\d{2}s?\b"
    r"|\b(?:today|tomorrow|yesterday|tonight|(?:this|next|last)\s+(?:week|month|quarter|year))\b",
)

CONSTRAINT_PHRASE_RE = re.compile(
    r"\b(at least|at most|no more than|no less than|fewer than|less than|more than"
    r"|up to|within|under|without|only|exactly|limited to|in the style of"
    r"|for beginners|for kids|for experts"
    r"|by(?=\s+(?:\d|tomorrow\b|tonight\b|next\b|the end\b|end of\b"
    r"|(?:mon|tues|wednes|thurs|fri|satur|sun)day\b)))"
    r"((?:\s+[^\s,;:!?()]+){0,4})",
    re.IGNORECASE,
)

ACRONYM_RE = re.compile(r"[A-Z][A-Z0-9]+(?:-[A-Z0-9]+)*")
CAMEL_CASE_RE = re.compile(r"[A-Z]?[a-z]+[A-Z][A-Za-z0-9]*")
CLAUSE_BREAK_RE = re.compile(r"[.,;:!?\n\"“”()]")
SENTENCE_BREAK_RE = re.compile(r"[.!?\n]")

# Extraction priority when two entities start at the same offset
_KIND_PRIORITY = {
    EntityKind.QUOTED: 0,
    EntityKind.QUANTITY: 1,
    EntityKind.DATE: 2,
    EntityKind.TOOL: 3,
    EntityKind.PROPER_NOUN: 4,
}

_CONSTRAINT_KINDS = {EntityKind.DATE, EntityKind.QUANTITY, EntityKind.TOOL}

Token = Tuple[str, int, int]  # (text, start, end)


class SemanticAnalyzer:
    """Rule-based extraction of action, subject, entities and specificity."""

    def analyze(self, text: str) -> Semantics:
        if not text or not text.strip():
            return Semantics()

        tokens = [(m.group(0), m.start(), m.end()) for m in TOKEN_RE.finditer(text)]
        if not tokens:
            return Semantics()

        action, action_index = self._primary_action(text, tokens)
        subject = self._primary_subject(text, tokens, action, action_index)
        entities = self._entities(text, tokens)
        constraints = self._constraints(text, entities)
        specificity = self._specificity(len(entities), len(constraints), len(tokens))

        semantics = Semantics(
            primary_action=action,
            primary_subject=subject,
            entities=tuple(Entity(text=t, kind=k) for _, t, k in entities),
            constraints=tuple(constraints),
            specificity=specificity,
        )
        logger.debug(
            "semantic_analysis_completed",
            primary_action=action,
            primary_subject=subject,
            entity_count=len(entities),
            constraint_count=len(constraints),
            specificity=specificity,
        )
        return semantics

    # ------------------------------------------------------------------
    # Action & subject
    # ------------------------------------------------------------------

    def _primary_action(self, text: str, tokens: List[Token]) -> Tuple[str, Optional[int]]:
        for index, (word, _, _) in enumerate(tokens):
            lowered = word.lower()
            if lowered in ACTION_VERBS:
                return lowered, index
        if text.strip().endswith("?") or tokens[0][0].lower() in QUESTION_WORDS:
            return "ask", None
        return "", None

    def _primary_subject(
        self,
        text: str,
        tokens: List[Token],
        action: str,
        action_index: Optional[int],
    ) -> str:
        if action_index is not None:
            start = action_index + 1
            skip = DETERMINERS
        else:
            start = 0
            skip = QUESTION_WORDS | AUXILIARIES | DETERMINERS if action == "ask" else DETERMINERS

        words: List[str] = []
        previous_end: Optional[int] = tokens[start - 1][2] if start > 0 else None
        for word, begin, end in tokens[start:]:
            if previous_end is not None and CLAUSE_BREAK_RE.search(text[previous_end:begin]):
                break
            previous_end = end
            lowered = word.lower()
            if not words and lowered in skip:
                continue
            if lowered in CONJUNCTIONS:
                break
            words.append(word)
            if len(words) >= MAX_SUBJECT_WORDS:
                break
        return " ".join(words)

    # ------------------------------------------------------------------
    # Entities & constraints
    # ------------------------------------------------------------------

    def _entities(self, text: str, tokens: List[Token]) -> List[Tuple[int, str, EntityKind]]:
        candidates: List[Tuple[int, int, str, EntityKind]] = []

        for match in QUOTED_RE.finditer(text):
            inner = next(g for g in match.groups() if g is not None).strip()
            if inner:
                candidates.append((match.start(), match.end(), inner, EntityKind.QUOTED))
        for match in QUANTITY_RE.finditer(text):
            candidates.append((match.start(), match.end(), match.group(0).strip(), EntityKind.QUANTITY))
        for match in DATE_RE.finditer(text):
            candidates.append((match.start(), match.end(), match.group(0).strip(), EntityKind.DATE))
        for word, begin, end in tokens:
            if word.lower() in TOOL_NAMES:
                candidates.append((begin, end, word, EntityKind.TOOL))
        candidates.extend(self._proper_nouns(text, tokens))

        candidates.sort(key=lambda c: (c[0], _KIND_PRIORITY[c[3]]))

        entities: List[Tuple[int, str, EntityKind]] = []
        seen = set()
        covered_until = -1
        for begin, end, value, kind in candidates:
            if begin < covered_until:
                continue  # overlaps an entity already taken
            key = value.lower()
            if key in seen:
                continue
            seen.add(key)
            covered_until = end
            entities.append((begin, value, kind))
        return entities

    def _proper_nouns(self, text: str, tokens: List[Token]) -> List[Tuple[int, int, str, EntityKind]]:
        found: List[Tuple[int, int, str, EntityKind]] = []
        run: List[Token] = []

        def flush() -> None:
            if run:
                value = text[run[0][1]:run[-1][2]]
                found.append((run[0][1], run[-1][2], value, EntityKind.PROPER_NOUN))
                run.clear()

        previous_end: Optional[int] = None
        for word, begin, end in tokens:
            gap = text[previous_end:begin] if previous_end is not None else ""
            sentence_start = previous_end is None or bool(SENTENCE_BREAK_RE.search(gap))
            distinctive = bool(ACRONYM_RE.fullmatch(word) or CAMEL_CASE_RE.fullmatch(word))
            capitalized = word[0].isupper() and word != "I"

            if run and gap.strip():
                flush()

            if distinctive or (capitalized and not sentence_start):
                run.append((word, begin, end))
            else:
                flush()
            previous_end = end
        flush()
        return found

    def _constraints(self, text: str, entities: List[Tuple[int, str, EntityKind]]) -> List[str]:
        positioned: List[Tuple[int, str]] = [
            (offset, value) for offset, value, kind in entities if kind in _CONSTRAINT_KINDS
        ]
        for match in CONSTRAINT_PHRASE_RE.finditer(text):
            phrase = (match.group(1) + match.group(2)).strip().rstrip(".")
            positioned.append((match.start(), phrase))

        positioned.sort(key=lambda item: item[0])
        constraints: List[str] = []
        seen = set()
        for _, value in positioned:
            key = value.lower()
            if key not in seen:
                seen.add(key)
                constraints.append(value)
        return constraints

    @staticmethod
    def _specificity(entity_count: int, constraint_count: int, word_count: int) -> float:
        score = (
            0.45 * min(entity_count, 4) / 4
            + 0.35 * min(constraint_count, 3) / 3
            + 0.20 * min(word_count, 25) / 25
        )
        return round(min(score, 1.0), 3)


_semantic_analyzer: Optional[SemanticAnalyzer] = None


def get_semantic_analyzer() -> SemanticAnalyzer:
    """Global singleton accessor."""
    global _semantic_analyzer
    if _semantic_analyzer is None:
        _semantic_analyzer = SemanticAnalyzer()
    return _semantic_analyzer
