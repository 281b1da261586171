"""
Unit tests for SemanticAnalyzer:
- Primary action and subject extraction
- Entity extraction (quoted, quantity, date, tool, proper noun)
- Constraint extraction and specificity
- Degenerate input and determinism
"""
import pytest

from forefront.services.ai.agents.semantic import SemanticAnalyzer
from forefront.services.ai.schema import EntityKind, Semantics


@pytest.fixture
def analyzer():
    return SemanticAnalyzer()


def _entities(semantics: Semantics):
    return {entity.text: entity.kind for entity in semantics.entities}


def test_action_subject_and_entities(analyzer):
    """Imperative request yields its verb, subject, quantity and proper noun."""
    semantics = analyzer.analyze("Write a 500 word essay about the French Revolution")

    assert semantics.primary_action == "write"
    assert semantics.primary_subject == "500 word essay about the French Revolution"
    assert _entities(semantics) == {
        "500 word": EntityKind.QUANTITY,
        "French Revolution": EntityKind.PROPER_NOUN,
    }
    assert semantics.constraints == ("500 word",)
    # 0.45 * 2/4 + 0.35 * 1/3 + 0.20 * 9/25
    assert semantics.specificity == pytest.approx(0.414)


def test_question_uses_ask_action(analyzer):
    """Questions without an action verb get the 'ask' action and skip question words."""
    semantics = analyzer.analyze("What is quantum computing?")

    assert semantics.primary_action == "ask"
    assert semantics.primary_subject == "quantum computing"
    assert semantics.entities == ()
    assert semantics.specificity == pytest.approx(0.032)


def test_tools_dates_and_constraint_phrases(analyzer):
    """Tools win over proper nouns on the same span; 'by' deadlines become constraints."""
    semantics = analyzer.analyze("Build a REST API in Python by next week")

    entities = _entities(semantics)
    assert semantics.primary_action == "build"
    assert entities["REST API"] == EntityKind.PROPER_NOUN
    assert entities["Python"] == EntityKind.TOOL
    assert entities["next week"] == EntityKind.DATE
    assert semantics.constraints == ("Python", "by next week", "next week")


def test_quoted_entity_covers_inner_proper_nouns(analyzer):
    semantics = analyzer.analyze('Summarize "The Old Man and the Sea" in 3 paragraphs')

    entities = _entities(semantics)
    assert entities["The Old Man and the Sea"] == EntityKind.QUOTED
    assert "The Old Man" not in entities
    assert "3 paragraphs" in semantics.constraints


def test_subject_stops_at_conjunction(analyzer):
    semantics = analyzer.analyze("Explain recursion and give an example")

    assert semantics.primary_action == "explain"
    assert semantics.primary_subject == "recursion"


@pytest.mark.parametrize("text", ["", "   ", "?!..."])
def test_degenerate_input_returns_empty_semantics(analyzer, text):
    assert analyzer.analyze(text) == Semantics()


def test_analysis_is_deterministic(analyzer):
    text = "Compare PostgreSQL and MongoDB for a startup with at least 10,000 users"
    assert analyzer.analyze(text) == analyzer.analyze(text)


def test_specificity_is_bounded(analyzer):
    text = (
        'Draft a "Q3 Launch" plan for Acme Corp using Figma, Notion and Jira '
        "by next Friday, at most 2 pages, for 150 users, within $5,000 in 2025"
    )
    semantics = analyzer.analyze(text)

    assert 0.0 <= semantics.specificity <= 1.0
    assert len(semantics.constraints) >= 3
