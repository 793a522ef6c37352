"""
Query complexity analysis.

Scores the last message of a conversation (with a bonus for long histories)
and buckets the score into a complexity class. The scoring constants live in
a single ``ComplexityTable`` so tests and deployments can swap them without
touching the logic.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from .models.message import ConversationMessage


class ComplexityClass(str, Enum):
    """Complexity buckets, ordered from cheapest to most expensive."""
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


ELABORATION_PATTERNS = (
    r"explain.*detail", r"analyze.*comprehensive", r"write.*essay",
    r"create.*story", r"detailed.*analysis", r"step.*by.*step",
    r"comprehensive.*guide", r"full.*explanation", r"elaborate",
    r"extensive", r"thorough", r"in.*depth", r"complete.*breakdown",
    r"long.*answer", r"detailed.*response", r"write.*article",
    r"provide.*examples", r"list.*all", r"explain.*everything",
)


@dataclass(frozen=True)
class ComplexityTable:
    """All tunable constants of the analyzer.

    ``length_bonuses`` and ``history_bonuses`` are (cut-off, bonus) pairs
    applied cumulatively when the length / message count is strictly greater
    than the cut-off. ``thresholds`` map a minimum score to a class and are
    checked from the highest score down.
    """
    length_bonuses: tuple = ((500, 2), (1000, 2), (2000, 3))
    patterns: tuple = ELABORATION_PATTERNS
    pattern_bonus: int = 3
    image_bonus: int = 2
    multi_question_bonus: int = 2
    history_bonuses: tuple = ((5, 1), (10, 2))
    thresholds: tuple = (
        (8, ComplexityClass.VERY_COMPLEX),
        (5, ComplexityClass.COMPLEX),
        (2, ComplexityClass.MODERATE),
    )
    _compiled: tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.patterns)
        object.__setattr__(self, "_compiled", compiled)

    def classify(self, score: int) -> ComplexityClass:
        for minimum, complexity in sorted(self.thresholds, key=lambda t: t[0], reverse=True):
            if score >= minimum:
                return complexity
        return ComplexityClass.SIMPLE

    def pattern_matches(self, content: str) -> int:
        return sum(1 for pattern in self._compiled if pattern.search(content))


DEFAULT_COMPLEXITY_TABLE = ComplexityTable()


@dataclass(frozen=True)
class ComplexityScore:
    complexity: ComplexityClass
    score: int


def analyze_complexity(
    messages: Sequence[ConversationMessage],
    table: ComplexityTable = DEFAULT_COMPLEXITY_TABLE,
) -> ComplexityScore:
    """Score a conversation and classify it.

    Args:
        messages: Full history for the request; only the last one is inspected
            for content, the count feeds the history bonus.
        table: Scoring constants.

    Returns:
        ComplexityScore with a non-negative score.
    """
    if not messages:
        return ComplexityScore(table.classify(0), 0)

    last = messages[-1]
    content = last.content or ""
    score = 0

    for cutoff, bonus in table.length_bonuses:
        if len(content) > cutoff:
            score += bonus

    score += table.pattern_bonus * table.pattern_matches(content)

    if last.has_images:
        score += table.image_bonus

    if content.count("?") > 1:
        score += table.multi_question_bonus

    for cutoff, bonus in table.history_bonuses:
        if len(messages) > cutoff:
            score += bonus

    return ComplexityScore(table.classify(score), score)
