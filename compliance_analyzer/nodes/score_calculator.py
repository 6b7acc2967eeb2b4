"""Score Calculator.

One penalty curve for grammar and guidelines alike::

    issue_rate = total_issues / total_messages * 100
    score      = max(0, round(100 - issue_rate * 5))

5% issue density costs 25 points and 20% zeroes the score.  Arithmetic is
exact and rounds halves up, so equal inputs give equal scores on any
platform.  With no messages the score is undefined and returned as None,
never as 0 or 100.
"""

from __future__ import annotations

import math
from fractions import Fraction
from typing import Optional

from ..models import AggregateScore

PENALTY_PER_PERCENT = 5

_HALF = Fraction(1, 2)


def _round_half_up(value: Fraction) -> int:
    return math.floor(value + _HALF)


def calculate_score(total_issues: int, total_messages: int) -> Optional[int]:
    if total_messages <= 0:
        return None
    issue_rate = Fraction(total_issues * 100, total_messages)
    return max(0, min(100, _round_half_up(100 - issue_rate * PENALTY_PER_PERCENT)))


def overall_score(grammar: Optional[int], guidelines: Optional[int]) -> Optional[int]:
    if grammar is not None and guidelines is not None:
        return _round_half_up(Fraction(grammar + guidelines, 2))
    return grammar if grammar is not None else guidelines


def aggregate_score(
    grammar_issues: int,
    grammar_messages: int,
    guideline_issues: int,
    guideline_messages: int,
) -> AggregateScore:
    grammar = calculate_score(grammar_issues, grammar_messages)
    guidelines = calculate_score(guideline_issues, guideline_messages)
    return AggregateScore(
        grammar_score=grammar,
        guidelines_score=guidelines,
        overall_score=overall_score(grammar, guidelines),
    )
