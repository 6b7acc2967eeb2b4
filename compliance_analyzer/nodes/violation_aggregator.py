"""Violation Aggregator.

Folds every batch outcome into one corpus-wide tally per category.
Counts for a guideline are summed across batches but never across
categories: each guideline has exactly one home category (its indexed
category, or for unknown titles the first category it was reported
under), and conflicting placements are recorded as warnings.

Batch-local example indices are remapped to corpus-global indices.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

from ..errors import CategoryConflict
from ..models import (
    CATEGORY_ORDER,
    GRAMMAR_FIELDS,
    AnalysisOutcome,
    Batch,
    Category,
    CategoryTally,
    Failed,
    GrammarBreakdown,
    IssueCount,
    ViolationItem,
)
from ..timing import timed_node
from .guideline_index import GuidelineIndex

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Aggregate:
    """Corpus-wide totals plus the message counts each domain covers."""

    grammar: Optional[GrammarBreakdown]
    categories: tuple[CategoryTally, ...]
    grammar_messages: int = 0
    guideline_messages: int = 0
    guideline_positions: tuple[int, ...] = ()
    conflicts: tuple[CategoryConflict, ...] = field(default=())


def _shift(indices: tuple[int, ...], offset: int) -> tuple[int, ...]:
    return tuple(offset + i for i in indices)


def remap_grammar(grammar: GrammarBreakdown, offset: int) -> GrammarBreakdown:
    return replace(grammar, **{
        name: IssueCount(
            count=getattr(grammar, name).count,
            example_indices=_shift(getattr(grammar, name).example_indices, offset),
        )
        for name in GRAMMAR_FIELDS
    })


def add_grammar(a: GrammarBreakdown, b: GrammarBreakdown) -> GrammarBreakdown:
    """Field-wise sum of two breakdowns; explanations are joined."""
    fields = {
        name: IssueCount(
            count=getattr(a, name).count + getattr(b, name).count,
            example_indices=getattr(a, name).example_indices + getattr(b, name).example_indices,
        )
        for name in GRAMMAR_FIELDS
    }
    explanation = " ".join(e for e in (a.score_explanation, b.score_explanation) if e)
    return GrammarBreakdown(score_explanation=explanation, **fields)


def merge_item(a: ViolationItem, b: ViolationItem) -> ViolationItem:
    """Sum two tallies of the same guideline from different batches."""
    return ViolationItem(
        guideline_id=a.guideline_id or b.guideline_id,
        title=a.title,
        count=a.count + b.count,
        example_indices=a.example_indices + b.example_indices,
        verified=a.verified and b.verified,
        source=a.source,
    )


@timed_node("violation_aggregator", "programmatic")
def aggregate(
    outcomes: Sequence[tuple[Batch, AnalysisOutcome]],
    index: Optional[GuidelineIndex] = None,
) -> Aggregate:
    """Fold ``(batch, outcome)`` pairs, in batch order, into an ``Aggregate``.

    ``Failed`` outcomes contribute nothing.  A partially recovered outcome
    contributes only the domains it recovered, and its messages count
    towards that domain's coverage only.
    """
    home: dict[str, Category] = {}
    totals: dict[str, ViolationItem] = {}
    conflicts: list[CategoryConflict] = []
    grammars: list[GrammarBreakdown] = []
    grammar_messages = 0
    guideline_positions: list[int] = []

    for batch, outcome in outcomes:
        if isinstance(outcome, Failed):
            continue

        if outcome.grammar is not None:
            grammars.append(remap_grammar(outcome.grammar, batch.offset))
            grammar_messages += len(batch)

        if outcome.categories is None:
            continue
        guideline_positions.extend(range(batch.offset, batch.offset + len(batch)))

        placed_in_batch: dict[str, Category] = {}
        for tally in outcome.categories:
            for item in tally.items:
                key = item.key
                if key in placed_in_batch:
                    if placed_in_batch[key] != tally.category:
                        conflicts.append(CategoryConflict(
                            key=item.title, kept=placed_in_batch[key].value,
                            ignored=tally.category.value, batch_index=batch.index,
                        ))
                    else:
                        log.debug("Batch %d: duplicate item %r ignored", batch.index, item.title)
                    continue
                placed_in_batch[key] = tally.category

                guideline = index.get(item.guideline_id) if index and item.guideline_id else None
                expected = home.get(key) or (guideline.category if guideline else tally.category)
                if tally.category != expected:
                    conflicts.append(CategoryConflict(
                        key=item.title, kept=expected.value,
                        ignored=tally.category.value, batch_index=batch.index,
                    ))
                home.setdefault(key, expected)

                remapped = replace(item, example_indices=_shift(item.example_indices, batch.offset))
                totals[key] = merge_item(totals[key], remapped) if key in totals else remapped

    for c in conflicts:
        log.warning("%s", c)

    categories = tuple(
        CategoryTally(
            category=category,
            items=tuple(item for key, item in totals.items() if home[key] == category),
        )
        for category in CATEGORY_ORDER
    )
    grammar = functools.reduce(add_grammar, grammars) if grammars else None

    log.info("Aggregated %d guideline item(s) over %d message(s); grammar over %d message(s)",
             len(totals), len(guideline_positions), grammar_messages)
    return Aggregate(
        grammar=grammar,
        categories=categories,
        grammar_messages=grammar_messages,
        guideline_messages=len(guideline_positions),
        guideline_positions=tuple(guideline_positions),
        conflicts=tuple(conflicts),
    )
