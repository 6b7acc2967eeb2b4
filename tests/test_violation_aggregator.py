from __future__ import annotations

from compliance_analyzer.models import (
    Batch,
    Category,
    CategoryTally,
    Failed,
    GrammarBreakdown,
    IssueCount,
    PartiallyRecovered,
    Success,
    ViolationItem,
)
from compliance_analyzer.nodes.violation_aggregator import aggregate

from conftest import make_record


def _batch(index: int, offset: int, size: int) -> Batch:
    return Batch(index, offset, tuple(make_record(offset + i) for i in range(size)))


def _success(*tallies: CategoryTally, grammar: GrammarBreakdown = GrammarBreakdown()) -> Success:
    return Success(grammar=grammar, categories=tallies)


def _tally(agg, category: Category) -> CategoryTally:
    return next(t for t in agg.categories if t.category == category)


def test_counts_sum_across_batches_and_examples_are_remapped(index) -> None:
    b0, b1 = _batch(0, 0, 50), _batch(1, 50, 50)
    o0 = _success(CategoryTally(Category.SALES, (ViolationItem("g-upsell", "Upsell after rapport", 2, (3, 7)),)))
    o1 = _success(CategoryTally(Category.SALES, (ViolationItem("g-upsell", "Upsell after rapport", 1, (0,)),)))

    agg = aggregate([(b0, o0), (b1, o1)], index)

    item = _tally(agg, Category.SALES).items[0]
    assert item.count == 3
    assert item.example_indices == (3, 7, 50)
    assert agg.guideline_messages == 100
    assert agg.grammar_messages == 100
    assert agg.conflicts == ()


def test_grammar_is_summed_and_remapped() -> None:
    g0 = GrammarBreakdown(spelling_errors=IssueCount(2, (1, 4)), score_explanation="a")
    g1 = GrammarBreakdown(spelling_errors=IssueCount(1, (0,)), punctuation_problems=IssueCount(3, (2,)))
    agg = aggregate([(_batch(0, 0, 10), _success(grammar=g0)), (_batch(1, 10, 10), _success(grammar=g1))])

    assert agg.grammar.spelling_errors == IssueCount(3, (1, 4, 10))
    assert agg.grammar.punctuation_problems.example_indices == (12,)
    assert agg.grammar.total_issues == 6


def test_failed_batches_contribute_nothing(index) -> None:
    ok = _success(CategoryTally(Category.GENERAL, (ViolationItem("g-reply", "Reply quickly", 1, (0,)),)))
    agg = aggregate([
        (_batch(0, 0, 50), Failed("service unavailable")),
        (_batch(1, 50, 50), ok),
    ], index)

    assert _tally(agg, Category.GENERAL).total_violations == 1
    assert _tally(agg, Category.GENERAL).items[0].example_indices == (50,)
    assert agg.guideline_messages == 50
    assert agg.guideline_positions == tuple(range(50, 100))


def test_guideline_is_never_counted_in_two_categories(index) -> None:
    # The model files a sales guideline under psychology in the second batch.
    o0 = _success(CategoryTally(Category.SALES, (ViolationItem("g-upsell", "Upsell after rapport", 1, (0,)),)))
    o1 = _success(CategoryTally(Category.PSYCHOLOGY, (ViolationItem("g-upsell", "Upsell after rapport", 2, (1, 2)),)))

    agg = aggregate([(_batch(0, 0, 10), o0), (_batch(1, 10, 10), o1)], index)

    assert _tally(agg, Category.PSYCHOLOGY).items == ()
    assert _tally(agg, Category.SALES).total_violations == 3
    assert len(agg.conflicts) == 1
    conflict = agg.conflicts[0]
    assert (conflict.kept, conflict.ignored, conflict.batch_index) == ("sales", "psychology", 1)


def test_duplicate_in_one_batch_keeps_first_placement() -> None:
    item = ViolationItem(None, "Mystery rule", 2, (0, 1))
    o = _success(
        CategoryTally(Category.GENERAL, (item,)),
        CategoryTally(Category.CAPTIONS, (ViolationItem(None, "mystery rule", 5, (2,)),)),
    )
    agg = aggregate([(_batch(0, 0, 10), o)])

    assert _tally(agg, Category.GENERAL).total_violations == 2
    assert _tally(agg, Category.CAPTIONS).items == ()
    assert len(agg.conflicts) == 1


def test_partially_recovered_counts_only_recovered_domains(index) -> None:
    grammar_only = PartiallyRecovered(
        grammar=GrammarBreakdown(grammar_issues=IssueCount(1, (0,))),
        categories=None,
        recovered_fields=("grammarBreakdown",),
    )
    agg = aggregate([(_batch(0, 0, 20), grammar_only)], index)

    assert agg.grammar_messages == 20
    assert agg.guideline_messages == 0
    assert all(t.items == () for t in agg.categories)


def test_nothing_usable_gives_no_grammar() -> None:
    agg = aggregate([(_batch(0, 0, 5), Failed("no JSON"))])
    assert agg.grammar is None
    assert agg.grammar_messages == 0
    assert [t.category for t in agg.categories] == [
        Category.GENERAL, Category.PSYCHOLOGY, Category.CAPTIONS, Category.SALES,
    ]
