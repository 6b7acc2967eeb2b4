"""Result Merger.

Overlays exact-rule counts on the aggregated qualitative tallies.  Where
an exact count is available for a guideline it replaces the model's count
(and examples) for that guideline; where none is available the model's
count stands, including a reported 0.

An exact count of 0 is ambiguous between "checked, nothing found" and "no
exact rule applies".  By default it is read as the latter and the model's
count is kept, with a warning when the two disagree; pass
``trust_exact_zero=True`` to make exact zeros authoritative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

from ..models import CATEGORY_ORDER, CategoryTally, ExactCount, ViolationItem
from ..timing import timed_node

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    categories: tuple[CategoryTally, ...]
    replaced: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def total_violations(self) -> int:
        return sum(t.total_violations for t in self.categories)


def _exact_item(exact: ExactCount) -> ViolationItem:
    return ViolationItem(
        guideline_id=exact.guideline_id,
        title=exact.title,
        count=exact.count,
        example_indices=exact.example_indices if exact.count else (),
        verified=True,
        source="exact",
    )


@timed_node("result_merger", "programmatic")
def merge_results(
    categories: Sequence[CategoryTally],
    exact_counts: Mapping[str, ExactCount],
    trust_exact_zero: bool = False,
) -> MergeResult:
    """Return tallies where available exact counts take precedence."""
    warnings: list[str] = []
    authoritative: dict[str, ExactCount] = {}

    qualitative = {
        item.guideline_id: item
        for tally in categories for item in tally.items if item.guideline_id
    }
    for guideline_id, exact in exact_counts.items():
        if exact.count == 0 and not trust_exact_zero:
            model_item = qualitative.get(guideline_id)
            if model_item is not None and model_item.count > 0:
                msg = (f"Exact rule for {exact.title!r} found 0 violations but the model "
                       f"reported {model_item.count}; model count kept")
                log.warning("%s", msg)
                warnings.append(msg)
            continue
        authoritative[guideline_id] = exact

    by_category: dict = {t.category: list(t.items) for t in categories}
    replaced: list[str] = []
    for guideline_id, exact in authoritative.items():
        for category, items in by_category.items():
            if category != exact.category:
                items[:] = [i for i in items if i.guideline_id != guideline_id]
        items = by_category.setdefault(exact.category, [])
        pos = next((n for n, i in enumerate(items) if i.guideline_id == guideline_id), None)
        if pos is None:
            items.append(_exact_item(exact))
        else:
            items[pos] = _exact_item(exact)
        model_item = qualitative.get(guideline_id)
        if model_item is not None and model_item.count != exact.count:
            log.info("Exact count for %r (%d) replaces model count (%d)",
                     exact.title, exact.count, model_item.count)
        replaced.append(guideline_id)

    merged = tuple(
        CategoryTally(category=c, items=tuple(by_category.get(c, ())))
        for c in CATEGORY_ORDER
    )
    return MergeResult(categories=merged, replaced=tuple(replaced), warnings=tuple(warnings))
