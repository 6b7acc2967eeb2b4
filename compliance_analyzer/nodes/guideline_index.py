"""Guideline Index.

In-memory view of the active guidelines grouped by category.  Category
labels from the guideline source are resolved to ``Category`` once, at
load time, through an explicit label table; nothing downstream re-infers
a category from free text.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Iterable, Iterator, Optional, Union

from ..config import DEFAULT_CATEGORY_LABELS
from ..errors import CategoryConflict
from ..models import CATEGORY_ORDER, Category, Guideline

log = logging.getLogger(__name__)

_WS = re.compile(r"\s+")


def normalise_title(title: str) -> str:
    return _WS.sub(" ", title).strip().lower()


def guideline_id_for(title: str) -> str:
    """Stable id for guidelines supplied without one."""
    return "g-" + hashlib.sha1(normalise_title(title).encode("utf-8")).hexdigest()[:12]


class GuidelineIndex:
    """Read-only lookup over one run's guideline snapshot."""

    def __init__(self, guidelines: Iterable[Guideline]):
        self._ordered: list[Guideline] = []
        self._by_id: dict[str, Guideline] = {}
        self._by_title: dict[str, Guideline] = {}
        self.conflicts: list[CategoryConflict] = []

        for g in guidelines:
            if not g.is_active:
                continue
            title_key = normalise_title(g.title)
            existing = self._by_id.get(g.id) or self._by_title.get(title_key)
            if existing is not None:
                if existing.category != g.category:
                    conflict = CategoryConflict(
                        key=g.title, kept=existing.category.value, ignored=g.category.value,
                    )
                    log.warning("%s", conflict)
                    self.conflicts.append(conflict)
                continue
            self._ordered.append(g)
            self._by_id[g.id] = g
            self._by_title[title_key] = g

    def __iter__(self) -> Iterator[Guideline]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def get(self, guideline_id: str) -> Optional[Guideline]:
        return self._by_id.get(guideline_id)

    def find_by_title(self, title: str) -> Optional[Guideline]:
        return self._by_title.get(normalise_title(title))

    def resolve(self, key: str) -> Optional[Guideline]:
        """Look up by id first, then by title."""
        return self._by_id.get(key) or self.find_by_title(key)

    def by_category(self, category: Category) -> tuple[Guideline, ...]:
        return tuple(g for g in self._ordered if g.category == category)

    def grouped(self) -> dict[Category, tuple[Guideline, ...]]:
        return {c: self.by_category(c) for c in CATEGORY_ORDER}


def parse_category(label: str, labels: dict[str, Category]) -> Optional[Category]:
    return labels.get(normalise_title(label))


def load_guidelines(
    raw: Iterable[Union[dict, Guideline]],
    labels: Optional[dict[str, Category]] = None,
) -> tuple[list[Guideline], list[str]]:
    """Convert guideline-source records into ``Guideline`` objects.

    Returns ``(guidelines, warnings)``.  Records with an unknown category
    label or without a title are skipped with a warning.
    """
    labels = labels if labels is not None else DEFAULT_CATEGORY_LABELS
    guidelines: list[Guideline] = []
    warnings: list[str] = []

    for entry in raw:
        if isinstance(entry, Guideline):
            guidelines.append(entry)
            continue

        title = str(entry.get("title") or "").strip()
        if not title:
            warnings.append("Guideline without title skipped")
            continue

        category = parse_category(str(entry.get("category") or ""), labels)
        if category is None:
            msg = f"Guideline {title!r} has unknown category {entry.get('category')!r} -- skipped"
            log.warning("%s", msg)
            warnings.append(msg)
            continue

        weight = entry.get("weight", 1)
        try:
            weight = min(5, max(1, int(weight)))
        except (TypeError, ValueError):
            weight = 1

        guidelines.append(Guideline(
            id=str(entry.get("id") or guideline_id_for(title)),
            title=title,
            description=str(entry.get("description") or ""),
            category=category,
            weight=weight,
            examples=tuple(str(e) for e in entry.get("examples") or ()),
            counter_examples=tuple(
                str(e) for e in (entry.get("counter_examples") or entry.get("counterExamples") or ())
            ),
            is_active=bool(entry.get("is_active", entry.get("isActive", True))),
        ))

    return guidelines, warnings
