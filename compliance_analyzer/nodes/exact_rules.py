"""Exact Rule Engine.

Counts violations for guidelines whose condition can be read straight off
message metadata (reply time, price, purchase flag), without asking the
analysis service.  Counts produced here are authoritative.

Rules are attached to guidelines once per run: explicitly through the
rules table, or by recognising a canonical phrasing in the guideline text
such as "reply within 5 minutes", "reply time must not exceed 5 minutes"
or "never price below $15".
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ..models import ExactCount, Guideline, MessageRecord
from ..timing import timed_node
from .guideline_index import GuidelineIndex

log = logging.getLogger(__name__)

REPLY_TIME = "reply_time"
PRICE_BELOW = "price_below"
UNPURCHASED_PRICE_ITEM = "unpurchased_price_item"

RULE_KINDS = frozenset({REPLY_TIME, PRICE_BELOW, UNPURCHASED_PRICE_ITEM})
_NEEDS_THRESHOLD = frozenset({REPLY_TIME, PRICE_BELOW})

_REPLY_PATTERN = re.compile(
    r"\b(?:reply|replies|respond|responds|response|answer)\b[^.]*?"
    r"\b(?:within|under|in under|in less than|less than|faster than|inside"
    r"|exceed|exceeds|exceeding|more than|over)\s+"
    r"(\d+(?:\.\d+)?)\s*(?:min|mins|minute|minutes)\b",
    re.IGNORECASE,
)
_PRICE_WORD = re.compile(r"\b(?:price|prices|priced|pricing|ppv|ppvs)\b", re.IGNORECASE)
_PRICE_FLOOR_PATTERN = re.compile(
    r"\b(?:below|under|less than|at least|no lower than|minimum(?:\s+of)?)\s*\$\s*(\d+(?:\.\d+)?)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ExactRule:
    guideline_id: str
    kind: str
    threshold: Optional[float] = None

    def __post_init__(self) -> None:
        if self.kind not in RULE_KINDS:
            raise ValueError(f"unknown exact rule kind {self.kind!r}")
        if self.kind in _NEEDS_THRESHOLD and self.threshold is None:
            raise ValueError(f"rule kind {self.kind!r} needs a threshold")


def is_violation(record: MessageRecord, rule: ExactRule) -> bool:
    if rule.kind == REPLY_TIME:
        return record.reply_time_minutes > rule.threshold
    if rule.kind == PRICE_BELOW:
        return (record.is_price_item
                and record.price_amount is not None
                and record.price_amount < rule.threshold)
    # UNPURCHASED_PRICE_ITEM: unknown purchase state is not a violation.
    return record.is_price_item and record.was_purchased is False


def evaluate(
    records: Sequence[MessageRecord],
    guideline: Guideline,
    rule: ExactRule,
    offset: int = 0,
) -> ExactCount:
    """Count the records in *records* that break *rule*.

    Pure: the same records and rule always give the same count and the
    same example indices (``offset`` + position in *records*).
    """
    hits = tuple(offset + i for i, r in enumerate(records) if is_violation(r, rule))
    return ExactCount(
        guideline_id=guideline.id,
        title=guideline.title,
        category=guideline.category,
        count=len(hits),
        example_indices=hits,
    )


def detect_rule(guideline: Guideline) -> Optional[ExactRule]:
    """Recognise a metadata-only condition in the guideline's wording."""
    text = f"{guideline.title}. {guideline.description}"

    m = _REPLY_PATTERN.search(text)
    if m:
        return ExactRule(guideline.id, REPLY_TIME, float(m.group(1)))

    if _PRICE_WORD.search(text):
        m = _PRICE_FLOOR_PATTERN.search(text)
        if m:
            return ExactRule(guideline.id, PRICE_BELOW, float(m.group(1)))

    return None


def resolve_rules(
    index: GuidelineIndex,
    rule_entries: Iterable[dict] = (),
    detect: bool = True,
) -> tuple[dict[str, ExactRule], list[str]]:
    """Attach exact rules to guidelines.

    Table entries (``{"guideline": id-or-title, "kind": ..., "threshold": ...}``)
    take priority; remaining guidelines are checked with ``detect_rule``.
    Returns ``(rules_by_guideline_id, warnings)``.
    """
    rules: dict[str, ExactRule] = {}
    warnings: list[str] = []

    for entry in rule_entries:
        key = str(entry.get("guideline") or "")
        guideline = index.resolve(key)
        if guideline is None:
            warnings.append(f"Exact rule for unknown guideline {key!r} ignored")
            continue
        threshold = entry.get("threshold")
        try:
            rules[guideline.id] = ExactRule(
                guideline.id,
                str(entry.get("kind") or ""),
                float(threshold) if threshold is not None else None,
            )
        except (TypeError, ValueError) as e:
            warnings.append(f"Exact rule for {guideline.title!r} ignored: {e}")

    if detect:
        for guideline in index:
            if guideline.id in rules:
                continue
            rule = detect_rule(guideline)
            if rule is not None:
                rules[guideline.id] = rule

    for w in warnings:
        log.warning("%s", w)
    log.info("Exact rules: %d guideline(s) covered %s",
             len(rules), dict(Counter(r.kind for r in rules.values())))
    return rules, warnings


@timed_node("exact_rules", "programmatic")
def run_exact_rules(
    records: Sequence[MessageRecord],
    index: GuidelineIndex,
    rules: dict[str, ExactRule],
    positions: Optional[Sequence[int]] = None,
) -> dict[str, ExactCount]:
    """Evaluate every attached rule over *records*.

    *positions* gives the corpus-global index of each record when only part
    of the corpus is evaluated; by default records are numbered from 0.
    """
    counts: dict[str, ExactCount] = {}
    for guideline_id, rule in rules.items():
        guideline = index.get(guideline_id)
        if guideline is None:
            continue
        result = evaluate(records, guideline, rule)
        if positions is not None:
            result = ExactCount(
                guideline_id=result.guideline_id,
                title=result.title,
                category=result.category,
                count=result.count,
                example_indices=tuple(positions[i] for i in result.example_indices),
            )
        counts[guideline_id] = result
        log.debug("Exact rule %s (%s, threshold %s): %d violation(s)",
                  guideline.title, rule.kind, rule.threshold, result.count)
    return counts
