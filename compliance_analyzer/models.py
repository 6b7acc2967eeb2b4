"""Data models for the compliance analysis pipeline."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union


class Category(str, enum.Enum):
    GENERAL = "general"
    PSYCHOLOGY = "psychology"
    CAPTIONS = "captions"
    SALES = "sales"


# Reporting order for category tallies.
CATEGORY_ORDER = (Category.GENERAL, Category.PSYCHOLOGY, Category.CAPTIONS, Category.SALES)


@dataclass(frozen=True)
class Guideline:
    """A weighted behavioral rule.  Read-only for the duration of a run."""

    id: str
    title: str
    description: str
    category: Category
    weight: int = 1
    examples: tuple[str, ...] = ()
    counter_examples: tuple[str, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class MessageRecord:
    """One outgoing chat message plus the metadata the exact rules read."""

    text: str
    timestamp_utc: datetime
    reply_time_minutes: float
    counterparty_id: str
    price_amount: Optional[float] = None
    is_price_item: bool = False
    was_purchased: Optional[bool] = None

    def __post_init__(self) -> None:
        if self.reply_time_minutes < 0:
            raise ValueError(f"reply_time_minutes must be >= 0, got {self.reply_time_minutes}")
        if self.price_amount is not None and not self.is_price_item:
            raise ValueError("price_amount is only allowed on price items")


@dataclass(frozen=True)
class Batch:
    """Ordered, non-overlapping slice of the corpus.

    ``offset`` is the corpus-global index of the first message, used to
    remap batch-local example indices during aggregation.
    """

    index: int
    offset: int
    messages: tuple[MessageRecord, ...]

    def __len__(self) -> int:
        return len(self.messages)


@dataclass(frozen=True)
class ViolationItem:
    guideline_id: Optional[str]
    title: str
    count: int = 0
    example_indices: tuple[int, ...] = ()
    verified: bool = True
    source: str = "qualitative"  # "qualitative" | "exact"

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError(f"count must be >= 0, got {self.count}")
        if self.count == 0 and self.example_indices:
            raise ValueError("an item with count 0 cannot carry examples")

    @property
    def key(self) -> str:
        """Identity used when merging: guideline id, else the lowercased title."""
        return self.guideline_id or self.title.strip().lower()


@dataclass(frozen=True)
class CategoryTally:
    category: Category
    items: tuple[ViolationItem, ...] = ()

    @property
    def total_violations(self) -> int:
        return sum(item.count for item in self.items)


@dataclass(frozen=True)
class IssueCount:
    """A grammar issue counter with the messages it was observed in."""

    count: int = 0
    example_indices: tuple[int, ...] = ()


GRAMMAR_FIELDS = ("spelling_errors", "grammar_issues", "punctuation_problems", "informal_language")
# informal_language is reported but does not count against the grammar score.
SCORED_GRAMMAR_FIELDS = ("spelling_errors", "grammar_issues", "punctuation_problems")


@dataclass(frozen=True)
class GrammarBreakdown:
    spelling_errors: IssueCount = IssueCount()
    grammar_issues: IssueCount = IssueCount()
    punctuation_problems: IssueCount = IssueCount()
    informal_language: IssueCount = IssueCount()
    score_explanation: str = ""

    @property
    def total_issues(self) -> int:
        return sum(getattr(self, name).count for name in SCORED_GRAMMAR_FIELDS)


# ---------------------------------------------------------------------------
# Per-batch analysis outcome (tagged union)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Success:
    grammar: GrammarBreakdown
    categories: tuple[CategoryTally, ...]
    kind: str = field(default="success", init=False)


@dataclass(frozen=True)
class PartiallyRecovered:
    """Salvaged outcome: at least one of ``grammar``/``categories`` is set."""

    grammar: Optional[GrammarBreakdown]
    categories: Optional[tuple[CategoryTally, ...]]
    recovered_fields: tuple[str, ...] = ()
    kind: str = field(default="partial", init=False)


@dataclass(frozen=True)
class Failed:
    reason: str
    raw_text: str = ""
    kind: str = field(default="failed", init=False)


AnalysisOutcome = Union[Success, PartiallyRecovered, Failed]


# ---------------------------------------------------------------------------
# Run output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AggregateScore:
    grammar_score: Optional[int] = None
    guidelines_score: Optional[int] = None
    overall_score: Optional[int] = None


@dataclass(frozen=True)
class ExactCount:
    """Output of one exact rule evaluated over the corpus."""

    guideline_id: str
    title: str
    category: Category
    count: int
    example_indices: tuple[int, ...] = ()


@dataclass(frozen=True)
class BatchFailure:
    batch_index: int
    reason: str
    raw_excerpt: str = ""


@dataclass
class NodeMetrics:
    """Timing and stats for one pipeline node."""

    node_name: str
    node_type: str  # "programmatic" | "ai"
    duration_ms: int = 0
    ok: bool = True


class RunStatus(str, enum.Enum):
    SCORED = "scored"
    PARTIAL = "partial"
    NO_DATA = "no_data"
    FAILED = "failed"


class RunState(str, enum.Enum):
    PLANNED = "planned"
    REQUESTING = "requesting"
    RECOVERING = "recovering"
    AGGREGATING = "aggregating"
    MERGING = "merging"
    SCORED = "scored"


@dataclass
class RunResult:
    """Complete output of one pipeline run."""

    status: RunStatus
    score: AggregateScore = AggregateScore()
    grammar: Optional[GrammarBreakdown] = None
    categories: list[CategoryTally] = field(default_factory=list)
    batches_total: int = 0
    batches_succeeded: int = 0
    batches_partial: int = 0
    batches_failed: int = 0
    failures: list[BatchFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stats: dict = field(default_factory=dict)
    report: dict = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return self.batches_failed > 0
