"""Response Recoverer.

Turns the analysis service's raw reply text into an ``AnalysisOutcome``.
The reply is free-form: it may wrap the JSON in prose, carry trailing
commas, be cut off mid-object, or contain no JSON at all.  Recovery runs
an ordered list of strategies and stops at the first that works:

1. ``parse_first_object``  -- first balanced ``{...}`` in the text that
                              parses and carries a reply key
2. ``parse_normalised``    -- same scan with trailing commas stripped
3. ``salvage_fields``      -- each named sub-object (grammar breakdown,
                              category blocks) located and parsed on its own

Strategies 1-2 yield ``Success``, strategy 3 ``PartiallyRecovered``, and
nothing usable yields ``Failed`` with the raw text kept for diagnosis.
``recover`` never raises.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable, Iterator, Optional, Sequence

from ..errors import MalformedResponse
from ..models import (
    CATEGORY_ORDER,
    AnalysisOutcome,
    Category,
    CategoryTally,
    Failed,
    GrammarBreakdown,
    IssueCount,
    PartiallyRecovered,
    Success,
    ViolationItem,
)
from ..timing import timed_node
from .guideline_index import GuidelineIndex

log = logging.getLogger(__name__)

# Response keys, compared after lowercasing and dropping non-letters.
_GRAMMAR_KEYS = frozenset({"grammarbreakdown", "grammar"})
_CATEGORY_KEYS = {
    "general": Category.GENERAL,
    "generalchatting": Category.GENERAL,
    "psychology": Category.PSYCHOLOGY,
    "captions": Category.CAPTIONS,
    "sales": Category.SALES,
}
_WRAPPER_KEYS = frozenset({"guidelinesbreakdown", "guidelines", "categories"})
_GRAMMAR_FIELDS = {
    "spellingerrors": "spelling_errors",
    "spelling": "spelling_errors",
    "grammarissues": "grammar_issues",
    "grammarerrors": "grammar_issues",
    "punctuationproblems": "punctuation_problems",
    "punctuation": "punctuation_problems",
    "informallanguage": "informal_language",
    "informal": "informal_language",
}
_EXPLANATION_KEYS = frozenset({"scoreexplanation", "explanation"})

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_KEY_BEFORE_BLOCK = re.compile(r'"([A-Za-z][A-Za-z _]*)"\s*:\s*(?=[\[{])')
_LEADING_INT = re.compile(r"-?\d+")

RAW_EXCERPT_CHARS = 500


def _norm_key(key: str) -> str:
    return re.sub(r"[^a-z]", "", key.lower())


# ---------------------------------------------------------------------------
# Brace matching
# ---------------------------------------------------------------------------

def balanced_span(text: str, start: int) -> Optional[int]:
    """Return the end index (exclusive) of the bracket group opening at *start*.

    Counts ``{``/``[`` against ``}``/``]`` and skips string literals, so
    braces inside quoted text do not break the match.  Returns None when
    the group never closes.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _prev_char(text: str, i: int) -> tuple[int, str]:
    while i >= 0 and text[i].isspace():
        i -= 1
    return i, text[i] if i >= 0 else ""


def _opens_value(text: str, start: int) -> bool:
    """True if the brace at *start* is a JSON value: after ``"key":``, ``[``
    or a ``,`` that follows another value.  Prose such as ``analysis:`` or
    ``Sure, {`` does not count.
    """
    i, ch = _prev_char(text, start - 1)
    if ch == "[":
        return True
    if ch == ":":
        return _prev_char(text, i - 1)[1] == '"'
    if ch == ",":
        prev = _prev_char(text, i - 1)[1]
        return prev != "" and (prev in '"}]' or prev.isdigit())
    return False


def iter_objects(text: str) -> Iterator[str]:
    """Yield every balanced ``{...}`` substring of *text* that could be a reply.

    Braces in the surrounding prose (``{placeholder}``, an unclosed
    ``{title, count``) do not stop the scan.  A brace that opens a value
    inside another object is skipped, so the inner objects of a cut-off
    reply are never mistaken for a whole one.
    """
    start = text.find("{")
    while start >= 0:
        if not _opens_value(text, start):
            end = balanced_span(text, start)
            if end is not None:
                yield text[start:end]
        start = text.find("{", start + 1)


def find_first_object(text: str) -> Optional[str]:
    """Return the first candidate object of *text*, or None."""
    return next(iter_objects(text), None)


def strip_trailing_commas(chunk: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", chunk)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def _loads_object(chunk: str) -> dict:
    try:
        obj = json.loads(chunk)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedResponse("extracted JSON is not an object")
    return obj


def _require_known_keys(obj: dict) -> dict:
    keys = {_norm_key(k) for k in obj}
    if keys & (_GRAMMAR_KEYS | set(_CATEGORY_KEYS) | _WRAPPER_KEYS):
        return obj
    raise MalformedResponse(f"object has none of the expected keys: {sorted(obj)[:10]}")


def _first_reply_object(text: str, normalise: bool) -> dict:
    error = "no balanced JSON object found"
    for chunk in iter_objects(text):
        try:
            return _require_known_keys(
                _loads_object(strip_trailing_commas(chunk) if normalise else chunk)
            )
        except MalformedResponse as e:
            error = str(e)
    raise MalformedResponse(error)


def parse_first_object(text: str) -> dict:
    return _first_reply_object(text, normalise=False)


def parse_normalised(text: str) -> dict:
    return _first_reply_object(text, normalise=True)


def _loads_lenient(chunk: str) -> Any:
    try:
        return json.loads(chunk)
    except json.JSONDecodeError:
        return json.loads(strip_trailing_commas(chunk))


def _salvage_items(text: str, start: int, end: int) -> list[dict]:
    """Collect complete ``{... "title" ...}`` item objects in ``text[start:end]``."""
    items: list[dict] = []
    pos = start
    while True:
        brace = text.find("{", pos, end)
        if brace < 0:
            break
        close = balanced_span(text, brace)
        if close is None or close > end:
            pos = brace + 1
            continue
        try:
            obj = _loads_lenient(text[brace:close])
        except json.JSONDecodeError:
            pos = brace + 1
            continue
        if isinstance(obj, dict) and "title" in obj:
            items.append(obj)
            pos = close
        else:
            pos = brace + 1
    return items


def salvage_fields(text: str) -> dict:
    """Parse each recognised sub-object of a broken reply in isolation.

    Returns a dict shaped like a full reply holding only the parts that
    parsed.  A category block that is itself cut off falls back to the
    complete item objects found inside it; such keys are reported with an
    ``(items)`` suffix under ``"_recovered"``.
    """
    matches = [
        (m, _norm_key(m.group(1)))
        for m in _KEY_BEFORE_BLOCK.finditer(text)
    ]
    wanted = [(m, k) for m, k in matches if k in _GRAMMAR_KEYS or k in _CATEGORY_KEYS]

    salvaged: dict = {}
    recovered: list[str] = []
    for pos, (m, key) in enumerate(wanted):
        label = "grammarBreakdown" if key in _GRAMMAR_KEYS else _CATEGORY_KEYS[key].value
        if label in salvaged:
            continue
        block_start = m.end()
        block_end = balanced_span(text, block_start)
        if block_end is not None:
            try:
                salvaged[label] = _loads_lenient(text[block_start:block_end])
                recovered.append(label)
                continue
            except json.JSONDecodeError:
                pass
        if label == "grammarBreakdown":
            continue
        region_end = wanted[pos + 1][0].start() if pos + 1 < len(wanted) else len(text)
        items = _salvage_items(text, block_start, region_end)
        if items:
            salvaged[label] = {"items": items}
            recovered.append(f"{label}(items)")

    if not salvaged:
        raise MalformedResponse("no named sub-object could be parsed")
    salvaged["_recovered"] = recovered
    return salvaged


FULL_PARSE_STRATEGIES: tuple[Callable[[str], dict], ...] = (parse_first_object, parse_normalised)


# ---------------------------------------------------------------------------
# Normalisation of parsed data
# ---------------------------------------------------------------------------

def _as_count(value: Any) -> Optional[int]:
    """Coerce a reported count to an int >= 0; None means unusable."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        # NaN / Infinity are valid to json.loads.
        return None
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str):
        m = _LEADING_INT.search(value)
        if m is None:
            # Prose such as "none found".
            return 0
        return max(0, int(m.group()))
    return None


def _resolve_examples(
    raw: Any,
    batch_texts: Optional[Sequence[str]],
) -> tuple[int, ...]:
    """Map reported examples to batch-local message indices.

    Examples may be indices, numeric strings, ``{"index": n}`` objects or
    quoted message text; text is matched to the first message containing
    it.  Out-of-range and unmatched examples are dropped.
    """
    if not isinstance(raw, list):
        raw = [raw] if raw not in (None, "") else []
    limit = len(batch_texts) if batch_texts is not None else None
    indices: list[int] = []
    for example in raw:
        idx: Optional[int] = None
        if isinstance(example, dict):
            example = example.get("index", example.get("text"))
        if isinstance(example, bool):
            continue
        if isinstance(example, int):
            idx = example
        elif isinstance(example, float) and math.isfinite(example) and example.is_integer():
            idx = int(example)
        elif isinstance(example, str):
            stripped = example.strip()
            if stripped.isdigit():
                idx = int(stripped)
            elif batch_texts is not None and stripped:
                needle = stripped.strip("\"'“”").lower()
                idx = next(
                    (i for i, t in enumerate(batch_texts) if needle and needle in t.lower()),
                    None,
                )
        if idx is None or idx < 0 or (limit is not None and idx >= limit):
            continue
        if idx not in indices:
            indices.append(idx)
    return tuple(indices)


def _issue_count(raw: Any, batch_texts: Optional[Sequence[str]]) -> IssueCount:
    if isinstance(raw, dict):
        count = _as_count(raw.get("count")) or 0
        examples = _resolve_examples(raw.get("examples", []), batch_texts)
    else:
        count = _as_count(raw) or 0
        examples = ()
    return IssueCount(count=count, example_indices=examples if count else ())


def build_grammar(raw: Any, batch_texts: Optional[Sequence[str]] = None) -> GrammarBreakdown:
    """Normalise a reported grammar breakdown; missing fields count 0."""
    if not isinstance(raw, dict):
        return GrammarBreakdown()
    fields: dict[str, Any] = {}
    for key, value in raw.items():
        norm = _norm_key(str(key))
        if norm in _GRAMMAR_FIELDS and _GRAMMAR_FIELDS[norm] not in fields:
            fields[_GRAMMAR_FIELDS[norm]] = _issue_count(value, batch_texts)
        elif norm in _EXPLANATION_KEYS and isinstance(value, str):
            fields["score_explanation"] = value.strip()
    return GrammarBreakdown(**fields)


def build_item(
    raw: Any,
    index: Optional[GuidelineIndex] = None,
    batch_texts: Optional[Sequence[str]] = None,
) -> Optional[ViolationItem]:
    """Normalise one reported violation item; None if it has no title.

    A positive count without examples is kept but marked unverified; an
    unusable count becomes 0 and is likewise marked unverified.
    """
    if not isinstance(raw, dict):
        return None
    title = str(raw.get("title") or raw.get("guideline") or "").strip()
    if not title:
        return None

    count = _as_count(raw.get("count"))
    verified = count is not None
    count = count or 0
    examples = _resolve_examples(raw.get("examples", raw.get("exampleIndices", [])), batch_texts)
    if count == 0:
        examples = ()
    elif not examples:
        verified = False

    guideline = index.find_by_title(title) if index is not None else None
    return ViolationItem(
        guideline_id=guideline.id if guideline else None,
        title=guideline.title if guideline else title,
        count=count,
        example_indices=examples,
        verified=verified,
    )


def build_tally(
    category: Category,
    raw: Any,
    index: Optional[GuidelineIndex] = None,
    batch_texts: Optional[Sequence[str]] = None,
) -> CategoryTally:
    if isinstance(raw, dict):
        raw_items = raw.get("items", [])
    elif isinstance(raw, list):
        raw_items = raw
    else:
        raw_items = []
    if not isinstance(raw_items, list):
        raw_items = []
    items = [build_item(r, index, batch_texts) for r in raw_items]
    return CategoryTally(category=category, items=tuple(i for i in items if i is not None))


def _category_blocks(obj: dict) -> dict[Category, Any]:
    """Category blocks of a reply, looking one level into wrapper keys."""
    blocks: dict[Category, Any] = {}
    sources = [obj] + [v for k, v in obj.items() if _norm_key(str(k)) in _WRAPPER_KEYS and isinstance(v, dict)]
    for source in sources:
        for key, value in source.items():
            category = _CATEGORY_KEYS.get(_norm_key(str(key)))
            if category is not None and category not in blocks:
                blocks[category] = value
    return blocks


def _grammar_block(obj: dict) -> Any:
    for key, value in obj.items():
        if _norm_key(str(key)) in _GRAMMAR_KEYS:
            return value
    return None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _excerpt(raw_text: str) -> str:
    return raw_text[:RAW_EXCERPT_CHARS]


@timed_node("response_recoverer", "programmatic")
def recover(
    raw_text: str,
    index: Optional[GuidelineIndex] = None,
    batch_texts: Optional[Sequence[str]] = None,
) -> AnalysisOutcome:
    """Build the outcome for one batch reply.  Never raises."""
    try:
        return _recover(raw_text or "", index, batch_texts)
    except Exception as e:
        log.exception("Response recovery crashed")
        return Failed(reason=f"recovery error: {type(e).__name__}: {e}", raw_text=raw_text or "")


def _recover(
    raw_text: str,
    index: Optional[GuidelineIndex],
    batch_texts: Optional[Sequence[str]],
) -> AnalysisOutcome:
    if not raw_text.strip():
        return Failed(reason="empty response", raw_text=raw_text)

    errors: list[str] = []
    for strategy in FULL_PARSE_STRATEGIES:
        try:
            obj = strategy(raw_text)
        except MalformedResponse as e:
            errors.append(f"{strategy.__name__}: {e}")
            continue
        if strategy is not parse_first_object:
            log.info("Recovered reply with %s", strategy.__name__)
        blocks = _category_blocks(obj)
        return Success(
            grammar=build_grammar(_grammar_block(obj), batch_texts),
            categories=tuple(
                build_tally(c, blocks.get(c), index, batch_texts) for c in CATEGORY_ORDER
            ),
        )

    try:
        salvaged = salvage_fields(raw_text)
    except MalformedResponse as e:
        errors.append(f"salvage_fields: {e}")
        log.warning("Unrecoverable reply (%s): %.200s", "; ".join(errors), raw_text)
        return Failed(reason="; ".join(errors), raw_text=raw_text)

    recovered = tuple(salvaged.pop("_recovered"))
    grammar = (
        build_grammar(salvaged["grammarBreakdown"], batch_texts)
        if "grammarBreakdown" in salvaged else None
    )
    blocks = _category_blocks(salvaged)
    categories = (
        tuple(build_tally(c, blocks[c], index, batch_texts) for c in CATEGORY_ORDER if c in blocks)
        if blocks else None
    )
    log.warning("Partially recovered reply: %s", ", ".join(recovered))
    return PartiallyRecovered(grammar=grammar, categories=categories, recovered_fields=recovered)
