"""Corpus Stats.

Descriptive metrics read straight off the message metadata and reported
beside the scores: reply times, message length, price items and how many
of them were bought.  Nothing here feeds the scores.
"""

from __future__ import annotations

import logging
from typing import Sequence

from ..models import MessageRecord
from ..timing import timed_node

log = logging.getLogger(__name__)


def _mean(values: Sequence[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


@timed_node("corpus_stats", "programmatic")
def compute_stats(records: Sequence[MessageRecord]) -> dict:
    price_items = [r for r in records if r.is_price_item]
    priced = [r.price_amount for r in price_items if r.price_amount is not None]
    known_outcome = [r for r in price_items if r.was_purchased is not None]
    purchased = [r for r in known_outcome if r.was_purchased]

    stats = {
        "total_messages": len(records),
        "counterparties": len({r.counterparty_id for r in records}),
        "avg_reply_time_minutes": _mean([r.reply_time_minutes for r in records]),
        "max_reply_time_minutes": max((r.reply_time_minutes for r in records), default=0.0),
        "avg_message_length": _mean([len(r.text) for r in records]),
        "price_items": len(price_items),
        "purchased_items": len(purchased),
        # Percentage of price items with a known outcome that were bought.
        "purchase_rate": round(len(purchased) / len(known_outcome) * 100, 2) if known_outcome else None,
        "avg_price": _mean(priced) if priced else None,
        "purchased_revenue": round(sum(r.price_amount or 0.0 for r in purchased), 2),
    }
    if records:
        first = min(r.timestamp_utc for r in records)
        last = max(r.timestamp_utc for r in records)
        stats["first_message_utc"] = first.isoformat()
        stats["last_message_utc"] = last.isoformat()
    return stats
