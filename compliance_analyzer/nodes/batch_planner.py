"""Batch Planner.

Splits the ordered corpus into consecutive batches sized to the analysis
service's input budget.  Every message lands in exactly one batch and the
concatenation of all batches reproduces the corpus in order.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

from ..models import Batch, MessageRecord
from ..timing import timed_node

log = logging.getLogger(__name__)

# Never plan batches smaller than this, whatever the budget says.
MIN_BATCH_SIZE = 50
# Approximate prompt characters spent per message on index and metadata.
_PER_MESSAGE_OVERHEAD_CHARS = 80


def derive_batch_size(records: Sequence[MessageRecord], max_input_chars: int) -> int:
    """Estimate how many messages fit in *max_input_chars* of prompt.

    Uses the corpus's mean message length, so the result is a pure
    function of the corpus and the budget.
    """
    if not records:
        return MIN_BATCH_SIZE
    mean_chars = sum(len(r.text) for r in records) / len(records)
    per_message = math.ceil(mean_chars) + _PER_MESSAGE_OVERHEAD_CHARS
    return max(MIN_BATCH_SIZE, max_input_chars // per_message)


@timed_node("batch_planner", "programmatic")
def plan_batches(records: Sequence[MessageRecord], batch_size: int) -> list[Batch]:
    """Partition *records* into ``ceil(len(records) / batch_size)`` batches.

    *batch_size* below ``MIN_BATCH_SIZE`` is raised to the floor.  An empty
    corpus yields an empty list.
    """
    if batch_size < MIN_BATCH_SIZE:
        log.info("Batch size %d below floor, using %d", batch_size, MIN_BATCH_SIZE)
        batch_size = MIN_BATCH_SIZE

    batches = [
        Batch(index=i, offset=start, messages=tuple(records[start:start + batch_size]))
        for i, start in enumerate(range(0, len(records), batch_size))
    ]

    log.info("Batch planner: %d message(s) -> %d batch(es) of up to %d",
             len(records), len(batches), batch_size)
    return batches
