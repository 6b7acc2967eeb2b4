"""Per-node timing for the compliance pipeline.

Each pipeline stage is decorated with ``@timed_node(name, node_type)``.
While a ``collect_metrics()`` block is active, every call appends a
``NodeMetrics`` entry to the run's list, including calls that raised
(``ok=False``), so a failed analysis call still shows up in the report::

    with collect_metrics() as metrics:
        batches = batch_planner.plan_batches(records, size)
        raw = await client.analyze(request)
    report = _build_report(metrics, states)

Outside such a block calls are only logged at debug level.
"""

from __future__ import annotations

import contextlib
import contextvars
import functools
import inspect
import logging
import time
from typing import Iterator, Optional

from .models import NodeMetrics

log = logging.getLogger(__name__)

_run_metrics: contextvars.ContextVar[Optional[list[NodeMetrics]]] = contextvars.ContextVar(
    "compliance_run_metrics", default=None,
)


@contextlib.contextmanager
def collect_metrics() -> Iterator[list[NodeMetrics]]:
    """Scope node metrics to one pipeline run."""
    metrics: list[NodeMetrics] = []
    token = _run_metrics.set(metrics)
    try:
        yield metrics
    finally:
        _run_metrics.reset(token)


@contextlib.contextmanager
def _measure(name: str, node_type: str) -> Iterator[None]:
    sink = _run_metrics.get()
    started = time.perf_counter()
    ok = False
    try:
        yield
        ok = True
    finally:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        log.debug("%s (%s): %d ms%s", name, node_type, elapsed_ms, "" if ok else " [raised]")
        if sink is not None:
            sink.append(NodeMetrics(name, node_type, elapsed_ms, ok))


def timed_node(name: str, node_type: str):
    """Time a sync or async pipeline node."""

    def decorator(fn):
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                with _measure(name, node_type):
                    return await fn(*args, **kwargs)

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            with _measure(name, node_type):
                return fn(*args, **kwargs)

        return wrapper

    return decorator
