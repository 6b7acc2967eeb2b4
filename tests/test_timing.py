from __future__ import annotations

import asyncio

import pytest

from compliance_analyzer.timing import collect_metrics, timed_node


@timed_node("double", "programmatic")
def double(x: int) -> int:
    return x * 2


@timed_node("remote", "ai")
async def remote(fail: bool) -> str:
    if fail:
        raise RuntimeError("boom")
    return "ok"


def test_calls_recorded_inside_collect_metrics() -> None:
    with collect_metrics() as metrics:
        assert double(2) == 4
        assert asyncio.run(remote(False)) == "ok"

    assert [(m.node_name, m.node_type, m.ok) for m in metrics] == [
        ("double", "programmatic", True),
        ("remote", "ai", True),
    ]
    assert all(m.duration_ms >= 0 for m in metrics)


def test_failed_call_is_recorded_and_reraised() -> None:
    with collect_metrics() as metrics:
        with pytest.raises(RuntimeError):
            asyncio.run(remote(True))
    assert [(m.node_name, m.ok) for m in metrics] == [("remote", False)]


def test_calls_outside_collect_metrics_are_not_recorded() -> None:
    with collect_metrics() as metrics:
        pass
    assert double(3) == 6
    assert metrics == []
    assert double.__name__ == "double"
