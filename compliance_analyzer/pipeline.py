"""Pipeline orchestrator.

Runs one compliance analysis over a message corpus:

    plan batches -> per batch (sequential): build request -> analysis
    service -> recover reply -> aggregate -> merge exact counts -> score

Batches are sent one at a time with a fixed pause between calls so the
analysis service's rate limit is respected and request order is stable.
A batch whose call or reply fails is recorded and skipped; the run only
fails as a whole when the service was unavailable for every batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Awaitable, Callable, Optional, Sequence

from .config import PipelineConfig
from .errors import ExternalServiceUnavailable
from .models import (
    AnalysisOutcome,
    Batch,
    BatchFailure,
    Failed,
    MessageRecord,
    NodeMetrics,
    PartiallyRecovered,
    RunResult,
    RunState,
    RunStatus,
)
from .nodes import (
    batch_planner,
    corpus_stats,
    exact_rules,
    request_builder,
    response_recoverer,
    result_merger,
    score_calculator,
    violation_aggregator,
)
from .nodes.analysis_client import AnalysisService
from .nodes.guideline_index import GuidelineIndex
from .timing import collect_metrics

log = logging.getLogger(__name__)


async def run_pipeline(
    records: Sequence[MessageRecord],
    index: GuidelineIndex,
    service: AnalysisService,
    config: Optional[PipelineConfig] = None,
    rules: Optional[dict[str, exact_rules.ExactRule]] = None,
    warnings: Sequence[str] = (),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RunResult:
    """Analyse *records* against the guidelines in *index*.

    *rules* maps guideline ids to exact rules; when omitted, rules are
    detected from the guideline wording.  *warnings* are load-time
    warnings to carry into the result.
    """
    config = config or PipelineConfig()
    run_warnings: list[str] = list(warnings) + [str(c) for c in index.conflicts]
    states: list[str] = []

    def enter(state: RunState, detail: str = "") -> None:
        states.append(f"{state.value}:{detail}" if detail else state.value)
        log.debug("State -> %s %s", state.value, detail)

    with collect_metrics() as metrics:
        enter(RunState.PLANNED)
        stats = corpus_stats.compute_stats(records)

        if not records:
            log.info("Empty corpus: no analysis attempted")
            return RunResult(
                status=RunStatus.NO_DATA,
                warnings=run_warnings + ["No messages supplied"],
                stats=stats,
                report=_build_report(metrics, states),
            )

        if rules is None:
            rules, rule_warnings = exact_rules.resolve_rules(index)
            run_warnings.extend(rule_warnings)

        batch_size = config.batch_size or batch_planner.derive_batch_size(records, config.max_input_chars)
        batches = batch_planner.plan_batches(records, batch_size)
        guideline_block = request_builder.build_guideline_block(index)

        outcomes: list[tuple[Batch, AnalysisOutcome]] = []
        failures: list[BatchFailure] = []
        unavailable = 0

        for batch in batches:
            if batch.index > 0 and config.inter_call_delay_s > 0:
                await sleep(config.inter_call_delay_s)

            enter(RunState.REQUESTING, str(batch.index))
            request = request_builder.build_request(batch, guideline_block)
            try:
                raw = await service.analyze(request)
            except ExternalServiceUnavailable as e:
                log.error("Batch %d: analysis service unavailable: %s", batch.index, e)
                unavailable += 1
                outcome: AnalysisOutcome = Failed(reason=f"service unavailable: {e}")
            except Exception as e:
                log.exception("Batch %d: analysis call failed", batch.index)
                outcome = Failed(reason=f"analysis call failed: {type(e).__name__}: {e}")
            else:
                enter(RunState.RECOVERING, str(batch.index))
                outcome = response_recoverer.recover(
                    raw, index, [m.text for m in batch.messages],
                )

            if isinstance(outcome, Failed):
                failures.append(BatchFailure(
                    batch_index=batch.index,
                    reason=outcome.reason,
                    raw_excerpt=outcome.raw_text[:response_recoverer.RAW_EXCERPT_CHARS],
                ))
            outcomes.append((batch, outcome))
            log.info("Batch %d/%d (%d messages): %s",
                     batch.index + 1, len(batches), len(batch), outcome.kind)

        counts = _count_outcomes(outcomes)

        if unavailable == len(batches):
            log.error("Analysis service unavailable for all %d batch(es)", len(batches))
            return RunResult(
                status=RunStatus.FAILED,
                batches_total=len(batches),
                batches_failed=len(batches),
                failures=failures,
                warnings=run_warnings + ["Analysis service unavailable for every batch"],
                stats=stats,
                report=_build_report(metrics, states),
            )

        enter(RunState.AGGREGATING)
        aggregate = violation_aggregator.aggregate(outcomes, index)
        run_warnings.extend(str(c) for c in aggregate.conflicts)

        enter(RunState.MERGING)
        # Exact rules see the same messages the qualitative tallies cover, so
        # both sides of the merge share one denominator.
        positions = aggregate.guideline_positions
        exact = exact_rules.run_exact_rules(
            [records[p] for p in positions], index, rules, positions,
        )
        merged = result_merger.merge_results(
            aggregate.categories, exact, trust_exact_zero=config.trust_exact_zero,
        )
        run_warnings.extend(merged.warnings)

        score = score_calculator.aggregate_score(
            grammar_issues=aggregate.grammar.total_issues if aggregate.grammar else 0,
            grammar_messages=aggregate.grammar_messages,
            guideline_issues=merged.total_violations,
            guideline_messages=aggregate.guideline_messages,
        )
        enter(RunState.SCORED)

    status = RunStatus.PARTIAL if failures else RunStatus.SCORED
    if failures:
        run_warnings.append(
            f"Partial run: {counts['succeeded'] + counts['partial']}/{len(batches)} "
            f"batch(es) contributed, {counts['failed']} failed"
        )

    result = RunResult(
        status=status,
        score=score,
        grammar=aggregate.grammar,
        categories=list(merged.categories),
        batches_total=len(batches),
        batches_succeeded=counts["succeeded"],
        batches_partial=counts["partial"],
        batches_failed=counts["failed"],
        failures=failures,
        warnings=run_warnings,
        stats=stats,
        report=_build_report(metrics, states),
    )

    log.info(
        "Pipeline complete: status=%s grammar=%s guidelines=%s overall=%s | "
        "batches ok=%d partial=%d failed=%d | total=%dms",
        status.value, score.grammar_score, score.guidelines_score, score.overall_score,
        counts["succeeded"], counts["partial"], counts["failed"],
        result.report["total_duration_ms"],
    )
    return result


def _count_outcomes(outcomes: Sequence[tuple[Batch, AnalysisOutcome]]) -> dict[str, int]:
    counts = {"succeeded": 0, "partial": 0, "failed": 0}
    for _, outcome in outcomes:
        if isinstance(outcome, Failed):
            counts["failed"] += 1
        elif isinstance(outcome, PartiallyRecovered):
            counts["partial"] += 1
        else:
            counts["succeeded"] += 1
    return counts


def _build_report(metrics: list[NodeMetrics], states: list[str]) -> dict:
    """Build the structured report dict from node metrics."""
    total_ms = sum(m.duration_ms for m in metrics)
    prog_ms = sum(m.duration_ms for m in metrics if m.node_type == "programmatic")
    ai_ms = sum(m.duration_ms for m in metrics if m.node_type == "ai")

    return {
        "total_duration_ms": total_ms,
        "programmatic_duration_ms": prog_ms,
        "ai_duration_ms": ai_ms,
        "states": list(states),
        "nodes": [
            {"node": m.node_name, "type": m.node_type, "duration_ms": m.duration_ms, "ok": m.ok}
            for m in metrics
        ],
    }


def result_to_dict(result: RunResult) -> dict:
    """Serialise a run result for the result sink.

    Tally totals are written out explicitly; everything else mirrors the
    dataclass fields.
    """
    return {
        "status": result.status.value,
        "partial": result.is_partial,
        "score": asdict(result.score),
        "grammar": (
            dict(asdict(result.grammar), total_issues=result.grammar.total_issues)
            if result.grammar is not None else None
        ),
        "categories": [
            {
                "category": t.category.value,
                "total_violations": t.total_violations,
                "items": [asdict(i) for i in t.items],
            }
            for t in result.categories
        ],
        "batches": {
            "total": result.batches_total,
            "succeeded": result.batches_succeeded,
            "partial": result.batches_partial,
            "failed": result.batches_failed,
        },
        "failures": [asdict(f) for f in result.failures],
        "warnings": list(result.warnings),
        "stats": dict(result.stats),
        "report": dict(result.report),
    }
