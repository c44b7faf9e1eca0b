"""Canary Analysis Engine — compares a canary population against a baseline.

Procedure
---------
1. ``ticks = ceil(duration / interval)``.  Each tick sleeps one interval,
   then queries baseline and canary over the same window
   ``[t - interval, t]``.  A failed or empty query for either population is
   a missing sample for that metric and tick.
2. Per metric, the relative deviation of the canary mean from the baseline
   mean is measured in the "worse" direction.  Inside ``tolerance`` the
   metric scores 100, at or beyond ``critical_deviation`` it scores 0,
   linear in between.
3. The aggregate is the weighted average of the metric scores.  Verdict:
   ``>= pass_threshold`` PASS, ``>= marginal_threshold`` MARGINAL, else FAIL.
4. A required metric missing more than ``max_missing_fraction`` of its
   ticks forces FAIL with reason ``insufficient-data``.  Optional metrics
   with insufficient data are left out of the aggregate.

Progress is kept in a ``CanaryProgress`` that the caller persists as a
stage checkpoint, so an analysis resumes where it stopped after a restart.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from datetime import timedelta
from statistics import fmean

from pydantic import BaseModel

from deployforge.adapters import Clock, MetricsProvider, TimeWindow
from deployforge.core.errors import CanaryTimeout, StageCancelled
from deployforge.models.canary import (
    INSUFFICIENT_DATA,
    CanaryConfig,
    CanaryMetricSpec,
    CanaryResult,
    CanaryVerdict,
    MetricDirection,
    MetricScore,
)

logger = logging.getLogger(__name__)


class CanaryProgress(BaseModel):
    """Resumable state of one analysis (the stage checkpoint)."""

    ticks_done: int = 0
    baseline: dict[str, list[float]] = {}
    canary: dict[str, list[float]] = {}
    missing: dict[str, int] = {}


def tick_count(config: CanaryConfig) -> int:
    return max(1, math.ceil(config.duration_seconds / config.interval_seconds))


def relative_deviation(
    baseline_mean: float, canary_mean: float, direction: MetricDirection
) -> float:
    """How much worse the canary is than the baseline, as a fraction.

    Negative values mean the canary is better.  With a zero baseline any
    regression is unbounded (``math.inf``) and anything else is 0.0.
    """
    if direction == MetricDirection.LOWER_IS_BETTER:
        worse_by = canary_mean - baseline_mean
    else:
        worse_by = baseline_mean - canary_mean
    if baseline_mean == 0:
        return math.inf if worse_by > 0 else 0.0
    return worse_by / abs(baseline_mean)


def metric_score(deviation: float, spec: CanaryMetricSpec) -> float:
    """Map a deviation onto 0..100 using the metric's tolerance band."""
    if deviation <= spec.tolerance:
        return 100.0
    if deviation >= spec.critical_deviation:
        return 0.0
    span = spec.critical_deviation - spec.tolerance
    return 100.0 * (spec.critical_deviation - deviation) / span


def evaluate(
    config: CanaryConfig,
    progress: CanaryProgress,
    baseline_group: str,
    canary_group: str,
) -> CanaryResult:
    """Score collected samples and produce a verdict.

    Pure function of its inputs; ``analyze`` calls it after the last tick.
    """
    ticks = max(progress.ticks_done, 1)
    scores: list[MetricScore] = []
    insufficient_required: list[str] = []

    for spec in config.metrics:
        base = progress.baseline.get(spec.name, [])
        cand = progress.canary.get(spec.name, [])
        missing = progress.missing.get(spec.name, 0)
        insufficient = not base or not cand or (missing / ticks) > config.max_missing_fraction
        if insufficient:
            if spec.required:
                insufficient_required.append(spec.name)
            scores.append(
                MetricScore(
                    name=spec.name,
                    weight=spec.weight,
                    required=spec.required,
                    samples=min(len(base), len(cand)),
                    missing=missing,
                    insufficient_data=True,
                )
            )
            continue

        baseline_mean = fmean(base)
        canary_mean = fmean(cand)
        deviation = relative_deviation(baseline_mean, canary_mean, spec.direction)
        scores.append(
            MetricScore(
                name=spec.name,
                weight=spec.weight,
                required=spec.required,
                score=metric_score(deviation, spec),
                baseline_mean=baseline_mean,
                canary_mean=canary_mean,
                deviation=deviation if math.isfinite(deviation) else None,
                samples=min(len(base), len(cand)),
                missing=missing,
            )
        )

    scored = [s for s in scores if s.score is not None]
    total_weight = sum(s.weight for s in scored)
    aggregate = (
        sum(s.score * s.weight for s in scored) / total_weight  # type: ignore[operator]
        if total_weight > 0
        else 0.0
    )

    if insufficient_required or not scored:
        verdict = CanaryVerdict.FAIL
        reason = INSUFFICIENT_DATA
    elif aggregate >= config.pass_threshold:
        verdict = CanaryVerdict.PASS
        reason = ""
    elif aggregate >= config.marginal_threshold:
        verdict = CanaryVerdict.MARGINAL
        reason = f"score {aggregate:.1f} below pass threshold {config.pass_threshold:g}"
    else:
        verdict = CanaryVerdict.FAIL
        reason = f"score {aggregate:.1f} below marginal threshold {config.marginal_threshold:g}"

    return CanaryResult(
        baseline_group=baseline_group,
        canary_group=canary_group,
        scores=scores,
        aggregate_score=round(aggregate, 4),
        verdict=verdict,
        reason=reason,
        ticks=progress.ticks_done,
    )


class CanaryAnalysisEngine:
    """Runs the sampling loop against a ``MetricsProvider``.

    Parameters
    ----------
    metrics:
        Source of metric samples.
    clock:
        Time source; every tick waits on it so a fake clock makes the whole
        analysis instantaneous.
    """

    def __init__(self, metrics: MetricsProvider, clock: Clock) -> None:
        self._metrics = metrics
        self._clock = clock

    def analyze(
        self,
        config: CanaryConfig,
        baseline_group: str,
        canary_group: str,
        *,
        progress: CanaryProgress | None = None,
        on_progress: Callable[[CanaryProgress], None] | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> CanaryResult:
        """Sample until every tick is done, then evaluate.

        Parameters
        ----------
        progress:
            Checkpoint to resume from.
        on_progress:
            Called after every tick with the updated progress.
        cancel_event:
            When set, the analysis stops with ``StageCancelled``.
        deadline:
            Seconds of sampling allowed before ``CanaryTimeout``.
        """
        progress = progress.model_copy(deep=True) if progress else CanaryProgress()
        total = tick_count(config)
        logger.info(
            "Canary analysis %s vs %s: tick %d/%d",
            canary_group, baseline_group, progress.ticks_done, total,
        )

        while progress.ticks_done < total:
            elapsed = progress.ticks_done * config.interval_seconds
            if deadline is not None and elapsed + config.interval_seconds > deadline:
                raise CanaryTimeout(
                    f"canary analysis of {canary_group} exceeded {deadline:g}s"
                )
            if self._clock.sleep(config.interval_seconds, cancel_event):
                raise StageCancelled(f"canary analysis of {canary_group} cancelled")
            end = self._clock.now()
            window = TimeWindow(
                start=end - timedelta(seconds=config.interval_seconds), end=end
            )
            for spec in config.metrics:
                self._sample(spec, baseline_group, canary_group, window, progress)
            progress.ticks_done += 1
            if on_progress is not None:
                on_progress(progress)

        result = evaluate(config, progress, baseline_group, canary_group)
        logger.info(
            "Canary %s verdict %s (score %.1f%s)",
            canary_group,
            result.verdict.value,
            result.aggregate_score,
            f", {result.reason}" if result.reason else "",
        )
        return result

    def _sample(
        self,
        spec: CanaryMetricSpec,
        baseline_group: str,
        canary_group: str,
        window: TimeWindow,
        progress: CanaryProgress,
    ) -> None:
        baseline_value = self._query_mean(spec, baseline_group, window)
        canary_value = self._query_mean(spec, canary_group, window)
        if baseline_value is None or canary_value is None:
            progress.missing[spec.name] = progress.missing.get(spec.name, 0) + 1
            return
        progress.baseline.setdefault(spec.name, []).append(baseline_value)
        progress.canary.setdefault(spec.name, []).append(canary_value)

    def _query_mean(
        self, spec: CanaryMetricSpec, population: str, window: TimeWindow
    ) -> float | None:
        try:
            values = self._metrics.query(spec.query, population, window)
        except Exception as exc:
            logger.warning(
                "Metric %s query failed for %s: %s", spec.name, population, exc
            )
            return None
        if not values:
            return None
        return fmean(values)
