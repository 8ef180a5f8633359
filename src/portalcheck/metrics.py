from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

from portalcheck.probe import Verdict

if TYPE_CHECKING:
    from portalcheck.config import ThresholdsConfig
    from portalcheck.runner import CheckOutcome


@dataclass
class MetricStatistics:
    """Duration statistics across probes or iterations, in milliseconds."""

    avg: float | None
    min: float | None
    max: float | None
    stddev: float | None
    p95: float | None = None
    p99: float | None = None

    def to_dict(self) -> dict[str, float | None]:
        return asdict(self)


@dataclass
class AggregatedOutcome:
    """One check's outcomes across repeated iterations."""

    verdict: Verdict
    message: str
    pass_rate: float
    verdict_counts: dict[str, int]
    duration: MetricStatistics
    assertions: list[dict[str, Any]]
    iterations: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "message": self.message,
            "pass_rate": self.pass_rate,
            "verdict_counts": self.verdict_counts,
            "duration": self.duration.to_dict(),
            "assertions": self.assertions,
            "iterations": self.iterations,
        }


@dataclass
class ThresholdReport:
    stats: MetricStatistics
    error_rate: float | None
    violations: list[str]

    @property
    def ok(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": self.stats.to_dict(),
            "error_rate": self.error_rate,
            "violations": self.violations,
            "ok": self.ok,
        }


def compute_stats(values: Sequence[float | int | None]) -> MetricStatistics:
    """Compute avg, min, max, stddev, p95 and p99 for a list of numeric values."""
    nums = [v for v in values if v is not None]
    if not nums:
        return MetricStatistics(avg=None, min=None, max=None, stddev=None)

    arr = np.array(nums, dtype=float)
    return MetricStatistics(
        avg=round(float(np.mean(arr)), 4),
        min=round(float(np.min(arr)), 4),
        max=round(float(np.max(arr)), 4),
        stddev=round(float(np.std(arr)), 4),
        p95=round(float(np.percentile(arr, 95)), 4),
        p99=round(float(np.percentile(arr, 99)), 4),
    )


def evaluate_thresholds(
    durations_ms: Sequence[float | None],
    error_count: int,
    total: int,
    thresholds: ThresholdsConfig,
) -> ThresholdReport:
    """Compare observed latency percentiles and error rate against thresholds."""
    stats = compute_stats(durations_ms)
    error_rate = round(error_count / total, 4) if total else None
    violations: list[str] = []

    if thresholds.p95_ms is not None and stats.p95 is not None:
        if stats.p95 >= thresholds.p95_ms:
            violations.append(f"p95 {stats.p95:.0f}ms >= {thresholds.p95_ms:g}ms")
    if thresholds.p99_ms is not None and stats.p99 is not None:
        if stats.p99 >= thresholds.p99_ms:
            violations.append(f"p99 {stats.p99:.0f}ms >= {thresholds.p99_ms:g}ms")
    if thresholds.max_error_rate is not None and error_rate is not None:
        if error_rate >= thresholds.max_error_rate:
            violations.append(
                f"error rate {error_rate:.2%} >= {thresholds.max_error_rate:.2%}"
            )

    return ThresholdReport(stats=stats, error_rate=error_rate, violations=violations)


_SEVERITY = [Verdict.ERROR, Verdict.FAIL, Verdict.SKIP, Verdict.PASS]


def aggregate_outcomes(outcomes: list[CheckOutcome]) -> AggregatedOutcome:
    """Aggregate repeated outcomes of one check; the worst verdict wins."""
    count = len(outcomes)
    counts = {v.value: sum(1 for o in outcomes if o.verdict == v) for v in Verdict}
    worst = next(v for v in _SEVERITY if counts[v.value])
    decisive = next(o for o in outcomes if o.verdict == worst)
    passed = counts[Verdict.PASS.value] + counts[Verdict.SKIP.value]

    # Per-assertion pass rate, keyed by the decisive iteration's assertions
    assertions = []
    for index, assertion in enumerate(decisive.assertions):
        pass_count = sum(
            1
            for o in outcomes
            if index < len(o.assertions) and not o.assertions[index].blocking
        )
        assertions.append(
            {
                "name": assertion.name,
                "passed": not assertion.blocking,
                "downgraded": assertion.downgraded,
                "message": assertion.message
                if count == 1
                else f"{assertion.message} (held {pass_count}/{count} iterations)",
            }
        )

    return AggregatedOutcome(
        verdict=worst,
        message=decisive.message,
        pass_rate=round(passed / count * 100, 1),
        verdict_counts=counts,
        duration=compute_stats([o.elapsed_ms for o in outcomes]),
        assertions=assertions,
        iterations=[o.to_dict() for o in outcomes],
    )
