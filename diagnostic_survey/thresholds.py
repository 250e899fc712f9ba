"""
Summaries of Monte Carlo cells and the monotone threshold search.

A cell's empirical rate is the fraction of valid replicates (degenerate ones
excluded) whose cluster-robust upper bound fell below the decision threshold:

- true prevalence below the threshold: the rate is power;
- true prevalence at the threshold: the rate is the Type I error.

``find_threshold`` walks the swept values in ascending order and returns the
first one meeting the target. Monotonicity in the swept parameter is assumed;
a violation is only logged.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
import scipy.stats as sps
from loguru import logger

from diagnostic_survey.monte_carlo import CellRun, GridCell

AT_LEAST = "at_least"
AT_MOST = "at_most"


@dataclass(frozen=True)
class SummaryStatistic:
    cell: GridCell
    empirical_rate: float
    hits: int
    valid: int
    degenerate: int
    replicates: int
    mean_estimate: float
    ci_low: float
    ci_high: float

    @property
    def value(self) -> float:
        return self.cell.value

    def as_record(self) -> Dict[str, Any]:
        record = self.cell.scenario.as_dict()
        record.update({
            "parameter": self.cell.parameter,
            "value": self.cell.value,
            "rate": self.empirical_rate,
            "ci_low": self.ci_low,
            "ci_high": self.ci_high,
            "hits": self.hits,
            "valid": self.valid,
            "degenerate": self.degenerate,
            "replicates": self.replicates,
            "mean_estimate": self.mean_estimate,
        })
        return record


def _z_two_sided(alpha: float) -> float:
    """Two-sided normal z for given alpha (SciPy)."""
    return float(sps.norm.ppf(1.0 - alpha / 2.0))


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for binomial proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z = _z_two_sided(alpha)
    phat = k / n
    denom = 1.0 + (z * z) / n
    center = (phat + (z * z) / (2.0 * n)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n + (z * z) / (4.0 * n * n)))
    return max(0.0, center - half), min(1.0, center + half)


def summarize(run: CellRun, alpha_ci: float = 0.05) -> SummaryStatistic:
    tally = run.tally
    low, high = binomial_wilson_ci(tally.hits, tally.valid, alpha=alpha_ci)
    return SummaryStatistic(
        cell=run.cell,
        empirical_rate=tally.rate,
        hits=tally.hits,
        valid=tally.valid,
        degenerate=tally.degenerate,
        replicates=tally.requested,
        mean_estimate=tally.mean_estimate,
        ci_low=low,
        ci_high=high,
    )


def summarize_sweep(runs: Iterable[CellRun], alpha_ci: float = 0.05) -> List[SummaryStatistic]:
    return [summarize(run, alpha_ci=alpha_ci) for run in runs]


def _meets(rate: float, target: float, direction: str) -> bool:
    if rate != rate:  # NaN
        return False
    if direction == AT_LEAST:
        return rate >= target
    return rate <= target


def is_monotone(rates: Sequence[float], direction: str) -> bool:
    """Power should not fall (at_least), Type I error should not rise (at_most)."""
    clean = [r for r in rates if r == r]
    pairs = zip(clean, clean[1:])
    if direction == AT_LEAST:
        return all(b >= a for a, b in pairs)
    return all(b <= a for a, b in pairs)


def find_threshold(
    stats: Iterable[SummaryStatistic],
    target: float,
    direction: str = AT_LEAST,
) -> Optional[float]:
    """Smallest swept value whose empirical rate meets the target, or None."""
    if direction not in (AT_LEAST, AT_MOST):
        raise ValueError(f"direction must be {AT_LEAST!r} or {AT_MOST!r}, got {direction!r}")
    ordered = sorted(stats, key=lambda s: s.value)
    if not ordered:
        return None
    if not is_monotone([s.empirical_rate for s in ordered], direction):
        cell = ordered[0].cell
        logger.warning(
            "Rates across {} are not monotone (n={}); taking first crossing",
            cell.parameter, cell.sample_size,
        )
    for stat in ordered:
        if _meets(stat.empirical_rate, target, direction):
            return stat.value
    cell = ordered[0].cell
    logger.warning(
        "No {} value in [{}, {}] reaches rate {} {} (n={})",
        cell.parameter, ordered[0].value, ordered[-1].value,
        ">=" if direction == AT_LEAST else "<=", target, cell.sample_size,
    )
    return None


def summaries_frame(stats: Iterable[SummaryStatistic]) -> pd.DataFrame:
    return pd.DataFrame([s.as_record() for s in stats])


def rate_table(stats: Iterable[SummaryStatistic], columns: str = "sample_size") -> pd.DataFrame:
    """Swept value as rows, ``columns`` (sample_size or true_prevalence) as columns."""
    frame = summaries_frame(stats)
    if frame.empty:
        return frame
    table = frame.pivot(index="value", columns=columns, values="rate")
    table.index.name = str(frame["parameter"].iloc[0])
    return table.sort_index()
