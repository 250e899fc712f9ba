"""
Staged search for the minimum diagnostic performance per policy threshold.

For each threshold T and sample size n:

Stage A (power)
    Sweep specificity with sensitivity held at 1 and true prevalence at the
    configured low value (0 by default). Minimum specificity = smallest value
    with P(upper bound < T) >= 0.90.

Stage B (Type I error)
    Sweep sensitivity with specificity fixed at the Stage A result and true
    prevalence exactly T. Minimum sensitivity = smallest value with
    P(upper bound < T) <= 0.05. Sensitivities with Se + Sp <= 1 are skipped.

Result: (T, n, min specificity, min sensitivity). When Stage A finds no
specificity in the grid the chain stops for that n and both are NaN.

Both stages are plain functions of their fixed inputs; nothing is shared
between thresholds except the explicit Stage A -> Stage B hand-off.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from diagnostic_survey.config import StudyConfig, SweepSettings, ThresholdScenario
from diagnostic_survey.monte_carlo import GridCell, build_grid, run_sweep
from diagnostic_survey.survey_sim import ScenarioParameters
from diagnostic_survey.thresholds import (
    AT_LEAST,
    AT_MOST,
    SummaryStatistic,
    find_threshold,
    rate_table,
    summaries_frame,
    summarize_sweep,
)


@dataclass
class StageResult:
    sample_size: int
    stats: List[SummaryStatistic]
    selected: Optional[float]

    def rate_at(self, value: Optional[float]) -> float:
        if value is None:
            return float("nan")
        for stat in self.stats:
            if stat.value == value:
                return stat.empirical_rate
        return float("nan")


@dataclass
class ThresholdStudy:
    scenario: ThresholdScenario
    settings: SweepSettings
    specificity_stage: Dict[int, StageResult] = field(default_factory=dict)
    sensitivity_stage: Dict[int, StageResult] = field(default_factory=dict)
    profile: List[SummaryStatistic] = field(default_factory=list)

    def minimums(self) -> pd.DataFrame:
        """One row per sample size: (threshold, sample_size, min_specificity, min_sensitivity)."""
        rows = []
        for n in self.scenario.sample_sizes:
            spec_stage = self.specificity_stage.get(n)
            sens_stage = self.sensitivity_stage.get(n)
            min_spec = spec_stage.selected if spec_stage else None
            min_sens = sens_stage.selected if sens_stage else None
            rows.append({
                "threshold": self.scenario.threshold,
                "sample_size": n,
                "min_specificity": np.nan if min_spec is None else min_spec,
                "min_sensitivity": np.nan if min_sens is None else min_sens,
                "power_at_min": spec_stage.rate_at(min_spec) if spec_stage else np.nan,
                "type1_at_min": sens_stage.rate_at(min_sens) if sens_stage else np.nan,
            })
        return pd.DataFrame(rows)

    def power_table(self) -> pd.DataFrame:
        return rate_table(_flatten(self.specificity_stage.values()))

    def type1_table(self) -> pd.DataFrame:
        return rate_table(_flatten(self.sensitivity_stage.values()))

    def profile_table(self) -> pd.DataFrame:
        return rate_table(self.profile)

    def to_dict(self) -> Dict[str, object]:
        return {
            "threshold": self.scenario.threshold,
            "minimums": self.minimums().to_dict(orient="records"),
            "power": summaries_frame(_flatten(self.specificity_stage.values())).to_dict(orient="records"),
            "type1": summaries_frame(_flatten(self.sensitivity_stage.values())).to_dict(orient="records"),
            "profile": summaries_frame(self.profile).to_dict(orient="records"),
        }


def _flatten(stages: Iterable[StageResult]) -> List[SummaryStatistic]:
    return [stat for stage in stages for stat in stage.stats]


def _group_by_sample_size(stats: Sequence[SummaryStatistic]) -> Dict[int, List[SummaryStatistic]]:
    grouped: Dict[int, List[SummaryStatistic]] = {}
    for stat in stats:
        grouped.setdefault(stat.cell.sample_size, []).append(stat)
    return grouped


def specificity_stage(
    scenario: ThresholdScenario,
    settings: SweepSettings,
    sample_sizes: Optional[Sequence[int]] = None,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Dict[int, StageResult]:
    """Stage A for every sample size in a single sweep."""
    sample_sizes = list(sample_sizes or scenario.sample_sizes)
    base = ScenarioParameters(
        true_prevalence=scenario.power_prevalence,
        sensitivity=scenario.power_sensitivity,
        specificity=max(scenario.specificity_values),
        sample_size=sample_sizes[0],
        cluster_size=settings.cluster_size,
    )
    cells = build_grid("specificity", scenario.specificity_values, sample_sizes, base)
    runs = run_sweep(
        cells,
        settings.replicates,
        scenario.threshold,
        z=settings.z,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    )
    grouped = _group_by_sample_size(summarize_sweep(runs))

    results: Dict[int, StageResult] = {}
    for n in sample_sizes:
        stats = grouped.get(n, [])
        selected = find_threshold(stats, settings.power_target, AT_LEAST)
        logger.info(
            "Threshold {}: n={} minimum specificity for power >= {:.0%}: {}",
            scenario.label, n, settings.power_target, selected,
        )
        results[n] = StageResult(sample_size=n, stats=stats, selected=selected)
    return results


def sensitivity_stage(
    scenario: ThresholdScenario,
    settings: SweepSettings,
    specificities: Mapping[int, float],
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Dict[int, StageResult]:
    """Stage B for every sample size with its own fixed specificity."""
    cells: List[GridCell] = []
    for n, specificity in specificities.items():
        usable = [s for s in scenario.sensitivity_values if s + specificity > 1.0]
        skipped = len(scenario.sensitivity_values) - len(usable)
        if skipped:
            logger.debug(
                "Threshold {}: n={} skipping {} sensitivity value(s) with Se + {} <= 1",
                scenario.label, n, skipped, specificity,
            )
        base = ScenarioParameters(
            true_prevalence=scenario.threshold,
            sensitivity=1.0,
            specificity=specificity,
            sample_size=int(n),
            cluster_size=settings.cluster_size,
        )
        cells.extend(build_grid("sensitivity", usable, [n], base))

    runs = run_sweep(
        cells,
        settings.replicates,
        scenario.threshold,
        z=settings.z,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    ) if cells else []
    grouped = _group_by_sample_size(summarize_sweep(runs))

    results: Dict[int, StageResult] = {}
    for n in specificities:
        stats = grouped.get(n, [])
        selected = find_threshold(stats, settings.type1_target, AT_MOST)
        logger.info(
            "Threshold {}: n={} specificity={} minimum sensitivity for Type I <= {:.0%}: {}",
            scenario.label, n, specificities[n], settings.type1_target, selected,
        )
        results[n] = StageResult(sample_size=n, stats=stats, selected=selected)
    return results


def minimum_specificity(
    scenario: ThresholdScenario,
    sample_size: int,
    settings: SweepSettings = SweepSettings(),
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Optional[float]:
    stage = specificity_stage(scenario, settings, [sample_size], n_jobs=n_jobs, chunk_size=chunk_size)
    return stage[sample_size].selected


def minimum_sensitivity(
    scenario: ThresholdScenario,
    sample_size: int,
    specificity: float,
    settings: SweepSettings = SweepSettings(),
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Optional[float]:
    stage = sensitivity_stage(
        scenario, settings, {sample_size: specificity}, n_jobs=n_jobs, chunk_size=chunk_size,
    )
    return stage[sample_size].selected


def prevalence_profile(
    scenario: ThresholdScenario,
    settings: SweepSettings,
    operating_points: Mapping[int, Tuple[float, float]],
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> List[SummaryStatistic]:
    """Power across the configured true prevalences at each (specificity, sensitivity) pair.

    ``operating_points`` maps sample size to (specificity, sensitivity).
    """
    if not scenario.profile_prevalences:
        return []
    cells: List[GridCell] = []
    for n, (specificity, sensitivity) in operating_points.items():
        base = ScenarioParameters(
            true_prevalence=0.0,
            sensitivity=sensitivity,
            specificity=specificity,
            sample_size=int(n),
            cluster_size=settings.cluster_size,
        )
        cells.extend(build_grid("true_prevalence", scenario.profile_prevalences, [n], base))
    if not cells:
        return []
    runs = run_sweep(
        cells,
        settings.replicates,
        scenario.threshold,
        z=settings.z,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    )
    return summarize_sweep(runs)


def run_threshold_study(
    scenario: ThresholdScenario,
    settings: SweepSettings = SweepSettings(),
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    with_profile: bool = True,
) -> ThresholdStudy:
    scenario.validate(settings)
    settings.validate()
    study = ThresholdStudy(scenario=scenario, settings=settings)

    study.specificity_stage = specificity_stage(scenario, settings, n_jobs=n_jobs, chunk_size=chunk_size)
    chosen_spec = {
        n: stage.selected for n, stage in study.specificity_stage.items() if stage.selected is not None
    }
    for n, stage in study.specificity_stage.items():
        if stage.selected is None:
            logger.warning("Threshold {}: n={} stopping, no specificity reached target power", scenario.label, n)
    if chosen_spec:
        study.sensitivity_stage = sensitivity_stage(
            scenario, settings, chosen_spec, n_jobs=n_jobs, chunk_size=chunk_size,
        )

    if with_profile:
        points = {
            n: (chosen_spec[n], stage.selected)
            for n, stage in study.sensitivity_stage.items()
            if stage.selected is not None
        }
        study.profile = prevalence_profile(scenario, settings, points, n_jobs=n_jobs, chunk_size=chunk_size)
    return study


def run_study(
    config: StudyConfig,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    with_profile: bool = True,
) -> List[ThresholdStudy]:
    """Run every configured threshold; the configuration is validated up front."""
    config.validate()
    return [
        run_threshold_study(
            scenario,
            config.settings,
            n_jobs=n_jobs,
            chunk_size=chunk_size,
            with_profile=with_profile,
        )
        for scenario in config.scenarios
    ]
