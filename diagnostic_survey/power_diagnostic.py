"""
Minimum diagnostic sensitivity/specificity for threshold prevalence surveys.

A survey of n individuals (clusters of 50) tests everyone with an imperfect
binary test and declares prevalence below a policy threshold T when the
cluster-robust upper 95% bound of the observed positive rate is below T.
Monte Carlo replicates give the empirical probability of that declaration:

- power when the true prevalence is below T (0% by default);
- Type I error when the true prevalence equals T.

Modes
-----
cell    one scenario: rate of upper bound < T over the replicates
sweep   one parameter over a grid and sample sizes, as a table
study   staged search per threshold: minimum specificity for 90% power,
        then minimum sensitivity for <= 5% Type I error at that specificity

Usage examples
--------------
1) Power of a perfectly sensitive test with 99.5% specificity, n=3000, 1%:
   diagnostic-power --mode cell --threshold 0.01 --prevalence 0 \
     --sensitivity 1.0 --specificity 0.995 --sample-size 3000

2) Type I error across sensitivities at 10% prevalence:
   diagnostic-power --mode sweep --threshold 0.10 --prevalence 0.10 \
     --specificity 0.98 --parameter sensitivity --values 0.6,0.7,0.8,0.9 \
     --sample-sizes 1000,2000

3) Full study for the reference thresholds using all cores but one:
   diagnostic-power --mode study --n-jobs -2 --output-json results.json
"""

from __future__ import annotations

import argparse
import json
import math
import sys
from dataclasses import replace
from typing import Any, Dict, Optional, Sequence

import numpy as np
from loguru import logger

from diagnostic_survey.config import REFERENCE_SETTINGS, SweepSettings, load_config
from diagnostic_survey.errors import InvalidScenario
from diagnostic_survey.monte_carlo import DEFAULT_CHUNK_SIZE, SWEEP_PARAMETERS, build_grid, run_cell, run_sweep
from diagnostic_survey.survey_sim import DEFAULT_CLUSTER_SIZE, DEFAULT_Z, ScenarioParameters
from diagnostic_survey.study import run_study
from diagnostic_survey.thresholds import rate_table, summaries_frame, summarize, summarize_sweep


def _parse_csv_numbers(s: Optional[str], cast=float) -> Optional[list]:
    if s is None:
        return None
    s = s.strip()
    if not s:
        return None
    try:
        return [cast(x.strip()) for x in s.split(",") if x.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"could not parse list {s!r}: {exc}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Monte Carlo minimum sensitivity/specificity for threshold prevalence surveys",
    )
    parser.add_argument("--mode", choices=["cell", "sweep", "study"], default="study")
    parser.add_argument("--threshold", type=float, default=None,
                        help="Decision threshold (cell/sweep); restricts study to this threshold")
    parser.add_argument("--prevalence", type=float, default=0.0, help="True prevalence (cell/sweep)")
    parser.add_argument("--sensitivity", type=float, default=1.0, help="Test sensitivity (cell/sweep)")
    parser.add_argument("--specificity", type=float, default=0.995, help="Test specificity (cell/sweep)")
    parser.add_argument("--sample-size", type=int, default=3000, help="Survey sample size (cell)")
    parser.add_argument("--sample-sizes", type=str, default="1000,2000,3000",
                        help="Comma-separated sample sizes (sweep)")
    parser.add_argument("--parameter", choices=list(SWEEP_PARAMETERS), default="specificity",
                        help="Swept parameter (sweep); label of the single cell (cell)")
    parser.add_argument("--values", type=str, default=None, help="Comma-separated swept values (sweep)")
    parser.add_argument("--cluster-size", type=int, default=None,
                        help=f"Individuals per cluster (default {DEFAULT_CLUSTER_SIZE})")
    parser.add_argument("--replicates", type=int, default=None, help="Replicates per grid cell (default 1000)")
    parser.add_argument("--z", type=float, default=None, help=f"Upper-bound multiplier (default {DEFAULT_Z})")
    parser.add_argument("--config", type=str, default=None, help="JSON file overriding the reference study")
    parser.add_argument("--no-profile", action="store_true", help="Skip the prevalence profile (study)")
    parser.add_argument("--n-jobs", type=int, default=-2, help="Worker processes (-1 all cores, -2 all but one)")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE,
                        help="Replicates per task when parallelized")
    parser.add_argument("--output-json", type=str, default=None, help="Write result tables as JSON records")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="-v info, -vv debug")
    return parser


def _configure_logging(verbosity: int) -> None:
    level = "WARNING" if verbosity <= 0 else ("INFO" if verbosity == 1 else "DEBUG")
    logger.remove()
    logger.add(sys.stderr, level=level)


def _json_safe(value: Any) -> Any:
    """NaN becomes null; numpy scalars become Python numbers."""
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _write_json(path: Optional[str], payload: object) -> None:
    if not path:
        return
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(_json_safe(payload), fh, indent=2, allow_nan=False)
    print(f"  Results written to {path}")


def _settings(args: argparse.Namespace, base: SweepSettings = REFERENCE_SETTINGS) -> SweepSettings:
    overrides: Dict[str, Any] = {}
    if args.cluster_size is not None:
        overrides["cluster_size"] = args.cluster_size
    if args.replicates is not None:
        overrides["replicates"] = args.replicates
    if args.z is not None:
        overrides["z"] = args.z
    settings = replace(base, **overrides)
    settings.validate()
    return settings


def _run_cell_mode(args: argparse.Namespace) -> None:
    settings = _settings(args)
    threshold = args.threshold if args.threshold is not None else 0.01
    scenario = ScenarioParameters(
        true_prevalence=args.prevalence,
        sensitivity=args.sensitivity,
        specificity=args.specificity,
        sample_size=args.sample_size,
        cluster_size=settings.cluster_size,
    )
    run = run_cell(
        scenario,
        settings.replicates,
        threshold,
        z=settings.z,
        n_jobs=args.n_jobs,
        chunk_size=args.chunk_size,
        parameter=args.parameter,
    )
    stat = summarize(run)
    kind = "Type I error" if args.prevalence >= threshold else "Power"
    print("Single scenario (simulation)")
    print(f"  True prevalence: {args.prevalence:.2%}, threshold: {threshold:.2%}")
    print(f"  Sensitivity={args.sensitivity}, specificity={args.specificity}")
    print(f"  Apparent prevalence: {scenario.apparent_prevalence():.4f}")
    print(f"  n={args.sample_size} ({scenario.num_clusters} clusters of {settings.cluster_size}), "
          f"replicates={settings.replicates}, z={settings.z}")
    print(f"  {kind} (upper bound < threshold): {stat.empirical_rate:.3f}")
    print(f"  95% CI: [{stat.ci_low:.3f}, {stat.ci_high:.3f}]")
    print(f"  Mean estimated prevalence: {stat.mean_estimate:.4f}")
    if stat.degenerate:
        print(f"  Degenerate replicates excluded: {stat.degenerate}")
    _write_json(args.output_json, [stat.as_record()])


def _run_sweep_mode(args: argparse.Namespace) -> None:
    settings = _settings(args)
    threshold = args.threshold if args.threshold is not None else 0.01
    values = _parse_csv_numbers(args.values, float)
    if not values:
        raise InvalidScenario("--values is required in sweep mode")
    sample_sizes = _parse_csv_numbers(args.sample_sizes, int) or [args.sample_size]
    base = ScenarioParameters(
        true_prevalence=args.prevalence,
        sensitivity=args.sensitivity,
        specificity=args.specificity,
        sample_size=sample_sizes[0],
        cluster_size=settings.cluster_size,
    )
    cells = build_grid(args.parameter, values, sample_sizes, base)
    runs = run_sweep(
        cells,
        settings.replicates,
        threshold,
        z=settings.z,
        n_jobs=args.n_jobs,
        chunk_size=args.chunk_size,
    )
    stats = summarize_sweep(runs)
    print(f"Rate of upper bound < {threshold:.2%} by {args.parameter} and sample size "
          f"(replicates={settings.replicates})")
    print(rate_table(stats).to_string(float_format=lambda x: f"{x:.3f}"))
    _write_json(args.output_json, summaries_frame(stats).to_dict(orient="records"))


def _run_study_mode(args: argparse.Namespace) -> None:
    config = load_config(args.config)
    config = config.select([args.threshold] if args.threshold is not None else None)
    settings = _settings(args, base=config.settings)
    config = replace(config, settings=settings)
    studies = run_study(
        config,
        n_jobs=args.n_jobs,
        chunk_size=args.chunk_size,
        with_profile=not args.no_profile,
    )
    fmt = lambda x: f"{x:.3f}"  # noqa: E731
    for study in studies:
        label = study.scenario.label
        print(f"Threshold {label}")
        print(f"  Power (upper bound < {label}) at prevalence {study.scenario.power_prevalence:.2%}, "
              f"sensitivity {study.scenario.power_sensitivity}:")
        print(study.power_table().to_string(float_format=fmt))
        print(f"  Type I error (upper bound < {label}) at prevalence {label}:")
        print(study.type1_table().to_string(float_format=fmt))
        if study.profile:
            print("  Power across true prevalence at the selected minimums:")
            print(study.profile_table().to_string(float_format=fmt))
        print()
    summary = [row for study in studies for row in study.minimums().to_dict(orient="records")]
    print("Minimum test performance")
    for row in summary:
        print(f"  threshold={row['threshold']:.0%} n={row['sample_size']}: "
              f"specificity >= {row['min_specificity']}, sensitivity >= {row['min_sensitivity']}")
    _write_json(args.output_json, [study.to_dict() for study in studies])


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.mode == "cell":
            _run_cell_mode(args)
        elif args.mode == "sweep":
            _run_sweep_mode(args)
        else:
            _run_study_mode(args)
    except (InvalidScenario, argparse.ArgumentTypeError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
