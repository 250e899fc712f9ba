"""
Monte Carlo driver: replicate surveys over a grid of scenarios.

Every grid cell runs replicates 1..N and the replicate index is the RNG seed,
so a cell's result depends only on its own scenario and N: it does not change
when other cells are added, removed or reordered, and reruns are exact.

Work is split into chunks of consecutive replicate indices. Chunks of all
cells go to a single process pool (thread pool if processes are not
permitted) and their tallies are folded per cell by counting as they
complete, in any order.

n_jobs follows the usual convention: None/0/1 run serially, -1 uses every
core, -2 leaves one core free.
"""

from __future__ import annotations

import os
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from diagnostic_survey.errors import DegenerateDesign, InvalidScenario
from diagnostic_survey.survey_sim import (
    DEFAULT_Z,
    ClusterAssignment,
    ScenarioParameters,
    simulate,
)

DEFAULT_CHUNK_SIZE = 100
SWEEP_PARAMETERS = ("specificity", "sensitivity", "true_prevalence")


@dataclass(frozen=True)
class GridCell:
    """One (sample size, swept value, true prevalence) combination."""

    parameter: str
    value: float
    scenario: ScenarioParameters

    @property
    def sample_size(self) -> int:
        return self.scenario.sample_size

    @property
    def true_prevalence(self) -> float:
        return self.scenario.true_prevalence

    def key(self) -> Tuple[int, str, float, float]:
        return (self.sample_size, self.parameter, self.value, self.true_prevalence)


@dataclass
class CellTally:
    """Running counts for one cell; merging is order independent."""

    requested: int = 0
    valid: int = 0
    hits: int = 0
    degenerate: int = 0
    estimate_sum: float = 0.0

    def record(self, upper_bound: float, point_estimate: float, threshold: float) -> None:
        self.requested += 1
        self.valid += 1
        self.estimate_sum += point_estimate
        if upper_bound < threshold:
            self.hits += 1

    def record_degenerate(self) -> None:
        self.requested += 1
        self.degenerate += 1

    def __add__(self, other: "CellTally") -> "CellTally":
        return CellTally(
            requested=self.requested + other.requested,
            valid=self.valid + other.valid,
            hits=self.hits + other.hits,
            degenerate=self.degenerate + other.degenerate,
            estimate_sum=self.estimate_sum + other.estimate_sum,
        )

    @property
    def rate(self) -> float:
        """Fraction of valid replicates whose upper bound fell below the threshold."""
        return self.hits / self.valid if self.valid > 0 else float("nan")

    @property
    def mean_estimate(self) -> float:
        return self.estimate_sum / self.valid if self.valid > 0 else float("nan")


@dataclass
class CellRun:
    cell: GridCell
    threshold: float
    tally: CellTally = field(default_factory=CellTally)
    details: Optional[pd.DataFrame] = None


@dataclass(frozen=True)
class _ChunkInput:
    cell_index: int
    scenario: ScenarioParameters
    assignment: ClusterAssignment
    start: int
    count: int
    threshold: float
    z: float
    return_details: bool


@dataclass
class _ChunkResult:
    cell_index: int
    start: int
    tally: CellTally
    records: Optional[List[Dict[str, Any]]]


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate user-provided n_jobs into an actual worker count."""
    if n_jobs is None or n_jobs == 0:
        return 1
    if n_jobs < 0:
        cpu = os.cpu_count() or 1
        # -1 -> cpu, -2 -> cpu-1
        return max(1, cpu + 1 + n_jobs)
    return max(1, int(n_jobs))


def _effective_chunk_size(replicates: int, chunk_size: Optional[int]) -> int:
    if chunk_size is None or chunk_size <= 0:
        return min(DEFAULT_CHUNK_SIZE, max(1, replicates))
    return min(int(chunk_size), max(1, replicates))


def _chunk_indices(replicates: int, chunk_size: int) -> List[Tuple[int, int]]:
    """(first replicate index, count) pairs covering replicates 1..N."""
    chunks: List[Tuple[int, int]] = []
    start = 1
    while start <= replicates:
        count = min(chunk_size, replicates - start + 1)
        chunks.append((start, count))
        start += count
    return chunks


def _run_chunk(payload: _ChunkInput) -> _ChunkResult:
    tally = CellTally()
    records: Optional[List[Dict[str, Any]]] = [] if payload.return_details else None

    for seed in range(payload.start, payload.start + payload.count):
        try:
            result = simulate(payload.scenario, payload.assignment, seed, z=payload.z)
        except DegenerateDesign as exc:
            logger.debug("Excluding degenerate replicate: {}", exc)
            tally.record_degenerate()
            if records is not None:
                record = payload.scenario.as_dict()
                record.update({
                    "replicate": seed,
                    "point_estimate": np.nan,
                    "std_error": np.nan,
                    "upper_bound": np.nan,
                    "below_threshold": False,
                    "degenerate": True,
                })
                records.append(record)
            continue
        tally.record(result.upper_bound, result.point_estimate, payload.threshold)
        if records is not None:
            record = result.as_record()
            record["below_threshold"] = bool(result.upper_bound < payload.threshold)
            record["degenerate"] = False
            records.append(record)

    return _ChunkResult(cell_index=payload.cell_index, start=payload.start, tally=tally, records=records)


def build_grid(
    parameter: str,
    values: Iterable[float],
    sample_sizes: Iterable[int],
    base: ScenarioParameters,
) -> List[GridCell]:
    """Cells ordered by sample size (outer) then swept value (inner)."""
    if parameter not in SWEEP_PARAMETERS:
        raise InvalidScenario(f"parameter must be one of {SWEEP_PARAMETERS}, got {parameter!r}")
    values = [float(v) for v in values]
    cells: List[GridCell] = []
    for n in sample_sizes:
        for v in values:
            scenario = base.with_values(sample_size=int(n), **{parameter: v})
            cells.append(GridCell(parameter=parameter, value=v, scenario=scenario))
    return cells


def _validate_cells(cells: Sequence[GridCell], replicates: int, threshold: float) -> None:
    if replicates <= 0:
        raise InvalidScenario("replicates must be a positive integer")
    if not (0.0 < threshold < 1.0):
        raise InvalidScenario(f"decision threshold must be in (0, 1), got {threshold}")
    for cell in cells:
        cell.scenario.validate()


def _fold(runs: List[CellRun], results: Iterable[_ChunkResult],
          record_buckets: Optional[List[List[Tuple[int, List[Dict[str, Any]]]]]]) -> None:
    for result in results:
        run = runs[result.cell_index]
        run.tally = run.tally + result.tally
        if record_buckets is not None and result.records is not None:
            record_buckets[result.cell_index].append((result.start, result.records))


def _run_pool(executor_cls: type, max_workers: int, payloads: List[_ChunkInput]) -> List[_ChunkResult]:
    completed: List[_ChunkResult] = []
    with executor_cls(max_workers=max_workers) as executor:
        futures = [executor.submit(_run_chunk, p) for p in payloads]
        for future in as_completed(futures):
            completed.append(future.result())
    return completed


def run_sweep(
    cells: Sequence[GridCell],
    replicates: int,
    threshold: float,
    *,
    z: float = DEFAULT_Z,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    return_details: bool = False,
) -> List[CellRun]:
    """Run ``replicates`` surveys for every cell and tally upper bounds below ``threshold``.

    Returns one CellRun per input cell, in input order. All cells are
    validated before any simulation starts.
    """
    cells = list(cells)
    _validate_cells(cells, replicates, threshold)

    eff_chunk = _effective_chunk_size(replicates, chunk_size)
    chunk_info = _chunk_indices(replicates, eff_chunk)
    payloads: List[_ChunkInput] = []
    for idx, cell in enumerate(cells):
        assignment = ClusterAssignment.for_scenario(cell.scenario)
        for start, count in chunk_info:
            payloads.append(_ChunkInput(
                cell_index=idx,
                scenario=cell.scenario,
                assignment=assignment,
                start=start,
                count=count,
                threshold=threshold,
                z=z,
                return_details=return_details,
            ))

    runs = [CellRun(cell=cell, threshold=threshold) for cell in cells]
    record_buckets: Optional[List[List[Tuple[int, List[Dict[str, Any]]]]]] = (
        [[] for _ in cells] if return_details else None
    )

    worker_count = _resolve_n_jobs(n_jobs)
    logger.debug(
        "Sweep: {} cell(s) x {} replicates in {} chunk(s), {} worker(s)",
        len(cells), replicates, len(payloads), worker_count,
    )

    if worker_count <= 1 or len(payloads) <= 1:
        _fold(runs, (_run_chunk(p) for p in payloads), record_buckets)
    else:
        max_workers = min(worker_count, len(payloads))
        try:
            completed = _run_pool(ProcessPoolExecutor, max_workers, payloads)
        except (PermissionError, NotImplementedError, OSError) as exc:
            logger.warning("Process pool unavailable ({}); falling back to threads", exc)
            completed = _run_pool(ThreadPoolExecutor, max_workers, payloads)
        _fold(runs, completed, record_buckets)

    if record_buckets is not None:
        for run, bucket in zip(runs, record_buckets):
            rows = [row for _, chunk in sorted(bucket, key=lambda item: item[0]) for row in chunk]
            run.details = pd.DataFrame(rows)

    for run in runs:
        if run.tally.degenerate:
            logger.info(
                "{}={} n={}: {} of {} replicates degenerate and excluded",
                run.cell.parameter, run.cell.value, run.cell.sample_size,
                run.tally.degenerate, run.tally.requested,
            )
    return runs


def run_cell(
    scenario: ScenarioParameters,
    replicates: int,
    threshold: float,
    *,
    z: float = DEFAULT_Z,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    return_details: bool = False,
    parameter: str = "specificity",
) -> CellRun:
    """Single-scenario convenience wrapper around run_sweep.

    ``parameter`` names the scenario field the cell is labelled with.
    """
    if parameter not in SWEEP_PARAMETERS:
        raise InvalidScenario(f"parameter must be one of {SWEEP_PARAMETERS}, got {parameter!r}")
    cell = GridCell(parameter=parameter, value=float(getattr(scenario, parameter)), scenario=scenario)
    return run_sweep(
        [cell],
        replicates,
        threshold,
        z=z,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
        return_details=return_details,
    )[0]
