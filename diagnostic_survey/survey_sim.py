"""
One simulated cluster survey with an imperfect diagnostic test.

Design
------
- ``sample_size`` individuals are split into contiguous clusters of
  ``cluster_size`` (50 in the reference design); the last cluster takes the
  remainder. The cluster structure is fixed per scenario, it is not
  re-randomized between replicates.
- Each individual tests positive with the apparent prevalence
  p_app = (1 - Sp) + (Se + Sp - 1) * p. No intraclass correlation is
  simulated.
- Analysis: intercept-only OLS with cluster-robust (CR1, Stata-style
  small-sample correction) standard errors clustered on the cluster label.
  The robust variance keeps the bound conservative whatever the true
  within-cluster correlation is.
- One-sided upper bound: mean + z * SE with z = 1.96.

Seeding
-------
``draw_outcomes`` seeds ``numpy.random.default_rng`` with the replicate index
and thresholds uniforms against p_app. Two scenarios with the same sample
size and seed therefore share the underlying uniforms: outcomes are coupled
across the swept parameter and positives only ever get added as p_app grows.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Tuple

import numpy as np
import statsmodels.api as sm

from diagnostic_survey.errors import DegenerateDesign, InvalidScenario
from diagnostic_survey.misclassification import apparent_prevalence, check_test_accuracy

DEFAULT_CLUSTER_SIZE = 50
DEFAULT_Z = 1.96


def _check_probability(value: float, name: str) -> None:
    if value is None or not (value == value):  # NaN check
        raise InvalidScenario(f"{name} must be a real number in [0,1]")
    if not (0.0 <= value <= 1.0):
        raise InvalidScenario(f"{name} must be in [0, 1], got {value}")


@dataclass(frozen=True)
class ScenarioParameters:
    true_prevalence: float
    sensitivity: float
    specificity: float
    sample_size: int
    cluster_size: int = DEFAULT_CLUSTER_SIZE

    @property
    def num_clusters(self) -> int:
        return int(math.ceil(self.sample_size / self.cluster_size))

    def apparent_prevalence(self) -> float:
        return apparent_prevalence(self.true_prevalence, self.sensitivity, self.specificity)

    def with_values(self, **changes: Any) -> "ScenarioParameters":
        return replace(self, **changes)

    def validate(self) -> None:
        _check_probability(self.true_prevalence, "true_prevalence")
        check_test_accuracy(self.sensitivity, self.specificity)
        if int(self.sample_size) != self.sample_size or self.sample_size <= 0:
            raise InvalidScenario(f"sample_size must be a positive integer, got {self.sample_size}")
        if int(self.cluster_size) != self.cluster_size or self.cluster_size <= 0:
            raise InvalidScenario(f"cluster_size must be a positive integer, got {self.cluster_size}")
        # Cluster-robust variance needs at least two clusters (G / (G - 1)).
        if self.num_clusters < 2:
            raise InvalidScenario(
                f"sample_size {self.sample_size} yields {self.num_clusters} cluster(s) "
                f"of size {self.cluster_size}; at least 2 are required"
            )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "true_prevalence": self.true_prevalence,
            "sensitivity": self.sensitivity,
            "specificity": self.specificity,
            "sample_size": self.sample_size,
            "cluster_size": self.cluster_size,
            "num_clusters": self.num_clusters,
        }


@dataclass(frozen=True, eq=False)
class ClusterAssignment:
    """Cluster label for each individual index in [0, sample_size)."""

    labels: np.ndarray
    cluster_size: int = DEFAULT_CLUSTER_SIZE

    def __post_init__(self) -> None:
        labels = np.array(self.labels, dtype=np.int64)
        labels.setflags(write=False)
        object.__setattr__(self, "labels", labels)

    @classmethod
    def contiguous(cls, sample_size: int, cluster_size: int = DEFAULT_CLUSTER_SIZE) -> "ClusterAssignment":
        if sample_size <= 0 or cluster_size <= 0:
            raise InvalidScenario("sample_size and cluster_size must be positive")
        labels = np.arange(sample_size, dtype=np.int64) // int(cluster_size)
        return cls(labels=labels, cluster_size=int(cluster_size))

    @classmethod
    def for_scenario(cls, scenario: ScenarioParameters) -> "ClusterAssignment":
        return cls.contiguous(scenario.sample_size, scenario.cluster_size)

    @property
    def sample_size(self) -> int:
        return int(self.labels.shape[0])

    @property
    def num_clusters(self) -> int:
        return int(self.labels[-1]) + 1 if self.labels.size else 0

    def cluster_sizes(self) -> np.ndarray:
        return np.bincount(self.labels)


@dataclass(frozen=True)
class ReplicateResult:
    scenario: ScenarioParameters
    replicate: int
    point_estimate: float
    std_error: float
    upper_bound: float

    def as_record(self) -> Dict[str, Any]:
        record = self.scenario.as_dict()
        record.update({
            "replicate": self.replicate,
            "point_estimate": self.point_estimate,
            "std_error": self.std_error,
            "upper_bound": self.upper_bound,
        })
        return record


def draw_outcomes(scenario: ScenarioParameters, seed: int) -> np.ndarray:
    """Simulated test results (0/1) for one survey; identical for identical seeds."""
    rng = np.random.default_rng(seed)
    p_app = scenario.apparent_prevalence()
    return (rng.random(scenario.sample_size) < p_app).astype(np.int8)


def cluster_robust_upper_bound(
    outcomes: np.ndarray,
    assignment: ClusterAssignment,
    z: float = DEFAULT_Z,
    seed: int = -1,
) -> Tuple[float, float, float]:
    """Return (mean, cluster-robust SE, mean + z * SE) for a 0/1 outcome vector.

    Raises DegenerateDesign when every outcome is identical.
    """
    y = np.asarray(outcomes, dtype=float)
    if y.shape[0] != assignment.sample_size:
        raise ValueError(
            f"outcome length {y.shape[0]} does not match cluster assignment ({assignment.sample_size})"
        )
    if y.size == 0 or np.all(y == y[0]):
        value = int(y[0]) if y.size else 0
        raise DegenerateDesign(f"replicate {seed}: all {y.size} outcomes equal {value}")

    X = np.ones((y.shape[0], 1), dtype=float)
    fit = sm.OLS(y, X).fit(
        cov_type="cluster",
        cov_kwds={"groups": assignment.labels, "use_correction": True},
    )
    mean = float(y.mean())
    se = float(fit.bse[0])
    return mean, se, mean + z * se


def simulate(
    scenario: ScenarioParameters,
    assignment: ClusterAssignment,
    seed: int,
    z: float = DEFAULT_Z,
) -> ReplicateResult:
    """Draw one survey and compute its cluster-robust upper confidence bound."""
    outcomes = draw_outcomes(scenario, seed)
    mean, se, upper = cluster_robust_upper_bound(outcomes, assignment, z=z, seed=seed)
    return ReplicateResult(
        scenario=scenario,
        replicate=int(seed),
        point_estimate=mean,
        std_error=se,
        upper_bound=upper,
    )
