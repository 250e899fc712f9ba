"""
Static configuration of the threshold studies.

The reference configuration covers the three policy thresholds (1%, 5% and
10% prevalence), sample sizes of 1000, 2000 and 3000 in clusters of 50, and
1000 replicates per grid cell with a 1.96 multiplier on the cluster-robust
standard error.

A JSON file may replace any part of it::

    {
      "settings": {"replicates": 500},
      "scenarios": [
        {"threshold": 0.05,
         "sample_sizes": [1000, 2000],
         "specificity_values": {"start": 0.95, "stop": 0.995, "step": 0.005},
         "sensitivity_values": [0.6, 0.7, 0.8, 0.9, 1.0]}
      ]
    }
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from diagnostic_survey.errors import InvalidScenario
from diagnostic_survey.survey_sim import DEFAULT_CLUSTER_SIZE, DEFAULT_Z


def float_grid(start: float, stop: float, step: float, digits: int = 6) -> Tuple[float, ...]:
    """Inclusive arithmetic grid, rounded so 0.1 + 0.2 style drift never leaks into cell keys."""
    if step <= 0:
        raise InvalidScenario(f"grid step must be positive, got {step}")
    if stop < start:
        raise InvalidScenario(f"grid stop {stop} is below start {start}")
    values = np.arange(start, stop + step / 2.0, step)
    return tuple(float(v) for v in np.round(values, digits))


@dataclass(frozen=True)
class SweepSettings:
    replicates: int = 1000
    z: float = DEFAULT_Z
    power_target: float = 0.90
    type1_target: float = 0.05
    cluster_size: int = DEFAULT_CLUSTER_SIZE

    def validate(self) -> None:
        if self.replicates <= 0:
            raise InvalidScenario("replicates must be a positive integer")
        if not (self.z > 0):
            raise InvalidScenario("z must be > 0")
        if not (0.0 < self.power_target < 1.0):
            raise InvalidScenario("power_target must be in (0, 1)")
        if not (0.0 < self.type1_target < 1.0):
            raise InvalidScenario("type1_target must be in (0, 1)")
        if self.cluster_size <= 0:
            raise InvalidScenario("cluster_size must be a positive integer")


@dataclass(frozen=True)
class ThresholdScenario:
    threshold: float
    sample_sizes: Tuple[int, ...] = (1000, 2000, 3000)
    specificity_values: Tuple[float, ...] = ()
    sensitivity_values: Tuple[float, ...] = float_grid(0.05, 1.0, 0.05)
    power_prevalence: float = 0.0          # true prevalence for the power (specificity) stage
    power_sensitivity: float = 1.0         # sensitivity held fixed during the specificity stage
    profile_prevalences: Tuple[float, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.threshold:.0%}"

    def validate(self, settings: Optional[SweepSettings] = None) -> None:
        settings = settings or SweepSettings()
        if not (0.0 < self.threshold < 1.0):
            raise InvalidScenario(f"threshold must be in (0, 1), got {self.threshold}")
        if not self.sample_sizes:
            raise InvalidScenario(f"{self.label}: at least one sample size is required")
        for n in self.sample_sizes:
            if int(n) != n or n <= 0:
                raise InvalidScenario(f"{self.label}: sample size must be a positive integer, got {n}")
            if math.ceil(n / settings.cluster_size) < 2:
                raise InvalidScenario(
                    f"{self.label}: sample size {n} gives fewer than 2 clusters of {settings.cluster_size}"
                )
        if not self.specificity_values:
            raise InvalidScenario(f"{self.label}: specificity grid is empty")
        if not self.sensitivity_values:
            raise InvalidScenario(f"{self.label}: sensitivity grid is empty")
        for name in ("sample_sizes", "specificity_values", "sensitivity_values", "profile_prevalences"):
            values = getattr(self, name)
            if len(set(values)) != len(values):
                raise InvalidScenario(f"{self.label}: {name} contains duplicate entries: {list(values)}")
        for name in ("specificity_values", "sensitivity_values", "profile_prevalences"):
            for v in getattr(self, name):
                if not (0.0 <= v <= 1.0):
                    raise InvalidScenario(f"{self.label}: {name} entries must be in [0, 1], got {v}")
        if not (0.0 <= self.power_prevalence < self.threshold):
            raise InvalidScenario(
                f"{self.label}: power_prevalence must be in [0, threshold), got {self.power_prevalence}"
            )
        if not (0.0 <= self.power_sensitivity <= 1.0):
            raise InvalidScenario(f"{self.label}: power_sensitivity must be in [0, 1]")
        # Every specificity cell of the power stage must satisfy Se + Sp > 1.
        if self.power_sensitivity + min(self.specificity_values) <= 1.0:
            raise InvalidScenario(
                f"{self.label}: power_sensitivity {self.power_sensitivity} + specificity "
                f"{min(self.specificity_values)} must exceed 1"
            )
        for p in self.profile_prevalences:
            if p >= self.threshold:
                raise InvalidScenario(
                    f"{self.label}: profile prevalence {p} is not below the threshold"
                )


REFERENCE_SETTINGS = SweepSettings()

REFERENCE_SCENARIOS: Tuple[ThresholdScenario, ...] = (
    ThresholdScenario(
        threshold=0.01,
        specificity_values=float_grid(0.990, 0.999, 0.001),
        profile_prevalences=(0.0, 0.0025, 0.005),
    ),
    ThresholdScenario(
        threshold=0.05,
        specificity_values=float_grid(0.950, 0.995, 0.005),
        profile_prevalences=(0.0, 0.01, 0.02, 0.03),
    ),
    ThresholdScenario(
        threshold=0.10,
        specificity_values=float_grid(0.90, 0.99, 0.01),
        profile_prevalences=(0.0, 0.02, 0.04, 0.06),
    ),
)


GridSpec = Union[Sequence[float], Mapping[str, float]]


def _grid_from_json(value: GridSpec) -> Tuple[float, ...]:
    if isinstance(value, Mapping):
        try:
            return float_grid(float(value["start"]), float(value["stop"]), float(value["step"]))
        except KeyError as exc:
            raise InvalidScenario(f"grid mapping is missing {exc.args[0]!r}") from exc
    return tuple(float(v) for v in value)


_GRID_FIELDS = ("specificity_values", "sensitivity_values", "profile_prevalences")


def scenario_from_dict(raw: Mapping[str, Any]) -> ThresholdScenario:
    known = {f.name for f in fields(ThresholdScenario)}
    unknown = set(raw) - known
    if unknown:
        raise InvalidScenario(f"unknown scenario keys: {sorted(unknown)}")
    if "threshold" not in raw:
        raise InvalidScenario("scenario requires a 'threshold'")
    kwargs: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in _GRID_FIELDS:
            kwargs[key] = _grid_from_json(value)
        elif key == "sample_sizes":
            kwargs[key] = tuple(int(v) for v in value)
        else:
            kwargs[key] = float(value)
    base = next((s for s in REFERENCE_SCENARIOS if s.threshold == kwargs["threshold"]), None)
    if base is not None:
        return replace(base, **kwargs)
    return ThresholdScenario(**kwargs)


def settings_from_dict(raw: Mapping[str, Any]) -> SweepSettings:
    known = {f.name for f in fields(SweepSettings)}
    unknown = set(raw) - known
    if unknown:
        raise InvalidScenario(f"unknown settings keys: {sorted(unknown)}")
    kwargs: Dict[str, Any] = {}
    for key, value in raw.items():
        kwargs[key] = int(value) if key in ("replicates", "cluster_size") else float(value)
    return replace(REFERENCE_SETTINGS, **kwargs)


@dataclass(frozen=True)
class StudyConfig:
    settings: SweepSettings = REFERENCE_SETTINGS
    scenarios: Tuple[ThresholdScenario, ...] = field(default=REFERENCE_SCENARIOS)

    def validate(self) -> None:
        self.settings.validate()
        for scenario in self.scenarios:
            scenario.validate(self.settings)

    def select(self, thresholds: Optional[Sequence[float]]) -> "StudyConfig":
        if not thresholds:
            return self
        wanted = [float(t) for t in thresholds]
        chosen = tuple(s for s in self.scenarios if any(math.isclose(s.threshold, t) for t in wanted))
        missing = [t for t in wanted if not any(math.isclose(s.threshold, t) for s in chosen)]
        if missing:
            raise InvalidScenario(f"no configured scenario for threshold(s) {missing}")
        return replace(self, scenarios=chosen)


def load_config(path: Optional[Union[str, Path]] = None) -> StudyConfig:
    """Reference configuration, optionally overridden by a JSON file; always validated."""
    if path is None:
        config = StudyConfig()
    else:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
        if not isinstance(raw, Mapping):
            raise InvalidScenario(f"{path}: top-level JSON value must be an object")
        settings = settings_from_dict(raw.get("settings", {}))
        scenarios: List[ThresholdScenario]
        if "scenarios" in raw:
            scenarios = [scenario_from_dict(s) for s in raw["scenarios"]]
        else:
            scenarios = list(REFERENCE_SCENARIOS)
        config = StudyConfig(settings=settings, scenarios=tuple(scenarios))
    config.validate()
    return config
