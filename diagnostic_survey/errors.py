"""Exceptions raised by the survey simulation engine."""

from __future__ import annotations


class InvalidScenario(ValueError):
    """Scenario or grid configuration rejected before any simulation runs."""


class DegenerateDesign(RuntimeError):
    """A simulated survey whose outcomes are all identical.

    The cluster-robust variance of the intercept is undefined (zero residual
    variation), so the replicate carries no usable upper bound.
    """
