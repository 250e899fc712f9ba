"""
Misclassification model for an imperfect binary diagnostic test.

With true prevalence p, sensitivity Se and specificity Sp, the probability
that a randomly sampled individual tests positive is

    p_app = (1 - Sp) + (Se + Sp - 1) * p

and the Rogan-Gladen correction inverts it:

    p_true = (p_obs + Sp - 1) / (Se + Sp - 1)

Both transforms saturate to [0, 1] instead of raising. The quantity
Se + Sp - 1 (Youden's J) must be positive for the correction to make sense;
``check_test_accuracy`` is the configuration-time guard for that.
"""

from __future__ import annotations

from typing import Union

import numpy as np

from diagnostic_survey.errors import InvalidScenario

ArrayOrFloat = Union[float, np.ndarray]


def clamp01(x: ArrayOrFloat) -> ArrayOrFloat:
    """Clip a probability (scalar or array) into [0, 1]."""
    out = np.clip(x, 0.0, 1.0)
    if np.ndim(out) == 0:
        return float(out)
    return out


def youden_index(sensitivity: float, specificity: float) -> float:
    """Youden's J = Se + Sp - 1."""
    return float(sensitivity + specificity - 1.0)


def check_test_accuracy(sensitivity: float, specificity: float) -> None:
    """Reject sensitivity/specificity pairs outside the usable region."""
    for name, value in (("sensitivity", sensitivity), ("specificity", specificity)):
        if value is None or not (value == value):  # NaN check
            raise InvalidScenario(f"{name} must be a real number in [0,1]")
        if not (0.0 <= value <= 1.0):
            raise InvalidScenario(f"{name} must be in [0, 1], got {value}")
    if youden_index(sensitivity, specificity) <= 0.0:
        raise InvalidScenario(
            f"sensitivity + specificity must exceed 1, got {sensitivity} + {specificity}"
        )


def apparent_prevalence(p: ArrayOrFloat, sensitivity: float, specificity: float) -> ArrayOrFloat:
    """Probability of a positive test result given true prevalence ``p``."""
    p = np.asarray(p, dtype=float)
    return clamp01((1.0 - specificity) + youden_index(sensitivity, specificity) * p)


def corrected_prevalence(p_observed: ArrayOrFloat, sensitivity: float, specificity: float) -> ArrayOrFloat:
    """Rogan-Gladen estimate of true prevalence from an observed positive rate.

    Raises InvalidScenario only when Se + Sp == 1 exactly; near that line the
    result saturates to 0 or 1.
    """
    j = youden_index(sensitivity, specificity)
    if j == 0.0:
        raise InvalidScenario("correction undefined when sensitivity + specificity == 1")
    p_observed = np.asarray(p_observed, dtype=float)
    return clamp01((p_observed + specificity - 1.0) / j)
