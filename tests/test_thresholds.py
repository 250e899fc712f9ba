import math

import pytest

import diagnostic_survey.thresholds as th
from diagnostic_survey.monte_carlo import CellRun, CellTally, GridCell
from diagnostic_survey.survey_sim import ScenarioParameters


def _stat(value: float, rate: float, parameter: str = "specificity", n: int = 1000) -> th.SummaryStatistic:
    scenario = ScenarioParameters(
        true_prevalence=0.0, sensitivity=1.0, specificity=0.99, sample_size=n,
    ).with_values(**{parameter: value})
    cell = GridCell(parameter=parameter, value=value, scenario=scenario)
    valid = 1000
    hits = 0 if math.isnan(rate) else int(round(rate * valid))
    return th.SummaryStatistic(
        cell=cell,
        empirical_rate=rate,
        hits=hits,
        valid=valid,
        degenerate=0,
        replicates=valid,
        mean_estimate=0.0,
        ci_low=rate,
        ci_high=rate,
    )


class TestFindThreshold:
    def test_power_picks_first_crossing(self):
        stats = [_stat(0.990, 0.10), _stat(0.993, 0.60), _stat(0.995, 0.91), _stat(0.999, 1.0)]
        assert th.find_threshold(stats, 0.90, th.AT_LEAST) == 0.995

    def test_exact_target_counts_as_crossing(self):
        stats = [_stat(0.95, 0.89), _stat(0.96, 0.90)]
        assert th.find_threshold(stats, 0.90, th.AT_LEAST) == 0.96

    def test_unsorted_input(self):
        stats = [_stat(0.999, 1.0), _stat(0.990, 0.10), _stat(0.995, 0.95)]
        assert th.find_threshold(stats, 0.90) == 0.995

    def test_type1_picks_first_value_at_or_below_target(self):
        stats = [
            _stat(0.3, 0.40, "sensitivity"),
            _stat(0.5, 0.05, "sensitivity"),
            _stat(0.7, 0.01, "sensitivity"),
        ]
        assert th.find_threshold(stats, 0.05, th.AT_MOST) == 0.5

    def test_no_crossing_returns_none(self):
        stats = [_stat(0.990, 0.10), _stat(0.995, 0.50)]
        assert th.find_threshold(stats, 0.90, th.AT_LEAST) is None

    def test_empty(self):
        assert th.find_threshold([], 0.90) is None

    def test_nan_rate_never_meets_target(self):
        stats = [_stat(0.99, float("nan")), _stat(0.995, 0.95)]
        assert th.find_threshold(stats, 0.90) == 0.995

    def test_non_monotone_still_returns_first_crossing(self):
        stats = [_stat(0.990, 0.95), _stat(0.995, 0.80), _stat(0.999, 0.99)]
        assert th.find_threshold(stats, 0.90) == 0.990

    def test_bad_direction(self):
        with pytest.raises(ValueError):
            th.find_threshold([_stat(0.99, 0.5)], 0.9, "above")


class TestMonotone:
    def test_power_direction(self):
        assert th.is_monotone([0.1, 0.5, 0.5, 0.9], th.AT_LEAST)
        assert not th.is_monotone([0.1, 0.5, 0.4], th.AT_LEAST)

    def test_type1_direction(self):
        assert th.is_monotone([0.4, 0.1, 0.0], th.AT_MOST)
        assert not th.is_monotone([0.4, 0.1, 0.2], th.AT_MOST)

    def test_ignores_nan(self):
        assert th.is_monotone([0.1, float("nan"), 0.5], th.AT_LEAST)


class TestWilson:
    def test_contains_point_estimate(self):
        low, high = th.binomial_wilson_ci(45, 1000)
        assert low < 0.045 < high

    def test_bounds_stay_in_unit_interval(self):
        low, high = th.binomial_wilson_ci(0, 1000)
        assert low == pytest.approx(0.0, abs=1e-12)
        assert 0.0 < high < 0.01
        low, high = th.binomial_wilson_ci(1000, 1000)
        assert high == pytest.approx(1.0, abs=1e-12)

    def test_zero_trials(self):
        low, high = th.binomial_wilson_ci(0, 0)
        assert math.isnan(low) and math.isnan(high)


class TestSummarize:
    def test_rate_uses_valid_denominator(self):
        cell = _stat(0.995, 0.0).cell
        run = CellRun(cell=cell, threshold=0.01,
                      tally=CellTally(requested=100, valid=80, hits=60, degenerate=20, estimate_sum=0.4))
        stat = th.summarize(run)
        assert stat.empirical_rate == pytest.approx(0.75)
        assert stat.replicates == 100
        assert stat.degenerate == 20
        assert stat.mean_estimate == pytest.approx(0.005)
        assert stat.ci_low < 0.75 < stat.ci_high

    def test_rate_table_pivot(self):
        stats = [
            _stat(0.99, 0.2, n=1000), _stat(0.995, 0.8, n=1000),
            _stat(0.99, 0.5, n=2000), _stat(0.995, 0.97, n=2000),
        ]
        table = th.rate_table(stats)
        assert list(table.index) == [0.99, 0.995]
        assert list(table.columns) == [1000, 2000]
        assert table.loc[0.995, 2000] == pytest.approx(0.97)
        assert table.index.name == "specificity"

    def test_rate_table_keeps_nan_rows(self):
        stats = [_stat(0.99, float("nan")), _stat(0.995, 0.9)]
        table = th.rate_table(stats)
        assert len(table) == 2
        assert math.isnan(table.loc[0.99, 1000])

    def test_summaries_frame_columns(self):
        frame = th.summaries_frame([_stat(0.99, 0.5)])
        for col in ("parameter", "value", "rate", "sample_size", "true_prevalence", "ci_low", "ci_high"):
            assert col in frame.columns
