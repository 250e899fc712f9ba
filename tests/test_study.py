import math

import pytest

import diagnostic_survey.study as study
from diagnostic_survey.config import StudyConfig, SweepSettings, ThresholdScenario
from diagnostic_survey.errors import InvalidScenario

SETTINGS = SweepSettings(replicates=200)

SCENARIO = ThresholdScenario(
    threshold=0.10,
    sample_sizes=(1000,),
    specificity_values=(0.90, 0.95, 0.99),
    sensitivity_values=(0.04, 0.5, 0.7, 0.9, 1.0),
    profile_prevalences=(0.0, 0.05),
)


@pytest.fixture(scope="module")
def ten_percent_study():
    return study.run_threshold_study(SCENARIO, SETTINGS, n_jobs=2, chunk_size=50)


class TestStagedSearch:
    def test_minimum_specificity(self, ten_percent_study):
        stage = ten_percent_study.specificity_stage[1000]
        # 90% specificity makes the apparent prevalence equal the threshold.
        assert stage.rate_at(0.90) < 0.2
        assert stage.selected == 0.95
        assert stage.rate_at(0.95) >= SETTINGS.power_target

    def test_sensitivity_stage_uses_selected_specificity(self, ten_percent_study):
        stage = ten_percent_study.sensitivity_stage[1000]
        assert stage.stats
        for stat in stage.stats:
            assert stat.cell.scenario.specificity == 0.95
            assert stat.cell.scenario.true_prevalence == 0.10

    def test_uninformative_sensitivities_skipped(self, ten_percent_study):
        values = [s.value for s in ten_percent_study.sensitivity_stage[1000].stats]
        assert 0.04 not in values
        assert values == [0.5, 0.7, 0.9, 1.0]

    def test_minimum_sensitivity_is_first_value_meeting_target(self, ten_percent_study):
        stage = ten_percent_study.sensitivity_stage[1000]
        assert stage.selected in (0.5, 0.7)
        for stat in sorted(stage.stats, key=lambda s: s.value):
            if stat.value < stage.selected:
                assert stat.empirical_rate > SETTINGS.type1_target
            elif stat.value == stage.selected:
                assert stat.empirical_rate <= SETTINGS.type1_target

    def test_minimums_table(self, ten_percent_study):
        table = ten_percent_study.minimums()
        assert list(table.columns) == [
            "threshold", "sample_size", "min_specificity", "min_sensitivity", "power_at_min", "type1_at_min",
        ]
        row = table.iloc[0]
        assert row["threshold"] == 0.10
        assert row["sample_size"] == 1000
        assert row["min_specificity"] == 0.95
        assert row["power_at_min"] >= 0.90
        assert row["type1_at_min"] <= 0.05

    def test_profile(self, ten_percent_study):
        prevalences = [s.cell.true_prevalence for s in ten_percent_study.profile]
        assert prevalences == [0.0, 0.05]
        table = ten_percent_study.profile_table()
        assert table.index.name == "true_prevalence"
        assert list(table.columns) == [1000]

    def test_tables_and_dict(self, ten_percent_study):
        power = ten_percent_study.power_table()
        assert list(power.index) == [0.90, 0.95, 0.99]
        type1 = ten_percent_study.type1_table()
        assert list(type1.index) == [0.5, 0.7, 0.9, 1.0]
        payload = ten_percent_study.to_dict()
        assert payload["threshold"] == 0.10
        assert len(payload["power"]) == 3
        assert len(payload["type1"]) == 4


def test_chain_stops_without_specificity():
    scenario = ThresholdScenario(
        threshold=0.10,
        sample_sizes=(1000,),
        specificity_values=(0.90,),
        sensitivity_values=(0.5, 1.0),
        profile_prevalences=(0.0,),
    )
    result = study.run_threshold_study(scenario, SweepSettings(replicates=50))
    assert result.specificity_stage[1000].selected is None
    assert result.sensitivity_stage == {}
    assert result.profile == []
    row = result.minimums().iloc[0]
    assert math.isnan(row["min_specificity"])
    assert math.isnan(row["min_sensitivity"])


def test_stage_functions_compose():
    settings = SweepSettings(replicates=100)
    spec = study.minimum_specificity(SCENARIO, 1000, settings)
    assert spec == 0.95
    sens = study.minimum_sensitivity(SCENARIO, 1000, spec, settings)
    assert sens in (0.5, 0.7, 0.9)


def test_stages_are_reproducible():
    settings = SweepSettings(replicates=60)
    a = study.specificity_stage(SCENARIO, settings)
    b = study.specificity_stage(SCENARIO, settings, n_jobs=2, chunk_size=20)
    assert [s.hits for s in a[1000].stats] == [s.hits for s in b[1000].stats]
    assert a[1000].selected == b[1000].selected


def test_run_study_validates_before_running(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("no stage should run")

    monkeypatch.setattr(study, "run_threshold_study", boom)
    bad = ThresholdScenario(threshold=0.05, specificity_values=(), sensitivity_values=(0.5,))
    with pytest.raises(InvalidScenario):
        study.run_study(StudyConfig(settings=SETTINGS, scenarios=(SCENARIO, bad)))
