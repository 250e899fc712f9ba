import json

import diagnostic_survey.power_diagnostic as cli


def test_cell_mode(capsys, tmp_path):
    out_path = tmp_path / "cell.json"
    code = cli.main([
        "--mode", "cell", "--threshold", "0.10", "--prevalence", "0.0",
        "--sensitivity", "1.0", "--specificity", "0.95", "--sample-size", "200",
        "--replicates", "20", "--n-jobs", "1", "--output-json", str(out_path),
    ])
    assert code == 0
    out = capsys.readouterr().out
    assert "Power (upper bound < threshold)" in out
    assert "4 clusters of 50" in out
    records = json.loads(out_path.read_text())
    assert records[0]["replicates"] == 20
    assert records[0]["sample_size"] == 200


def test_cell_mode_type1_label(capsys):
    code = cli.main([
        "--mode", "cell", "--threshold", "0.10", "--prevalence", "0.10",
        "--sensitivity", "0.85", "--specificity", "0.98", "--sample-size", "200",
        "--replicates", "10", "--n-jobs", "1",
    ])
    assert code == 0
    assert "Type I error" in capsys.readouterr().out


def test_invalid_scenario_exit_code(capsys):
    code = cli.main([
        "--mode", "cell", "--sensitivity", "0.3", "--specificity", "0.5",
        "--sample-size", "200", "--replicates", "5", "--n-jobs", "1",
    ])
    assert code == 2
    assert "sensitivity + specificity must exceed 1" in capsys.readouterr().err


def test_sweep_mode(capsys, tmp_path):
    out_path = tmp_path / "sweep.json"
    code = cli.main([
        "--mode", "sweep", "--threshold", "0.10", "--prevalence", "0.10",
        "--specificity", "0.98", "--parameter", "sensitivity", "--values", "0.6,0.9",
        "--sample-sizes", "200,300", "--replicates", "15", "--n-jobs", "2",
        "--output-json", str(out_path),
    ])
    assert code == 0
    out = capsys.readouterr().out
    assert "by sensitivity and sample size" in out
    records = json.loads(out_path.read_text())
    assert len(records) == 4
    assert {r["value"] for r in records} == {0.6, 0.9}


def test_sweep_mode_requires_values(capsys):
    code = cli.main(["--mode", "sweep", "--replicates", "5", "--n-jobs", "1"])
    assert code == 2
    assert "--values" in capsys.readouterr().err


def test_study_mode_with_config(capsys, tmp_path):
    config_path = tmp_path / "study.json"
    config_path.write_text(json.dumps({
        "settings": {"replicates": 30},
        "scenarios": [{
            "threshold": 0.10,
            "sample_sizes": [500],
            "specificity_values": [0.90, 0.95],
            "sensitivity_values": [0.7, 1.0],
            "profile_prevalences": [0.0],
        }],
    }))
    out_path = tmp_path / "study_out.json"
    code = cli.main([
        "--mode", "study", "--config", str(config_path), "--n-jobs", "1",
        "--no-profile", "--output-json", str(out_path),
    ])
    assert code == 0
    out = capsys.readouterr().out
    assert "Threshold 10%" in out
    assert "Minimum test performance" in out
    payload = json.loads(out_path.read_text())
    assert payload[0]["threshold"] == 0.10
    assert payload[0]["minimums"][0]["sample_size"] == 500
    assert payload[0]["profile"] == []


def test_study_mode_unknown_threshold(capsys):
    code = cli.main(["--mode", "study", "--threshold", "0.2", "--replicates", "5", "--n-jobs", "1"])
    assert code == 2


def test_study_mode_duplicate_grid_exit_code(capsys, tmp_path):
    config_path = tmp_path / "dup.json"
    config_path.write_text(json.dumps({
        "scenarios": [{
            "threshold": 0.10,
            "sample_sizes": [500, 500],
            "specificity_values": [0.95, 0.98],
            "sensitivity_values": [0.8, 0.9],
        }],
    }))
    code = cli.main(["--mode", "study", "--config", str(config_path), "--replicates", "5", "--n-jobs", "1"])
    assert code == 2
    assert "duplicate" in capsys.readouterr().err


def _reject_constant(token):
    raise ValueError(f"non-standard JSON constant {token}")


def test_study_json_writes_null_for_missing_minimums(tmp_path):
    config_path = tmp_path / "unreachable.json"
    config_path.write_text(json.dumps({
        "settings": {"replicates": 10},
        "scenarios": [{
            "threshold": 0.10,
            "sample_sizes": [500],
            "specificity_values": [0.90],
            "sensitivity_values": [0.9, 1.0],
            "profile_prevalences": [0.0],
        }],
    }))
    out_path = tmp_path / "study_out.json"
    code = cli.main([
        "--mode", "study", "--config", str(config_path), "--n-jobs", "1",
        "--output-json", str(out_path),
    ])
    assert code == 0
    payload = json.loads(out_path.read_text(), parse_constant=_reject_constant)
    row = payload[0]["minimums"][0]
    assert row["min_specificity"] is None
    assert row["min_sensitivity"] is None
    assert row["type1_at_min"] is None
    assert payload[0]["type1"] == []
