import pandas as pd
import pytest
import yaml
from typer.testing import CliRunner

from platform_randomization.cli import app, build_trial_config, load_config

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    cfg = {
        "simulation": {
            "n_patients": 24,
            "n_covariates": 1,
            "k_init": 1,
            "k_new": 1,
            "time_add": 0.5,
            "method": "SR",
            "block_size": 2,
            "ratio": [1, 1, 1],
            "sims": 5,
            "seed": 3,
        },
        "output": {"csv": str(tmp_path / "out" / "curves.csv")},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


def test_build_trial_config_applies_overrides():
    cfg = build_trial_config({"n_patients": 30, "method": "SR"}, method="SBUD", sims=7)
    assert cfg.method == "SBUD"
    assert cfg.sims == 7
    assert cfg.n_patients == 30


def test_load_config_expands_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("TRIAL_OUTPUT", "/data/results")
    path = tmp_path / "cfg.yaml"
    path.write_text("output:\n  csv: ${TRIAL_OUTPUT}/curves.csv\n", encoding="utf-8")
    assert load_config(str(path))["output"]["csv"] == "/data/results/curves.csv"


def test_simulate_writes_curves(config_file, tmp_path):
    result = runner.invoke(app, ["simulate", "--config-path", str(config_file)])
    assert result.exit_code == 0, result.output
    curves = pd.read_csv(tmp_path / "out" / "curves.csv")
    assert curves["n"].tolist() == list(range(1, 25))
    assert "predictability_overall" in curves.columns


def test_simulate_rejects_unknown_method(config_file):
    result = runner.invoke(
        app, ["simulate", "--config-path", str(config_file), "--method", "Coin"]
    )
    assert result.exit_code == 1
    assert "Unsupported randomization method" in result.output


def test_compare_writes_table_and_plots(config_file, tmp_path):
    output = tmp_path / "comparison.csv"
    plots = tmp_path / "plots"
    result = runner.invoke(
        app,
        [
            "compare",
            "--config-path", str(config_file),
            "--output", str(output),
            "--plots", str(plots),
            "--method", "SR",
            "--method", "SBR",
        ],
    )
    assert result.exit_code == 0, result.output
    comparison = pd.read_csv(output)
    assert sorted(comparison["method"].unique()) == ["SBR", "SR"]
    assert (plots / "imbalance.html").exists()
    assert (plots / "predictability.html").exists()


def test_compare_writes_plots_to_configured_directory(config_file, tmp_path):
    cfg = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    cfg["output"]["html"] = str(tmp_path / "html")
    config_file.write_text(yaml.safe_dump(cfg), encoding="utf-8")

    result = runner.invoke(
        app, ["compare", "--config-path", str(config_file), "--method", "SR"]
    )
    assert result.exit_code == 0, result.output
    assert (tmp_path / "html" / "imbalance.html").exists()
    assert (tmp_path / "html" / "predictability.html").exists()


def test_validate_reports_p_values(config_file):
    result = runner.invoke(
        app, ["validate", "--config-path", str(config_file), "--sims", "400"]
    )
    assert result.exit_code == 0, result.output
    assert "Phase 2 chi-square p-value" in result.output
