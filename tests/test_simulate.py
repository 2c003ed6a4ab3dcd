"""Tests for the replicate driver and curve aggregation."""
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from platform_randomization.randomize import TrialConfig
from platform_randomization.simulate import (
    CurveAccumulator,
    SimulationResult,
    ValidationResult,
    average_curves,
    check_allocation_shares,
    compare_methods,
    replicate_rng,
    run_simulation,
    run_trial,
)


@pytest.fixture
def small_config():
    """Small two-phase design that runs quickly."""
    return TrialConfig(
        n_patients=40,
        n_covariates=2,
        k_init=1,
        k_new=1,
        time_add=0.5,
        method="SR",
        sims=20,
        seed=777,
    )


def _single_cell(value):
    return pd.DataFrame({"imbalance_arm_1": [value]}, index=pd.RangeIndex(1, 2, name="n"))


def test_mean_ignores_undefined_replicates():
    """Three undefined replicates and two defined ones average to the defined mean."""
    tables = [_single_cell(v) for v in [np.nan, np.nan, np.nan, 0.2, 0.4]]
    accumulator = CurveAccumulator()
    for table in tables:
        accumulator.add(table)

    assert accumulator.mean().iloc[0, 0] == pytest.approx(0.3)
    assert accumulator.counts().iloc[0, 0] == 2
    assert accumulator.n_tables == 5


def test_mean_is_undefined_when_no_replicate_is_defined():
    averaged = average_curves([_single_cell(np.nan) for _ in range(3)])
    assert np.isnan(averaged.iloc[0, 0])


def test_mean_does_not_depend_on_order():
    values = [np.nan, 0.1, 0.25, np.nan, 0.7]
    forward = average_curves([_single_cell(v) for v in values])
    backward = average_curves([_single_cell(v) for v in reversed(values)])
    assert forward.iloc[0, 0] == pytest.approx(backward.iloc[0, 0])


def test_accumulator_rejects_mismatched_tables():
    accumulator = CurveAccumulator()
    accumulator.add(_single_cell(0.1))
    other = pd.DataFrame({"predictability_overall": [0.5]}, index=pd.RangeIndex(1, 2, name="n"))
    with pytest.raises(ValueError, match="same checkpoints and columns"):
        accumulator.add(other)


def test_empty_accumulator_has_no_mean():
    with pytest.raises(RuntimeError):
        CurveAccumulator().mean()


def test_replicate_stream_matches_spawned_child():
    children = np.random.SeedSequence(2024).spawn(4)
    for index, child in enumerate(children):
        expected = np.random.default_rng(child).random(5)
        assert np.array_equal(replicate_rng(2024, index).random(5), expected)


def test_run_trial_fills_every_assignment(small_config):
    result = run_trial(small_config, replicate_rng(small_config.seed, 0))
    assert result.cohort["treatment"].notna().all()
    assert len(result.curves) == small_config.n_patients
    assert result.arm_counts[1].sum() == small_config.n_stage1
    assert result.arm_counts[2].sum() == small_config.n_patients - small_config.n_stage1
    assert len(result.arm_counts[1]) == 2
    assert len(result.arm_counts[2]) == 3


def test_simulation_output_schema(small_config):
    result = run_simulation(small_config)
    assert isinstance(result, SimulationResult)
    assert result.n_simulations == small_config.sims
    curves = result.curves
    assert curves.index.tolist() == list(range(1, small_config.n_patients + 1))
    assert list(curves.columns) == [
        "imbalance_arm_1",
        "imbalance_arm_2",
        "predictability_stage1",
        "predictability_stage2",
        "predictability_overall",
    ]

    n1 = small_config.n_stage1
    assert curves["predictability_stage1"].iloc[:n1].notna().all()
    assert curves["predictability_stage1"].iloc[n1:].isna().all()
    assert curves["predictability_stage2"].iloc[:n1].isna().all()
    assert curves["predictability_stage2"].iloc[n1:].notna().all()
    # The added arm has no patients before the checkpoint
    assert curves["imbalance_arm_2"].iloc[:n1].isna().all()
    assert result.defined_counts["imbalance_arm_2"].iloc[:n1].eq(0).all()
    # A single patient can never define an imbalance
    assert np.isnan(curves["imbalance_arm_1"].iloc[0])


def test_simulation_is_reproducible(small_config):
    first = run_simulation(small_config)
    second = run_simulation(small_config)
    pd.testing.assert_frame_equal(first.curves, second.curves)


def test_different_seed_changes_results(small_config):
    first = run_simulation(small_config)
    other = run_simulation(replace(small_config, seed=778))
    assert not first.curves.equals(other.curves)


def test_parallel_run_matches_sequential(small_config):
    sequential = run_simulation(small_config, n_jobs=1)
    parallel = run_simulation(small_config, n_jobs=2)
    pd.testing.assert_frame_equal(sequential.curves, parallel.curves)
    pd.testing.assert_frame_equal(sequential.defined_counts, parallel.defined_counts)


def test_verbose_run_reports_progress(small_config, capsys):
    run_simulation(small_config, verbose=True)
    out = capsys.readouterr().out
    assert "Running 20 replicate trials with SR" in out
    assert "Replicate 20/20" in out
    assert "Simulation complete!" in out


def _final_overall(method, **overrides):
    settings = dict(
        n_patients=100, n_covariates=1, k_init=1, k_new=0, time_add=0.5,
        method=method, block_size=2, sims=200, seed=31,
    )
    settings.update(overrides)
    return run_simulation(TrialConfig(**settings)).curves["predictability_overall"].iloc[-1]


def test_simple_random_is_not_predictable():
    assert _final_overall("SR") == pytest.approx(0.5, abs=0.03)


def test_blocks_are_more_predictable_than_simple_random():
    assert _final_overall("SBR") > _final_overall("SR") + 0.1


def test_minimization_reduces_imbalance():
    settings = dict(n_patients=200, n_covariates=2, k_init=1, k_new=1, sims=40, seed=5)
    simple = run_simulation(TrialConfig(method="SR", **settings)).curves
    minimized = run_simulation(TrialConfig(method="Minimization", **settings)).curves
    assert minimized["imbalance_arm_1"].iloc[-1] < simple["imbalance_arm_1"].iloc[-1]


def test_compare_methods_stacks_each_method(small_config):
    comparison = compare_methods(small_config, methods=["SR", "SBR"])
    assert list(comparison.columns[:2]) == ["method", "n"]
    assert comparison["method"].value_counts().to_dict() == {
        "SR": small_config.n_patients,
        "SBR": small_config.n_patients,
    }


def test_compare_methods_validates_each_design(small_config):
    three_arms = replace(small_config, k_init=2, ratio=None)
    with pytest.raises(ValueError, match="divisible"):
        compare_methods(three_arms, methods=["SR", "SBR"])


def test_allocation_shares_follow_ratio():
    cfg = TrialConfig(
        n_patients=200, n_covariates=1, k_init=1, k_new=1,
        method="SR", ratio=(2, 1, 3), sims=50, seed=8,
    )
    result = check_allocation_shares(cfg)
    assert isinstance(result, ValidationResult)
    assert result.is_valid
    assert set(result.p_values) == {1, 2}
    stage2 = result.summary[result.summary["phase"] == 2]
    assert stage2["expected_share"].tolist() == pytest.approx([1 / 3, 1 / 6, 1 / 2])
    assert stage2["count"].sum() == 50 * 100


def test_allocation_share_deviation_warns(small_config):
    with pytest.warns(UserWarning, match="deviates from expected"):
        result = check_allocation_shares(small_config, n_simulations=1, tolerance=0.0)
    assert not result.is_valid
    assert result.warnings
