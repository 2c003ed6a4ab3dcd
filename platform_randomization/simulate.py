"""
Replicate driver for platform-trial randomization studies.

Every replicate draws a fresh cohort, assigns it with the configured
method and scores the allocation. The per-checkpoint curves are then
averaged over replicates, ignoring undefined (NaN) entries.
"""

from __future__ import annotations

import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, replace
from itertools import repeat
from typing import Dict, Iterable, Iterator, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from .cohort import generate_cohort
from .metrics import trial_curves
from .randomize import METHODS, TrialConfig, make_strategy, randomize_trial


@dataclass
class TrialResult:
    """One replicate trial.

    Attributes:
        cohort: Assigned cohort in enrollment order
        curves: Imbalance and predictability per enrollment count
        arm_counts: Patients per arm, keyed by phase number
    """

    cohort: pd.DataFrame
    curves: pd.DataFrame
    arm_counts: Dict[int, np.ndarray]


@dataclass
class SimulationResult:
    """Averaged curves for one configuration.

    Attributes:
        config: Configuration that produced the run
        curves: Mean of each metric per enrollment count over defined replicates
        defined_counts: Number of replicates contributing to each cell
        n_simulations: Replicates run
        diagnostics: Pooled arm counts and other run details
    """

    config: TrialConfig
    curves: pd.DataFrame
    defined_counts: pd.DataFrame
    n_simulations: int
    diagnostics: Dict = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Observed versus expected arm shares pooled over replicates."""

    summary: pd.DataFrame
    p_values: Dict[int, float]
    is_valid: bool
    warnings: List[str] = field(default_factory=list)


class CurveAccumulator:
    """Running NaN-aware mean of equally shaped curve tables.

    Keeps a sum and a count of defined values per cell, so the order in
    which tables are added does not matter.
    """

    def __init__(self):
        self._sum: Optional[np.ndarray] = None
        self._count: Optional[np.ndarray] = None
        self._index = None
        self._columns = None
        self.n_tables = 0

    def add(self, curves: pd.DataFrame) -> None:
        values = curves.to_numpy(dtype=float)
        defined = ~np.isnan(values)
        if self._sum is None:
            self._sum = np.zeros(values.shape)
            self._count = np.zeros(values.shape, dtype=int)
            self._index = curves.index
            self._columns = curves.columns
        elif values.shape != self._sum.shape or not curves.columns.equals(self._columns):
            raise ValueError("Curve tables must share the same checkpoints and columns.")
        self._sum += np.where(defined, values, 0.0)
        self._count += defined
        self.n_tables += 1

    def mean(self) -> pd.DataFrame:
        if self._sum is None:
            raise RuntimeError("No curve tables were added.")
        safe = np.where(self._count > 0, self._count, 1)
        means = np.where(self._count > 0, self._sum / safe, np.nan)
        return pd.DataFrame(means, index=self._index, columns=self._columns)

    def counts(self) -> pd.DataFrame:
        if self._count is None:
            raise RuntimeError("No curve tables were added.")
        return pd.DataFrame(self._count, index=self._index, columns=self._columns)


def average_curves(tables: Iterable[pd.DataFrame]) -> pd.DataFrame:
    accumulator = CurveAccumulator()
    for table in tables:
        accumulator.add(table)
    return accumulator.mean()


def replicate_rng(seed: int, index: int) -> np.random.Generator:
    """Generator for replicate ``index``.

    Matches child ``index`` of ``SeedSequence(seed).spawn(...)``, so the
    stream depends only on the root seed and the replicate index.
    """
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(index,)))


def run_trial(config: TrialConfig, rng: np.random.Generator) -> TrialResult:
    """Generate, assign and score one replicate trial."""
    cohort = generate_cohort(config.n_patients, config.n_covariates, rng)
    strategy = make_strategy(config, rng)
    randomize_trial(cohort, config, rng, strategy)
    curves = trial_curves(cohort, config, rng)

    treatments = cohort["treatment"].to_numpy(dtype=int)
    arm_counts = {
        phase.number: np.bincount(
            treatments[phase.start:phase.stop], minlength=phase.n_arms
        )
        for phase in config.phases()
    }
    return TrialResult(cohort=cohort, curves=curves, arm_counts=arm_counts)


def _run_replicate(config: TrialConfig, index: int) -> TrialResult:
    return run_trial(config, replicate_rng(config.seed, index))


def _iter_replicates(config: TrialConfig, n_jobs: int) -> Iterator[TrialResult]:
    indices = range(config.sims)
    if n_jobs <= 1:
        for index in indices:
            yield _run_replicate(config, index)
        return
    chunksize = max(1, config.sims // (4 * n_jobs))
    with ProcessPoolExecutor(max_workers=n_jobs) as pool:
        # map yields in replicate order whatever the completion order
        yield from pool.map(_run_replicate, repeat(config), indices, chunksize=chunksize)


def run_simulation(
    config: TrialConfig, verbose: bool = False, n_jobs: int = 1
) -> SimulationResult:
    """Run ``config.sims`` replicate trials and average their curves.

    Args:
        config: Trial design and replicate settings
        verbose: If True, print progress and a short summary
        n_jobs: Worker processes; results do not depend on this value

    Returns:
        SimulationResult with the averaged curve table
    """
    accumulator = CurveAccumulator()
    arm_totals = {
        phase.number: np.zeros(phase.n_arms, dtype=int) for phase in config.phases()
    }
    step = max(1, config.sims // 10)

    if verbose:
        print(
            f"Running {config.sims} replicate trials with {config.method} "
            f"(N={config.n_patients}, J={config.n_covariates}, "
            f"K={config.k_init}+{config.k_new})..."
        )

    for done, result in enumerate(_iter_replicates(config, n_jobs), start=1):
        accumulator.add(result.curves)
        for number, counts in result.arm_counts.items():
            arm_totals[number] += counts
        if verbose and done % step == 0:
            print(f"  Replicate {done}/{config.sims}")

    curves = accumulator.mean()
    if verbose:
        final = curves.iloc[-1]
        print("\nSimulation complete!")
        print(f"Final overall predictability: {final['predictability_overall']:.4f}")
        for col in [c for c in curves.columns if c.startswith("imbalance_")]:
            print(f"Final {col}: {final[col]:.4f}")

    return SimulationResult(
        config=config,
        curves=curves,
        defined_counts=accumulator.counts(),
        n_simulations=accumulator.n_tables,
        diagnostics={"arm_counts": arm_totals},
    )


def compare_methods(
    config: TrialConfig,
    methods: Optional[Iterable[str]] = None,
    verbose: bool = False,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Run the same design under several methods and stack the averaged curves.

    Returns a long table with ``method`` and ``n`` columns followed by the
    metric columns, ready for CSV export or plotting.
    """
    frames = []
    for method in methods or METHODS:
        method_config = replace(config, method=method)
        result = run_simulation(method_config, verbose=verbose, n_jobs=n_jobs)
        frame = result.curves.reset_index()
        frame.insert(0, "method", method)
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)


def check_allocation_shares(
    config: TrialConfig,
    n_simulations: Optional[int] = None,
    tolerance: float = 0.05,
    verbose: bool = False,
) -> ValidationResult:
    """Compare pooled arm shares per phase with the target weights.

    A chi-square goodness-of-fit p-value is reported per phase. Shares that
    deviate from the target by more than ``tolerance`` mark the run invalid
    and raise a ``UserWarning``.
    """
    if n_simulations is not None:
        config = replace(config, sims=n_simulations)
    result = run_simulation(config, verbose=verbose)
    arm_totals = result.diagnostics["arm_counts"]

    records = []
    p_values: Dict[int, float] = {}
    warnings_list: List[str] = []
    for phase in config.phases():
        observed = arm_totals[phase.number]
        total = int(observed.sum())
        if total == 0:
            continue
        expected = phase.probabilities()
        _, p_value = stats.chisquare(f_obs=observed, f_exp=expected * total)
        p_values[phase.number] = float(p_value)
        for arm in range(phase.n_arms):
            share = observed[arm] / total
            deviation = abs(share - expected[arm])
            records.append(
                {
                    "phase": phase.number,
                    "arm": arm,
                    "count": int(observed[arm]),
                    "expected_share": float(expected[arm]),
                    "observed_share": float(share),
                    "deviation": float(deviation),
                }
            )
            if deviation > tolerance:
                message = (
                    f"Phase {phase.number}, arm {arm}: observed share {share:.3f} "
                    f"deviates from expected {expected[arm]:.3f} by more than {tolerance:.0%}"
                )
                warnings_list.append(message)
                warnings.warn(message, UserWarning)

    summary = pd.DataFrame.from_records(
        records,
        columns=["phase", "arm", "count", "expected_share", "observed_share", "deviation"],
    )

    if verbose:
        print("\nAllocation share check:")
        for phase_number, p_value in p_values.items():
            print(f"  Phase {phase_number}: chi-square p-value = {p_value:.4f}")
        for row in summary.itertuples():
            print(
                f"    arm {row.arm}: {row.observed_share:.3f} "
                f"(expected {row.expected_share:.3f})"
            )

    return ValidationResult(
        summary=summary,
        p_values=p_values,
        is_valid=not warnings_list,
        warnings=warnings_list,
    )
