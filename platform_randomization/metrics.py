"""
Per-trial scoring of an allocation sequence: covariate imbalance against
control and predictability under an optimal guessing rule.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from .cohort import covariate_matrix
from .randomize import Phase, TrialConfig


def _checkpoint_index(n: int) -> pd.RangeIndex:
    return pd.RangeIndex(1, n + 1, name="n")


def imbalance_curves(cohort: pd.DataFrame, n_arms: int) -> pd.DataFrame:
    """Maximum covariate imbalance of each experimental arm versus control.

    For every enrollment count n and arm k >= 1 the value is
    ``max_j |P(x_j = 1 | arm k) - P(x_j = 1 | arm 0)|`` over the first n
    patients. It is NaN while arm k or the control arm is still empty.
    """
    treatments = cohort["treatment"].to_numpy(dtype=int, na_value=-1)
    if (treatments < 0).any():
        raise ValueError("Imbalance needs a fully assigned cohort.")
    if treatments.max(initial=0) >= n_arms:
        raise ValueError(f"Cohort contains arms outside 0..{n_arms - 1}.")

    covariates = covariate_matrix(cohort).astype(float)
    onehot = np.eye(n_arms)[treatments]
    counts = np.cumsum(onehot, axis=0)
    sums = np.cumsum(onehot[:, :, None] * covariates[:, None, :], axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        shares = sums / counts[:, :, None]

    gaps = np.abs(shares[:, 1:, :] - shares[:, :1, :])
    # An empty arm leaves every covariate NaN, so the max stays NaN
    imbalance = gaps.max(axis=2)
    columns = [f"imbalance_arm_{k}" for k in range(1, n_arms)]
    return pd.DataFrame(imbalance, index=_checkpoint_index(len(cohort)), columns=columns)


def optimal_guess(
    counts: np.ndarray, weights: Sequence[float], rng: np.random.Generator
) -> int:
    """Guess the arm that is furthest behind its target share.

    Ties are broken uniformly at random.
    """
    load = np.asarray(counts, dtype=float) / np.asarray(weights, dtype=float)
    candidates = np.flatnonzero(np.isclose(load, load.min(), rtol=0.0, atol=1e-9))
    if len(candidates) == 1:
        return int(candidates[0])
    return int(rng.choice(candidates))


def predictability_curves(
    treatments: Sequence[int],
    phases: Sequence[Phase],
    rng: np.random.Generator,
) -> pd.DataFrame:
    """Cumulative hit rate of the optimal guesser.

    Counts restart at each phase, so phase-2 guesses only see phase-2
    patients. ``predictability_stage1`` is defined up to the checkpoint,
    ``predictability_stage2`` after it, and ``predictability_overall``
    everywhere.
    """
    treatments = np.asarray(treatments, dtype=int)
    n = len(treatments)
    hits = np.zeros(n, dtype=float)
    stage = np.zeros(n, dtype=int)

    for phase in phases:
        counts = np.zeros(phase.n_arms)
        for i in range(phase.start, phase.stop):
            arm = treatments[i]
            if not 0 <= arm < phase.n_arms:
                raise ValueError(
                    f"Patient {i + 1} has arm {arm}, not open in phase {phase.number}."
                )
            hits[i] = optimal_guess(counts, phase.weights, rng) == arm
            counts[arm] += 1
            stage[i] = phase.number

    enrolled = np.arange(1, n + 1)
    curves = {}
    for number in (1, 2):
        in_stage = stage == number
        stage_hits = np.cumsum(np.where(in_stage, hits, 0.0))
        stage_n = np.cumsum(in_stage)
        curve = np.full(n, np.nan)
        curve[in_stage] = stage_hits[in_stage] / stage_n[in_stage]
        curves[f"predictability_stage{number}"] = curve
    curves["predictability_overall"] = np.cumsum(hits) / enrolled
    return pd.DataFrame(curves, index=_checkpoint_index(n))


def trial_curves(
    cohort: pd.DataFrame, config: TrialConfig, rng: np.random.Generator
) -> pd.DataFrame:
    """Imbalance and predictability curves of one assigned trial."""
    imbalance = imbalance_curves(cohort, config.n_arms)
    treatments = cohort["treatment"].to_numpy(dtype=int)
    predictability = predictability_curves(treatments, config.phases(), rng)
    return pd.concat([imbalance, predictability], axis=1)
