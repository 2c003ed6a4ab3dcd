from __future__ import annotations

from typing import List

import numpy as np
import pandas as pd


def covariate_columns(n_covariates: int) -> List[str]:
    return [f"x{j}" for j in range(1, n_covariates + 1)]


def compute_strata(covariates: np.ndarray) -> np.ndarray:
    """Stratum id for each row of a binary covariate matrix.

    The id is ``1 + sum_j x_j * 2**(j-1)``, so J covariates give strata
    numbered 1..2**J.
    """
    covariates = np.asarray(covariates, dtype=int)
    if covariates.ndim == 1:
        covariates = covariates.reshape(-1, 1)
    powers = 2 ** np.arange(covariates.shape[1])
    return 1 + covariates @ powers


def generate_cohort(
    n_patients: int,
    n_covariates: int,
    rng: np.random.Generator,
    prevalence: float = 0.5,
) -> pd.DataFrame:
    """Create a synthetic cohort in enrollment order.

    Args:
        n_patients: Number of patients (rows)
        n_covariates: Number of independent binary covariates
        rng: Generator for the covariate draws
        prevalence: Probability that each covariate equals 1

    Returns:
        DataFrame with ``patient``, ``x1..xJ``, ``stratum`` and an
        unassigned nullable ``treatment`` column
    """
    if n_patients <= 0 or n_covariates <= 0:
        raise ValueError("Cohort needs a positive number of patients and covariates.")
    if not 0 <= prevalence <= 1:
        raise ValueError(f"Prevalence must be in [0, 1]. Got {prevalence}.")

    covariates = (rng.random((n_patients, n_covariates)) < prevalence).astype(int)
    cohort = pd.DataFrame(covariates, columns=covariate_columns(n_covariates))
    cohort.insert(0, "patient", np.arange(1, n_patients + 1))
    cohort["stratum"] = compute_strata(covariates)
    cohort["treatment"] = pd.array([pd.NA] * n_patients, dtype="Int64")
    return cohort


def covariate_matrix(cohort: pd.DataFrame) -> np.ndarray:
    cols = [c for c in cohort.columns if c.startswith("x") and c[1:].isdigit()]
    cols.sort(key=lambda c: int(c[1:]))
    return cohort[cols].to_numpy(dtype=int)
