from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, field, fields
from fractions import Fraction
from typing import Dict, Literal, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .cohort import covariate_matrix


RandomizationMethod = Literal["SR", "SBR", "SBUD", "Minimization"]
METHODS: Tuple[str, ...] = ("SR", "SBR", "SBUD", "Minimization")

# Share of a phase randomized before minimization kicks in
BURN_IN_FRACTION = 0.1

# Largest block or urn cycle a phase-2 ratio may reduce to for SBR/SBUD
MAX_CYCLE_SIZE = 1000


@dataclass(frozen=True)
class Phase:
    """One enrollment phase, before or after the arm-addition checkpoint.

    ``start`` and ``stop`` are 0-based row positions (``stop`` exclusive).
    """

    number: int
    start: int
    stop: int
    n_arms: int
    weights: Tuple[float, ...]

    @property
    def size(self) -> int:
        return self.stop - self.start

    def probabilities(self) -> np.ndarray:
        weights = np.asarray(self.weights, dtype=float)
        return weights / weights.sum()


@dataclass(frozen=True)
class TrialConfig:
    """Design of one simulated platform trial and its replicate run.

    Attributes:
        n_patients: Total patients enrolled (N)
        n_covariates: Number of binary covariates (J)
        k_init: Experimental arms open from the start
        k_new: Experimental arms added at the checkpoint
        time_add: Fraction of N enrolled before the new arms open
        method: One of ``SR``, ``SBR``, ``SBUD``, ``Minimization``
        block_size: Block size (SBR) or initial urn size (SBUD)
        p: Probability mass given to the minimizing arms
        ratio: Allocation weights for the K + 1 arms after expansion
        use_data: Whether phase-2 minimization keeps phase-1 history
        sims: Number of replicate trials
        seed: Root seed for the replicate random streams
    """

    n_patients: int = 200
    n_covariates: int = 2
    k_init: int = 1
    k_new: int = 1
    time_add: float = 0.5
    method: RandomizationMethod = "SR"
    block_size: int = 4
    p: float = 0.7
    ratio: Optional[Tuple[float, ...]] = None
    use_data: bool = False
    sims: int = 100
    seed: int = 2024

    def __post_init__(self):
        if self.n_patients < 1:
            raise ValueError(f"n_patients must be a positive integer. Got {self.n_patients}.")
        if self.n_covariates < 1:
            raise ValueError(f"n_covariates must be a positive integer. Got {self.n_covariates}.")
        if self.k_init < 1:
            raise ValueError(f"k_init must be at least 1. Got {self.k_init}.")
        if self.k_new < 0:
            raise ValueError(f"k_new cannot be negative. Got {self.k_new}.")
        if not 0 < self.time_add < 1:
            raise ValueError(f"time_add must be between 0 and 1. Got {self.time_add}.")
        if self.method not in METHODS:
            raise ValueError(f"Unsupported randomization method: {self.method}")
        if self.block_size < 1:
            raise ValueError(f"block_size must be positive. Got {self.block_size}.")
        if not 0 < self.p < 1:
            raise ValueError(f"p must be between 0 and 1. Got {self.p}.")
        if self.sims < 1:
            raise ValueError(f"sims must be a positive integer. Got {self.sims}.")

        if self.ratio is None:
            ratio = tuple([1.0] * self.n_arms)
        else:
            ratio = tuple(float(r) for r in self.ratio)
        object.__setattr__(self, "ratio", ratio)
        if len(ratio) != self.n_arms:
            raise ValueError(
                f"ratio must have one weight per arm including control "
                f"({self.n_arms}). Got {len(ratio)}."
            )
        if sum(ratio) <= 0 or any(r <= 0 for r in ratio):
            raise ValueError(f"ratio weights must be positive. Got {list(ratio)}.")

        if self.method in ("SBR", "SBUD"):
            if self.block_size % (self.k_init + 1) != 0:
                raise ValueError(
                    f"block_size ({self.block_size}) must be divisible by the number of "
                    f"initial arms ({self.k_init + 1}) for {self.method}."
                )
            units = allocation_units(ratio)
            if units.sum() > MAX_CYCLE_SIZE:
                raise ValueError(
                    f"ratio {list(ratio)} needs {units.sum()} patients per allocation "
                    f"cycle for {self.method}; at most {MAX_CYCLE_SIZE} are supported."
                )

    @classmethod
    def from_dict(cls, raw: Dict | None) -> "TrialConfig":
        if not raw:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown simulation settings: {', '.join(unknown)}")
        values = dict(raw)
        if values.get("ratio") is not None:
            values["ratio"] = tuple(values["ratio"])
        return cls(**values)

    @property
    def n_arms(self) -> int:
        """Arms after expansion, control included."""
        return self.k_init + self.k_new + 1

    @property
    def n_stage1(self) -> int:
        return math.floor(round(self.n_patients * self.time_add, 9))

    def phases(self) -> Tuple[Phase, Phase]:
        n1 = self.n_stage1
        first = Phase(
            number=1,
            start=0,
            stop=n1,
            n_arms=self.k_init + 1,
            weights=tuple([1.0] * (self.k_init + 1)),
        )
        second = Phase(
            number=2,
            start=n1,
            stop=self.n_patients,
            n_arms=self.n_arms,
            weights=self.ratio,
        )
        return first, second


class Patient(NamedTuple):
    index: int
    stratum: int
    covariates: np.ndarray


# ---------------------------------------------------------------------- #
# Allocation arithmetic
# ---------------------------------------------------------------------- #
def allocation_units(weights: Sequence[float]) -> np.ndarray:
    """Smallest positive integer vector proportional to ``weights``."""
    fractions_ = [Fraction(w).limit_denominator(10_000) for w in weights]
    if any(f <= 0 for f in fractions_):
        raise ValueError(f"Allocation weights must be positive. Got {list(weights)}.")
    denominator = math.lcm(*(f.denominator for f in fractions_))
    scaled = [int(f * denominator) for f in fractions_]
    divisor = math.gcd(*scaled)
    return np.array([s // divisor for s in scaled], dtype=int)


def refill_share(weights: Sequence[float]) -> np.ndarray:
    """Balls per arm returned to an urn on each refill.

    Whole-number weights are the share as given, so ``[2, 2, 4]`` refills
    two, two and four balls. Other weights use their allocation units.
    """
    weights = np.asarray(weights, dtype=float)
    if np.all(weights >= 1) and np.all(weights == np.round(weights)):
        return weights.astype(int)
    return allocation_units(weights)


def block_composition(
    weights: Sequence[float], block_size: int, units: Optional[np.ndarray] = None
) -> np.ndarray:
    """Arm counts for one block: whole ratio cycles covering ``block_size``."""
    if units is None:
        units = allocation_units(weights)
    cycles = max(1, math.ceil(block_size / units.sum()))
    return units * cycles


def imbalance_scores(matching: np.ndarray, weights: Sequence[float]) -> np.ndarray:
    """Minimization score for each candidate arm.

    ``matching`` is the J x A matrix of prior patients sharing the new
    patient's value on each covariate, split by arm. For each candidate the
    patient is added to that arm's column, counts are divided by the arm
    weights, and the per-covariate ranges are averaged.
    """
    matching = np.asarray(matching, dtype=float)
    weights = np.asarray(weights, dtype=float)
    n_arms = matching.shape[1]
    scores = np.empty(n_arms)
    for arm in range(n_arms):
        candidate = matching.copy()
        candidate[:, arm] += 1
        scaled = candidate / weights
        scores[arm] = np.mean(scaled.max(axis=1) - scaled.min(axis=1))
    return scores


def minimization_probabilities(
    scores: Sequence[float], p: float, atol: float = 1e-9
) -> np.ndarray:
    """Assignment probabilities given minimization scores.

    Minimizers split ``p`` evenly and the remaining arms split ``1 - p``.
    When every arm ties the draw is uniform.
    """
    scores = np.asarray(scores, dtype=float)
    n_arms = len(scores)
    minimizers = np.isclose(scores, scores.min(), rtol=0.0, atol=atol)
    n_min = int(minimizers.sum())
    if n_min == n_arms:
        return np.full(n_arms, 1.0 / n_arms)
    return np.where(minimizers, p / n_min, (1.0 - p) / (n_arms - n_min))


def matching_matrix(
    covariates: np.ndarray,
    treatments: np.ndarray,
    x: np.ndarray,
    n_arms: int,
) -> np.ndarray:
    """Full rescan of prior patients matching ``x`` on each covariate, by arm."""
    treatments = np.asarray(treatments, dtype=int)
    covariates = np.asarray(covariates, dtype=int)
    if covariates.ndim == 1:
        covariates = covariates.reshape(-1, 1)
    same = (covariates == np.asarray(x, dtype=int)[None, :]).astype(int)
    onehot = np.eye(n_arms, dtype=int)[treatments]
    return same.T @ onehot


# ---------------------------------------------------------------------- #
# Per-stratum state
# ---------------------------------------------------------------------- #
@dataclass
class BlockState:
    """Shuffled block for one stratum, consumed in enrollment order."""

    composition: np.ndarray
    block: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=int))
    cursor: int = 0
    blocks_used: int = 0

    def next_arm(self, rng: np.random.Generator) -> int:
        if self.cursor >= len(self.block):
            labels = np.repeat(np.arange(len(self.composition)), self.composition)
            self.block = rng.permutation(labels)
            self.cursor = 0
            self.blocks_used += 1
        arm = int(self.block[self.cursor])
        self.cursor += 1
        return arm


@dataclass
class UrnState:
    """Active and inactive ball counts for one stratum."""

    active: np.ndarray
    units: np.ndarray
    inactive: Optional[np.ndarray] = None
    refills: int = 0

    def __post_init__(self):
        self.active = np.array(self.active, dtype=int)
        self.units = np.array(self.units, dtype=int)
        if self.inactive is None:
            self.inactive = np.zeros_like(self.active)

    def draw(self, rng: np.random.Generator) -> int:
        total = self.active.sum()
        if total <= 0:
            raise RuntimeError("Urn has no active balls left to draw.")
        arm = int(rng.choice(len(self.active), p=self.active / total))
        self.active[arm] -= 1
        self.inactive[arm] += 1
        # With unit weights this is "every inactive count is positive"
        if np.all(self.inactive >= self.units):
            self.active += self.units
            self.inactive -= self.units
            self.refills += 1
        return arm


# ---------------------------------------------------------------------- #
# Strategies
# ---------------------------------------------------------------------- #
class AllocationStrategy:
    """Sequential allocation rule shared by all methods.

    ``start_phase`` resets state for a new arm set; ``next_assignment``
    returns the arm of the next patient in enrollment order.
    """

    method: str = ""

    def __init__(self, config: TrialConfig, rng: np.random.Generator):
        self.config = config
        self.rng = rng
        self.phase: Optional[Phase] = None
        self._probabilities: Optional[np.ndarray] = None

    def start_phase(self, phase: Phase, cohort: pd.DataFrame) -> None:
        self.phase = phase
        self._probabilities = phase.probabilities()

    def next_assignment(self, history: np.ndarray, patient: Patient) -> int:
        raise NotImplementedError

    def _weighted_draw(self) -> int:
        return int(self.rng.choice(self.phase.n_arms, p=self._probabilities))


class SimpleRandom(AllocationStrategy):
    method = "SR"

    def next_assignment(self, history: np.ndarray, patient: Patient) -> int:
        return self._weighted_draw()


class StratifiedBlock(AllocationStrategy):
    method = "SBR"

    def start_phase(self, phase: Phase, cohort: pd.DataFrame) -> None:
        super().start_phase(phase, cohort)
        self.composition = block_composition(phase.weights, self.config.block_size)
        if self.composition.sum() != self.config.block_size:
            warnings.warn(
                f"Phase {phase.number} block size raised from {self.config.block_size} "
                f"to {self.composition.sum()} to match the allocation ratio exactly.",
                UserWarning,
            )
        self.states: Dict[int, BlockState] = {}

    def next_assignment(self, history: np.ndarray, patient: Patient) -> int:
        state = self.states.get(patient.stratum)
        if state is None:
            state = self.states[patient.stratum] = BlockState(self.composition)
        return state.next_arm(self.rng)


class StratifiedUrn(AllocationStrategy):
    method = "SBUD"

    def start_phase(self, phase: Phase, cohort: pd.DataFrame) -> None:
        super().start_phase(phase, cohort)
        self.units = refill_share(phase.weights)
        self.initial = block_composition(phase.weights, self.config.block_size, self.units)
        self.states: Dict[int, UrnState] = {}

    def next_assignment(self, history: np.ndarray, patient: Patient) -> int:
        state = self.states.get(patient.stratum)
        if state is None:
            state = self.states[patient.stratum] = UrnState(self.initial, self.units)
        return state.draw(self.rng)


class Minimization(AllocationStrategy):
    """Covariate-adaptive minimization with a random burn-in.

    ``counts[j, v, a]`` holds how many patients in the matching domain had
    covariate j equal to v and went to arm a.
    """

    method = "Minimization"

    def __init__(self, config: TrialConfig, rng: np.random.Generator):
        super().__init__(config, rng)
        self.counts: Optional[np.ndarray] = None
        self.burn_in = 0
        self._assigned = 0

    def start_phase(self, phase: Phase, cohort: pd.DataFrame) -> None:
        previous = self.counts
        super().start_phase(phase, cohort)
        counts = np.zeros((self.config.n_covariates, 2, phase.n_arms), dtype=int)
        if phase.number > 1 and self.config.use_data and previous is not None:
            counts[:, :, : previous.shape[2]] = previous
            self.burn_in = 0
        else:
            self.burn_in = math.ceil(round(BURN_IN_FRACTION * phase.size, 9))
        self.counts = counts
        self._assigned = 0

    def matching(self, x: np.ndarray) -> np.ndarray:
        return self.counts[np.arange(len(x)), x, :]

    def next_assignment(self, history: np.ndarray, patient: Patient) -> int:
        x = np.asarray(patient.covariates, dtype=int)
        if self._assigned < self.burn_in:
            arm = self._weighted_draw()
        else:
            scores = imbalance_scores(self.matching(x), self.phase.weights)
            probs = minimization_probabilities(scores, self.config.p)
            arm = int(self.rng.choice(self.phase.n_arms, p=probs))
        self.counts[np.arange(len(x)), x, arm] += 1
        self._assigned += 1
        return arm


STRATEGIES: Dict[str, type] = {
    cls.method: cls for cls in (SimpleRandom, StratifiedBlock, StratifiedUrn, Minimization)
}


def make_strategy(config: TrialConfig, rng: np.random.Generator) -> AllocationStrategy:
    try:
        strategy_cls = STRATEGIES[config.method]
    except KeyError:
        raise ValueError(f"Unsupported randomization method: {config.method}") from None
    return strategy_cls(config, rng)


# ---------------------------------------------------------------------- #
# Engine entry points
# ---------------------------------------------------------------------- #
def assign(
    cohort: pd.DataFrame,
    phase: Phase,
    strategy: AllocationStrategy,
    treatment_column: str = "treatment",
) -> pd.DataFrame:
    """Assign every patient of ``phase`` in enrollment order.

    The cohort is updated in place and returned. Patients outside the phase
    are left untouched; patients inside it must still be unassigned.
    """
    if phase.stop > len(cohort) or phase.start < 0:
        raise ValueError(
            f"Phase {phase.number} spans rows {phase.start}..{phase.stop} "
            f"but the cohort has {len(cohort)} patients."
        )
    col = cohort.columns.get_loc(treatment_column)
    if cohort.iloc[phase.start:phase.stop, col].notna().any():
        raise RuntimeError(f"Phase {phase.number} already has assigned patients.")

    covariates = covariate_matrix(cohort)
    strata = cohort["stratum"].to_numpy(dtype=int)
    history = cohort[treatment_column].to_numpy(dtype=int, na_value=-1)

    strategy.start_phase(phase, cohort)
    for i in range(phase.start, phase.stop):
        patient = Patient(index=i, stratum=int(strata[i]), covariates=covariates[i])
        arm = strategy.next_assignment(history[:i], patient)
        if not 0 <= arm < phase.n_arms:
            raise RuntimeError(
                f"{strategy.method} produced arm {arm} outside 0..{phase.n_arms - 1}."
            )
        history[i] = arm

    cohort.iloc[phase.start:phase.stop, col] = history[phase.start:phase.stop]
    return cohort


def randomize_trial(
    cohort: pd.DataFrame,
    config: TrialConfig,
    rng: np.random.Generator,
    strategy: Optional[AllocationStrategy] = None,
) -> pd.DataFrame:
    """Run both enrollment phases with one strategy instance."""
    strategy = strategy or make_strategy(config, rng)
    for phase in config.phases():
        assign(cohort, phase, strategy)
    return cohort
