from .cohort import compute_strata, generate_cohort
from .metrics import imbalance_curves, predictability_curves, trial_curves
from .randomize import (
    METHODS,
    AllocationStrategy,
    Minimization,
    Phase,
    SimpleRandom,
    StratifiedBlock,
    StratifiedUrn,
    TrialConfig,
    assign,
    make_strategy,
    randomize_trial,
)
from .simulate import (
    CurveAccumulator,
    SimulationResult,
    TrialResult,
    ValidationResult,
    check_allocation_shares,
    compare_methods,
    run_simulation,
    run_trial,
)

__all__ = [
    "METHODS",
    "AllocationStrategy",
    "CurveAccumulator",
    "Minimization",
    "Phase",
    "SimpleRandom",
    "SimulationResult",
    "StratifiedBlock",
    "StratifiedUrn",
    "TrialConfig",
    "TrialResult",
    "ValidationResult",
    "assign",
    "check_allocation_shares",
    "compare_methods",
    "compute_strata",
    "generate_cohort",
    "imbalance_curves",
    "make_strategy",
    "predictability_curves",
    "randomize_trial",
    "run_simulation",
    "run_trial",
    "trial_curves",
]
__version__ = "0.1.0"
