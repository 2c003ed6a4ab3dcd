"""
Example: Compare allocation methods for a platform trial

Simulates a trial that opens with one experimental arm and adds a second
halfway through enrollment, then compares how balanced and how guessable
each allocation method is.
"""

from platform_randomization import TrialConfig, check_allocation_shares, compare_methods
from platform_randomization.visualize import plot_imbalance, plot_predictability, save_figures


def main():
    config = TrialConfig(
        n_patients=200,
        n_covariates=3,
        k_init=1,
        k_new=1,
        time_add=0.5,
        block_size=4,
        p=0.8,
        ratio=(2, 1, 1),
        sims=200,
        seed=44821,
    )

    print("Checking allocation shares under simple randomization...")
    validation = check_allocation_shares(config, n_simulations=100, verbose=True)
    print(f"Valid: {'✓ Yes' if validation.is_valid else '✗ No'}")

    print("\nComparing methods...")
    comparison = compare_methods(config, verbose=True, n_jobs=4)
    comparison.to_csv("method_comparison.csv", index=False)

    final = comparison.groupby("method").tail(1).set_index("method")
    print("\n" + "=" * 60)
    print("FINAL CHECKPOINT")
    print("=" * 60)
    print(final.drop(columns="n").round(3).to_string())

    paths = save_figures(
        {
            "imbalance": plot_imbalance(comparison, checkpoint=config.n_stage1),
            "predictability": plot_predictability(comparison, checkpoint=config.n_stage1),
        },
        "plots",
    )
    for name, path in paths.items():
        print(f"{name}: {path}")


if __name__ == "__main__":
    main()
