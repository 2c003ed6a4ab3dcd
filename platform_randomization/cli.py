from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from .randomize import TrialConfig
from .simulate import check_allocation_shares, compare_methods, run_simulation
from .visualize import plot_imbalance, plot_predictability, save_figures

app = typer.Typer(help="Platform trial randomization simulator")

DEFAULT_CONFIG = Path(__file__).parent / "config" / "default.yaml"


def _expand_env(value):
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    return _expand_env(raw or {})


def build_trial_config(
    cfg: dict,
    method: Optional[str] = None,
    sims: Optional[int] = None,
    seed: Optional[int] = None,
) -> TrialConfig:
    settings = dict(cfg or {})
    overrides = {"method": method, "sims": sims, "seed": seed}
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return TrialConfig.from_dict(settings)


def _load_trial_config(
    config_path: Path, method: Optional[str], sims: Optional[int], seed: Optional[int]
) -> tuple[TrialConfig, dict]:
    app_config = load_config(str(config_path))
    try:
        trial_cfg = build_trial_config(app_config.get("simulation", {}), method, sims, seed)
    except (TypeError, ValueError) as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=1)
    return trial_cfg, app_config


@app.command()
def simulate(
    config_path: Path = typer.Option(DEFAULT_CONFIG, exists=True, help="Simulation config (YAML)."),
    output: Optional[Path] = typer.Option(None, help="Output CSV for the averaged curves."),
    method: Optional[str] = typer.Option(None, help="Override the configured method."),
    sims: Optional[int] = typer.Option(None, help="Override the replicate count."),
    seed: Optional[int] = typer.Option(None, help="Override the root seed."),
    jobs: int = typer.Option(1, help="Worker processes for the replicate loop."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run one configuration and save its averaged curves."""
    trial_cfg, app_config = _load_trial_config(config_path, method, sims, seed)
    output = output or Path(app_config.get("output", {}).get("csv", "curves.csv"))
    result = run_simulation(trial_cfg, verbose=verbose, n_jobs=jobs)
    output.parent.mkdir(parents=True, exist_ok=True)
    result.curves.to_csv(output)
    typer.echo(f"Saved {trial_cfg.method} curves ({result.n_simulations} replicates) to {output}")


@app.command()
def compare(
    config_path: Path = typer.Option(DEFAULT_CONFIG, exists=True, help="Simulation config (YAML)."),
    output: Optional[Path] = typer.Option(None, help="Output CSV for the comparison table."),
    methods: Optional[List[str]] = typer.Option(None, "--method", help="Methods to compare (repeatable)."),
    plots: Optional[Path] = typer.Option(
        None, help="Directory for HTML comparison plots (defaults to output.html)."
    ),
    sims: Optional[int] = typer.Option(None, help="Override the replicate count."),
    seed: Optional[int] = typer.Option(None, help="Override the root seed."),
    jobs: int = typer.Option(1, help="Worker processes for the replicate loop."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run every method on the same design and save the stacked curves."""
    trial_cfg, app_config = _load_trial_config(config_path, None, sims, seed)
    output_cfg = app_config.get("output", {})
    output = output or Path(output_cfg.get("csv", "curves.csv"))
    plots = plots or (Path(output_cfg["html"]) if output_cfg.get("html") else None)
    try:
        comparison = compare_methods(trial_cfg, methods=methods, verbose=verbose, n_jobs=jobs)
    except ValueError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=1)
    output.parent.mkdir(parents=True, exist_ok=True)
    comparison.to_csv(output, index=False)
    typer.echo(f"Saved comparison of {comparison['method'].nunique()} methods to {output}")

    if plots:
        checkpoint = trial_cfg.n_stage1
        figures = {
            "imbalance": plot_imbalance(comparison, checkpoint=checkpoint),
            "predictability": plot_predictability(comparison, checkpoint=checkpoint),
        }
        for kind, path in save_figures(figures, plots).items():
            typer.echo(f"{kind.capitalize()} plot: {path}")


@app.command()
def validate(
    config_path: Path = typer.Option(DEFAULT_CONFIG, exists=True, help="Simulation config (YAML)."),
    method: Optional[str] = typer.Option(None, help="Override the configured method."),
    sims: Optional[int] = typer.Option(None, help="Override the replicate count."),
    seed: Optional[int] = typer.Option(None, help="Override the root seed."),
) -> None:
    """Check pooled arm shares against the target allocation."""
    trial_cfg, _ = _load_trial_config(config_path, method, sims, seed)
    result = check_allocation_shares(trial_cfg)
    typer.echo(result.summary.to_string(index=False))
    for phase_number, p_value in result.p_values.items():
        typer.echo(f"Phase {phase_number} chi-square p-value: {p_value:.4f}")
    if not result.is_valid:
        for message in result.warnings:
            typer.echo(f"  - {message}", err=True)
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()
