"""
Comparison plots for averaged imbalance and predictability curves
"""
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots


METHOD_COLORS = {
    "SR": "#1f77b4",
    "SBR": "#ff7f0e",
    "SBUD": "#2ca02c",
    "Minimization": "#d62728",
}


def _metric_figure(
    comparison: pd.DataFrame,
    columns: List[str],
    subplot_titles: List[str],
    title: str,
    yaxis_title: str,
    checkpoint: Optional[int] = None,
) -> go.Figure:
    fig = make_subplots(rows=1, cols=len(columns), subplot_titles=subplot_titles)
    for col_idx, column in enumerate(columns, start=1):
        for method, group in comparison.groupby("method", sort=False):
            fig.add_trace(
                go.Scatter(
                    x=group["n"],
                    y=group[column],
                    mode="lines",
                    name=method,
                    legendgroup=method,
                    showlegend=col_idx == 1,
                    line=dict(color=METHOD_COLORS.get(method)),
                ),
                row=1,
                col=col_idx,
            )
        if checkpoint:
            fig.add_vline(
                x=checkpoint, line_dash="dash", line_color="gray", opacity=0.5,
                row=1, col=col_idx,
            )
        fig.update_xaxes(title_text="Patients enrolled", row=1, col=col_idx)

    fig.update_yaxes(title_text=yaxis_title, row=1, col=1)
    fig.update_layout(
        title=title,
        height=400,
        width=max(500, 420 * len(columns)),
        template="plotly_white",
        hovermode="x unified",
    )
    return fig


def plot_imbalance(comparison: pd.DataFrame, checkpoint: Optional[int] = None) -> go.Figure:
    """
    Line plot of averaged maximum covariate imbalance per experimental arm

    Args:
        comparison: Long table from ``compare_methods`` (method, n, metrics)
        checkpoint: Enrollment count at which new arms open, drawn as a guide

    Returns:
        Plotly figure with one panel per experimental arm
    """
    columns = [c for c in comparison.columns if c.startswith("imbalance_arm_")]
    titles = [f"Arm {c.rsplit('_', 1)[-1]} vs control" for c in columns]
    return _metric_figure(
        comparison, columns, titles,
        title="Covariate imbalance", yaxis_title="Max |difference in proportion|",
        checkpoint=checkpoint,
    )


def plot_predictability(comparison: pd.DataFrame, checkpoint: Optional[int] = None) -> go.Figure:
    """Line plot of averaged guessing accuracy for each stage and overall."""
    columns = ["predictability_stage1", "predictability_stage2", "predictability_overall"]
    titles = ["Stage 1", "Stage 2", "Overall"]
    return _metric_figure(
        comparison, columns, titles,
        title="Predictability", yaxis_title="Correct guess rate",
        checkpoint=checkpoint,
    )


def save_figures(figures: Dict[str, go.Figure], output_dir: Path) -> Dict[str, Path]:
    """Write each figure as a standalone HTML file named after its key."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = {}
    for name, fig in figures.items():
        path = output_dir / f"{name}.html"
        fig.write_html(str(path), include_plotlyjs="cdn")
        paths[name] = path
    return paths
