"""
Visualization utilities for marginal-mean interaction plots.
"""

from __future__ import annotations

from typing import Optional

import pandas as pd
import plotly.graph_objects as go

from .constants import (
    GENOTYPE_COL,
    INTERACTION_PLOT_HEIGHT,
    INTERACTION_PLOT_WIDTH,
    TREATMENT_COL,
)


def apply_paper_layout(
    fig: go.Figure,
    title: str,
    x_title: str,
    y_title: str,
    height: int = INTERACTION_PLOT_HEIGHT,
    width: int = INTERACTION_PLOT_WIDTH,
) -> go.Figure:
    """
    Apply consistent publication-ready styling to a Plotly figure.

    Parameters
    ----------
    fig : go.Figure
        Input Plotly figure.
    title : str
        Plot title.
    x_title : str
        X-axis title.
    y_title : str
        Y-axis title.
    height : int, default=560
        Figure height in pixels.
    width : int, default=900
        Figure width in pixels.

    Returns
    -------
    go.Figure
        Styled figure.
    """
    fig.update_layout(
        template="simple_white",
        title=dict(text=title, x=0.5, xanchor="center", font=dict(size=18)),
        font=dict(size=14),
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="left", x=0.0),
        margin=dict(l=70, r=30, t=85, b=70),
        height=height,
        width=width,
    )
    axis_style = dict(showline=True, linewidth=1, linecolor="black", mirror=True, ticks="outside")
    fig.update_xaxes(title=x_title, **axis_style)
    fig.update_yaxes(title=y_title, **axis_style)
    return fig


def interaction_plot(
    emm_table: pd.DataFrame,
    title: str,
    x: str = GENOTYPE_COL,
    trace: str = TREATMENT_COL,
    y: str = "emmean",
    y_title: Optional[str] = None,
    letters: Optional[str] = "group",
) -> go.Figure:
    """
    Genotype × treatment interaction plot of estimated marginal means.

    One line per ``trace`` level with confidence-interval error bars taken
    from ``ci_low``/``ci_high`` when present. CLD letters, if the table
    carries them, are shown as marker text.

    Parameters
    ----------
    emm_table : pd.DataFrame
        EMM table (one row per level combination).
    title : str
        Plot title.
    x, trace : str
        Factor on the x axis and factor drawn as separate lines.
    y : str, default="emmean"
        Value column to plot.
    y_title : Optional[str]
        Y-axis label, defaults to ``y``.
    letters : Optional[str], default="group"
        Column holding compact letters; ignored if absent.

    Returns
    -------
    go.Figure
        Styled figure.
    """
    fig = go.Figure()
    has_ci = {"ci_low", "ci_high"} <= set(emm_table.columns) and y == "emmean"
    show_letters = letters is not None and letters in emm_table.columns

    for level, sub in emm_table.groupby(trace, sort=True):
        sub = sub.sort_values(x)
        error_y = None
        if has_ci:
            error_y = dict(
                type="data",
                symmetric=False,
                array=(sub["ci_high"] - sub[y]).to_numpy(),
                arrayminus=(sub[y] - sub["ci_low"]).to_numpy(),
            )
        fig.add_trace(
            go.Scatter(
                x=sub[x].astype(str),
                y=sub[y],
                mode="lines+markers+text" if show_letters else "lines+markers",
                text=sub[letters] if show_letters else None,
                textposition="top center",
                name=str(level),
                error_y=error_y,
            )
        )

    return apply_paper_layout(fig, title=title, x_title=x, y_title=y_title or y)
