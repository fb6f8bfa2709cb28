"""
Estimated marginal means (EMMs) from a fitted mixed model.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats

from .constants import DEFAULT_CONFIDENCE, GENOTYPE_COL, LEVEL_SEPARATOR, TREATMENT_COL
from .mixed_models import FittedMixedModel

EMM_VALUE_COLUMNS = ["emmean", "se", "df", "ci_low", "ci_high"]


@dataclass
class MarginalMeans:
    """EMM table plus the linear combinations that produced it."""

    by: tuple[str, ...]
    table: pd.DataFrame
    L: np.ndarray
    labels: list[str]

    def index_of(self, label: str) -> int:
        return self.labels.index(label)


def t_quantile(q: float, dfs) -> np.ndarray:
    """Student-t quantile that falls back to the normal for infinite df."""
    dfs = np.asarray(dfs, dtype=float)
    finite = np.isfinite(dfs)
    out = np.full(dfs.shape, stats.norm.ppf(q))
    if finite.any():
        out[finite] = stats.t.ppf(q, dfs[finite])
    return out


def level_label(combo: Sequence[str]) -> str:
    """Join a level combination into a label such as 'Shirley Absent'."""
    return LEVEL_SEPARATOR.join(str(v) for v in combo)


def estimated_marginal_means(
    fitted: FittedMixedModel,
    by: Sequence[str] = (GENOTYPE_COL, TREATMENT_COL),
    confidence: float = DEFAULT_CONFIDENCE,
) -> MarginalMeans:
    """
    Compute EMMs for every observed level combination of ``by``.

    The reference grid is the full product of the levels of all fixed
    factors; grid rows are averaged with equal weights over factors not in
    ``by``. Standard errors come from the fixed-effect covariance at the REML
    variance components, confidence intervals use Satterthwaite df.

    Parameters
    ----------
    fitted : FittedMixedModel
        Fitted model.
    by : Sequence[str], default=("Genotype", "Treatment")
        Two or three fixed factors to report means for.
    confidence : float, default=0.95
        Confidence level of the two-sided interval.

    Returns
    -------
    MarginalMeans
        Table with ``by`` columns followed by emmean, se, df, ci_low, ci_high.

    Raises
    ------
    ValueError
        If ``by`` has the wrong size or names a factor not in the model.
    """
    by = tuple(by)
    if len(by) not in (2, 3):
        raise ValueError(f"EMMs support 2- or 3-way combinations, got {by}")
    factors = list(fitted.design.fixed)
    unknown = [f for f in by if f not in factors]
    if unknown:
        raise ValueError(f"Factors {unknown} are not fixed effects of the model")

    levels = {f: fitted.levels(f) for f in factors}
    grid = pd.DataFrame(list(product(*[levels[f] for f in factors])), columns=factors)
    X = fitted.design_rows(grid)

    observed = set(fitted.data[list(by)].drop_duplicates().itertuples(index=False, name=None))
    combos, rows = [], []
    for combo in product(*[levels[f] for f in by]):
        if combo not in observed:
            continue
        mask = np.logical_and.reduce([grid[f].to_numpy() == v for f, v in zip(by, combo)])
        rows.append(X[mask].mean(axis=0))
        combos.append(combo)

    L = np.vstack(rows)
    est, se, dfs = fitted.contrast_stats(L)
    half = t_quantile(0.5 + confidence / 2.0, dfs) * se

    table = pd.DataFrame(combos, columns=list(by))
    table["emmean"] = est
    table["se"] = se
    table["df"] = dfs
    table["ci_low"] = est - half
    table["ci_high"] = est + half
    return MarginalMeans(by=by, table=table, L=L, labels=[level_label(c) for c in combos])
