"""
Pairwise contrasts between estimated marginal means.
"""

from __future__ import annotations

import logging
from itertools import combinations
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .constants import (
    ABSENT_LEVEL,
    ADJUST_METHODS,
    CONTRAST_GENOTYPES,
    CONTRAST_SEPARATOR,
    DEFAULT_ADJUST,
    MAX_TUKEY_DF,
    PRESENT_LEVEL,
)
from .exceptions import UnknownContrastLevelError
from .marginal_means import MarginalMeans, level_label
from .mixed_models import FittedMixedModel

logger = logging.getLogger(__name__)

CONTRAST_COLUMNS = ["contrast", "group_a", "group_b", "estimate", "se", "df", "t_ratio", "p_value"]


def _two_sided_p(t_ratio: np.ndarray, dfs: np.ndarray) -> np.ndarray:
    t_abs = np.abs(t_ratio)
    p = 2.0 * stats.norm.sf(t_abs)
    finite = np.isfinite(dfs)
    p[finite] = 2.0 * stats.t.sf(t_abs[finite], dfs[finite])
    return p


def adjust_pvalues(
    t_ratio: np.ndarray,
    dfs: np.ndarray,
    n_means: int,
    adjust: str = DEFAULT_ADJUST,
) -> np.ndarray:
    """
    P-values for a family of pairwise comparisons among ``n_means`` means.

    Parameters
    ----------
    t_ratio : np.ndarray
        t statistics of every pair in the family.
    dfs : np.ndarray
        Degrees of freedom per pair.
    n_means : int
        Number of means compared (Tukey family size).
    adjust : str, default="tukey"
        One of "tukey", "bonferroni", "holm", "none".

    Returns
    -------
    np.ndarray
        Adjusted two-sided p-values.
    """
    if adjust not in ADJUST_METHODS:
        raise ValueError(f"Unknown p-value adjustment '{adjust}'. Use one of {ADJUST_METHODS}")
    t_ratio = np.asarray(t_ratio, dtype=float)
    dfs = np.asarray(dfs, dtype=float)
    if t_ratio.size == 0:
        return t_ratio.copy()

    raw = _two_sided_p(t_ratio, dfs)
    if adjust == "none" or len(t_ratio) == 1:
        return raw
    if adjust == "tukey":
        q = np.abs(t_ratio) * np.sqrt(2.0)
        tukey_df = np.minimum(np.where(np.isfinite(dfs), dfs, MAX_TUKEY_DF), MAX_TUKEY_DF)
        p = stats.studentized_range.sf(q, n_means, tukey_df)
        return np.clip(p, 0.0, 1.0)
    ok = np.isfinite(raw)
    out = np.full(raw.shape, np.nan)
    if ok.any():
        out[ok] = multipletests(raw[ok], method=adjust)[1]
    return out


def pairwise_contrasts(
    fitted: FittedMixedModel,
    emm: MarginalMeans,
    adjust: str = DEFAULT_ADJUST,
) -> pd.DataFrame:
    """
    All pairwise differences ``A - B`` between EMM level combinations.

    Pairs follow the EMM row order (A precedes B). Standard errors and
    Satterthwaite df come from the fitted model, so they account for both
    the random-intercept and residual variance.

    Returns
    -------
    pd.DataFrame
        Columns: contrast, group_a, group_b, estimate, se, df, t_ratio, p_value.
    """
    pairs = list(combinations(range(len(emm.labels)), 2))
    if not pairs:
        return pd.DataFrame(columns=CONTRAST_COLUMNS)

    L = np.vstack([emm.L[i] - emm.L[j] for i, j in pairs])
    est, se, dfs = fitted.contrast_stats(L)
    with np.errstate(divide="ignore", invalid="ignore"):
        t_ratio = est / se
    p_value = adjust_pvalues(t_ratio, dfs, len(emm.labels), adjust=adjust)

    rows = []
    for k, (i, j) in enumerate(pairs):
        a, b = emm.labels[i], emm.labels[j]
        rows.append({
            "contrast": f"{a}{CONTRAST_SEPARATOR}{b}",
            "group_a": a,
            "group_b": b,
            "estimate": est[k],
            "se": se[k],
            "df": dfs[k],
            "t_ratio": t_ratio[k],
            "p_value": p_value[k],
        })
    return pd.DataFrame(rows, columns=CONTRAST_COLUMNS)


def absent_present_levels(genotype: str) -> tuple[str, str]:
    """Literal level labels contrasted for one genotype."""
    return level_label([genotype, ABSENT_LEVEL]), level_label([genotype, PRESENT_LEVEL])


def _lookup_pair(pairs: pd.DataFrame, labels: list[str], a: str, b: str) -> dict:
    for level in (a, b):
        if level not in labels:
            raise UnknownContrastLevelError(level)

    hit = pairs[(pairs["group_a"] == a) & (pairs["group_b"] == b)]
    if not hit.empty:
        return hit.iloc[0].to_dict()

    flipped = pairs[(pairs["group_a"] == b) & (pairs["group_b"] == a)].iloc[0].to_dict()
    flipped.update({
        "contrast": f"{a}{CONTRAST_SEPARATOR}{b}",
        "group_a": a,
        "group_b": b,
        "estimate": -flipped["estimate"],
        "t_ratio": -flipped["t_ratio"],
    })
    return flipped


def absent_present_contrasts(
    fitted: FittedMixedModel,
    emm: MarginalMeans,
    genotypes: Sequence[str] = CONTRAST_GENOTYPES,
    adjust: str = DEFAULT_ADJUST,
    pairs: Optional[pd.DataFrame] = None,
    context: str = "",
) -> pd.DataFrame:
    """
    "<genotype> Absent - <genotype> Present" contrasts for the listed genotypes.

    All pairwise contrasts are computed first so the multiplicity adjustment
    covers the whole family, then only the requested pairs are kept.
    Genotypes that are not among the fitted levels are dropped and logged.

    Parameters
    ----------
    fitted : FittedMixedModel
        Fitted model.
    emm : MarginalMeans
        EMMs at a Genotype×Treatment marginalization.
    genotypes : Sequence[str]
        Literal genotype names (case and spacing sensitive).
    adjust : str, default="tukey"
        P-value adjustment over the full pairwise family.
    pairs : Optional[pd.DataFrame]
        Precomputed output of :func:`pairwise_contrasts`.
    context : str
        Trait/environment description used in log messages.

    Returns
    -------
    pd.DataFrame
        At most one row per genotype, in the order given.
    """
    if pairs is None:
        pairs = pairwise_contrasts(fitted, emm, adjust=adjust)

    rows = []
    for genotype in genotypes:
        a, b = absent_present_levels(genotype)
        try:
            rows.append(_lookup_pair(pairs, emm.labels, a, b))
        except UnknownContrastLevelError as exc:
            logger.info("Skipping contrast for genotype '%s'%s: %s", genotype, context, exc)
    return pd.DataFrame(rows, columns=CONTRAST_COLUMNS)
