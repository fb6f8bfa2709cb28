"""
ANOVA decomposition of a fitted mixed model.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from .mixed_models import FittedMixedModel

ANOVA_COLUMNS = ["effect", "sum_sq", "mean_sq", "num_df", "den_df", "F", "p_value"]


def mixed_anova(fitted: FittedMixedModel) -> pd.DataFrame:
    """
    Type III F tests for each fixed effect with Satterthwaite denominator df.

    Effects follow the model formula order (main effects, then two-way, then
    three-way interactions). Sum-to-zero coding makes each test the joint
    Wald test of that term's coefficients. No refitting is done.

    Parameters
    ----------
    fitted : FittedMixedModel
        Result of :func:`fit_mixed_model`.

    Returns
    -------
    pd.DataFrame
        One row per effect with columns: effect, sum_sq, mean_sq, num_df,
        den_df, F, p_value.
    """
    p = len(fitted.beta)
    rows = []
    for effect, slc in fitted.term_slices().items():
        idx = np.arange(p)[slc]
        L = np.zeros((len(idx), p))
        L[np.arange(len(idx)), idx] = 1.0
        f_value, num_df, den_df, p_value = fitted.wald_f(L)
        mean_sq = f_value * fitted.var_resid
        rows.append({
            "effect": effect,
            "sum_sq": mean_sq * num_df,
            "mean_sq": mean_sq,
            "num_df": num_df,
            "den_df": den_df,
            "F": f_value,
            "p_value": p_value,
        })
    return pd.DataFrame(rows, columns=ANOVA_COLUMNS)
