"""
Linear mixed-model fitting for split-plot and multi-environment trials.

Variance components come from statsmodels ``MixedLM`` (REML). Fixed effects
are then solved by generalized least squares on a quasi-demeaned design, and
the fixed-effect covariance ``C = (X'V⁻¹X)⁻¹``, its derivatives with respect
to the variance parameters and the asymptotic covariance of those parameters
are cached so that Wald tests, marginal means and contrasts can use
Satterthwaite denominator degrees of freedom.
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import linalg, stats

from .constants import (
    DEFAULT_FIT_METHODS,
    DEFAULT_MAXITER,
    EIGEN_TOLERANCE,
    ENV_REP_COL,
    ENVIRONMENT_COL,
    EXACT_FIT_TOLERANCE,
    GENOTYPE_COL,
    MIN_RANDOM_GROUPS,
    RANK_TOLERANCE,
    REP_COL,
    RESID_VAR_FLOOR,
    TREATMENT_COL,
)
from .exceptions import NoObservationsError, SingularFitError

logger = logging.getLogger(__name__)


def _extract_factor_names_from_term(term: str) -> list[str]:
    """Extract factor names from a patsy term (e.g., 'C(Genotype, Sum)' -> 'Genotype')."""
    return re.findall(r"C\(([^,)]+)", str(term))


@dataclass(frozen=True)
class ModelDesign:
    """
    Fixed-effects factors and random grouping of a mixed model.

    ``fixed`` is crossed fully (all main effects and interactions, in order);
    ``groups`` columns are pasted together into a single random-intercept key.
    """

    name: str
    fixed: tuple[str, ...]
    groups: tuple[str, ...]

    @property
    def formula_rhs(self) -> str:
        return " * ".join(f"C({f}, Sum)" for f in self.fixed)

    @property
    def group_label(self) -> str:
        return ENV_REP_COL if len(self.groups) > 1 else self.groups[0]

    def group_key(self, df: pd.DataFrame) -> pd.Series:
        key = df[self.groups[0]].astype(str)
        for col in self.groups[1:]:
            key = key + ":" + df[col].astype(str)
        return key.rename(self.group_label)


SINGLE_ENVIRONMENT = ModelDesign(
    name="single-environment",
    fixed=(GENOTYPE_COL, TREATMENT_COL),
    groups=(REP_COL,),
)

MULTI_ENVIRONMENT = ModelDesign(
    name="multi-environment",
    fixed=(GENOTYPE_COL, TREATMENT_COL, ENVIRONMENT_COL),
    groups=(ENVIRONMENT_COL, REP_COL),
)


@dataclass
class FittedMixedModel:
    """
    Fitted random-intercept model plus the state needed for inference.

    Attributes
    ----------
    design : ModelDesign
        Model shape that was fitted.
    response : str
        Response column name.
    data : pd.DataFrame
        Model frame actually used (factors as strings, no missing values).
    design_info : patsy.DesignInfo
        Fixed-effects design description, used to build reference grids.
    beta : np.ndarray
        Generalized least squares fixed-effect estimates.
    cov_beta : np.ndarray
        ``(X'V⁻¹X)⁻¹`` at the REML variance estimates.
    cov_beta_grad : list[np.ndarray]
        Derivatives of ``cov_beta`` with respect to (σ²_group, σ²_residual).
    vcov_varpar : np.ndarray
        Asymptotic covariance of (σ²_group, σ²_residual).
    var_group, var_resid : float
        Random-intercept and residual variance components.
    fitted_values : np.ndarray
        ``Xβ`` plus the predicted random intercept of each row.
    exact_fit : bool
        True when the model reproduced the data exactly and ``var_resid``
        was floored.
    """

    design: ModelDesign
    response: str
    data: pd.DataFrame
    design_info: Any
    beta: np.ndarray
    cov_beta: np.ndarray
    cov_beta_grad: list[np.ndarray]
    vcov_varpar: np.ndarray
    var_group: float
    var_resid: float
    fitted_values: np.ndarray = field(default_factory=lambda: np.array([]), repr=False)
    exact_fit: bool = False
    llf: float = np.nan
    converged: bool = True
    result: Any = field(default=None, repr=False)

    @property
    def column_names(self) -> list[str]:
        return list(self.design_info.column_names)

    @property
    def variance_components(self) -> dict[str, float]:
        return {self.design.group_label: self.var_group, "Residual": self.var_resid}

    def levels(self, factor: str) -> list[str]:
        """Sorted levels of a fixed factor as seen in the fitted data."""
        return sorted(self.data[factor].astype(str).unique().tolist())

    def term_slices(self) -> dict[str, slice]:
        """Map display effect names (e.g. 'Genotype:Treatment') to beta columns."""
        out: dict[str, slice] = {}
        for term, slc in self.design_info.term_name_slices.items():
            names = _extract_factor_names_from_term(term)
            if not names:
                continue
            out[":".join(names)] = slc
        return out

    def design_rows(self, grid: pd.DataFrame) -> np.ndarray:
        """Fixed-effect design rows for new level combinations."""
        grid = grid.astype(str)
        (mat,) = patsy.build_design_matrices([self.design_info], grid)
        return np.asarray(mat, dtype=float)

    def contrast_df(self, l: np.ndarray) -> float:
        """Satterthwaite degrees of freedom for one linear combination ``l'β``."""
        l = np.asarray(l, dtype=float).ravel()
        var = float(l @ self.cov_beta @ l)
        grad = np.array([float(l @ g @ l) for g in self.cov_beta_grad])
        denom = float(grad @ self.vcov_varpar @ grad)
        if not np.isfinite(denom) or denom <= 0:
            return np.inf
        return 2.0 * var ** 2 / denom

    def contrast_stats(self, L: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Estimates, standard errors and df for each row of ``L``."""
        L = np.atleast_2d(np.asarray(L, dtype=float))
        est = L @ self.beta
        var = np.einsum("ij,jk,ik->i", L, self.cov_beta, L)
        se = np.sqrt(np.clip(var, 0.0, None))
        dfs = np.array([self.contrast_df(row) for row in L])
        return est, se, dfs

    def wald_f(self, L: np.ndarray) -> tuple[float, int, float, float]:
        """
        Multi-df Wald F test of ``Lβ = 0`` with Satterthwaite denominator df.

        Returns
        -------
        tuple[float, int, float, float]
            (F, numerator df, denominator df, p-value)
        """
        L = np.atleast_2d(np.asarray(L, dtype=float))
        vl = L @ self.cov_beta @ L.T
        eigval, eigvec = np.linalg.eigh((vl + vl.T) / 2.0)
        keep = eigval > EIGEN_TOLERANCE * max(float(eigval.max()), 0.0)
        if not keep.any():
            return np.nan, 0, np.nan, np.nan
        eigval = eigval[keep]
        eigvec = eigvec[:, keep]
        q = int(keep.sum())

        rotated = eigvec.T @ L
        t2 = (rotated @ self.beta) ** 2 / eigval
        f_value = float(t2.sum() / q)
        nus = np.array([self.contrast_df(row) for row in rotated])
        ddf = _f_denominator_df(nus)
        p_value = float(stats.f.sf(f_value, q, ddf)) if np.isfinite(f_value) else np.nan
        return f_value, q, ddf, p_value


def _f_denominator_df(nus: np.ndarray, tol: float = 1e-8) -> float:
    """Combine per-eigen-direction Satterthwaite dfs into one F denominator df."""
    nus = np.asarray(nus, dtype=float)
    finite = np.isfinite(nus)
    if not finite.any():
        return np.inf
    if len(nus) == 1:
        return float(nus[0])
    if finite.all() and np.all(np.abs(np.diff(nus)) < tol):
        return float(np.mean(nus))
    if np.any(nus[finite] <= 2):
        return 2.0
    # an infinite direction contributes nu/(nu - 2) = 1
    e = float(np.sum(np.where(finite, nus / np.where(finite, nus - 2.0, 1.0), 1.0)))
    return 2.0 * e / (e - len(nus))


def _whiten(
    M: np.ndarray,
    groups: np.ndarray,
    sizes: np.ndarray,
    var_group: float,
    var_resid: float,
) -> np.ndarray:
    """
    Quasi-demean rows so that least squares on the result is GLS.

    Each row loses ``1 - sqrt(σ²_e / (σ²_e + n_i σ²_g))`` of its group mean,
    which is ``σ_e V^(-1/2)`` for a random-intercept covariance.
    """
    M = np.asarray(M, dtype=float)
    flat = M.reshape(len(M), -1)
    shrink = 1.0 - np.sqrt(var_resid / (var_resid + sizes * var_group))
    means = pd.DataFrame(flat).groupby(groups).transform("mean").to_numpy()
    return (flat - shrink[:, None] * means).reshape(M.shape)


def _satterthwaite_state(
    X: np.ndarray,
    y: np.ndarray,
    groups: np.ndarray,
    var_group: float,
    var_resid: float,
) -> tuple[np.ndarray, np.ndarray, list[np.ndarray], np.ndarray]:
    """
    GLS fixed effects, their covariance, its gradient and the variance-parameter covariance.

    With ``V = σ²_g ZZ' + σ²_e I``, ``V⁻¹ = (I - P_Z)/σ²_e + P_Z/(σ²_e + n_i σ²_g)``
    where ``P_Z`` averages within groups. β and ``C = (X'V⁻¹X)⁻¹`` come from
    the whitened design, so they stay accurate when ``σ²_e`` is tiny.
    ``∂C/∂σ²_k = C X'V⁻¹ V_k V⁻¹X C`` and the variance-parameter covariance is
    the inverse of the REML expected information ``½ tr(P V_j P V_k)``.
    """
    n = X.shape[0]
    zzt = (groups[:, None] == groups[None, :]).astype(float)
    sizes = zzt.sum(axis=1)
    ident = np.eye(n)

    x_w = _whiten(X, groups, sizes, var_group, var_resid)
    y_w = _whiten(y, groups, sizes, var_group, var_resid)
    beta = np.linalg.lstsq(x_w, y_w, rcond=None)[0]
    _, R = np.linalg.qr(x_w)
    r_inv = linalg.solve_triangular(R, np.eye(R.shape[0]))
    C = var_resid * (r_inv @ r_inv.T)
    C = (C + C.T) / 2.0

    proj = zzt / sizes[:, None]
    v_inv = (ident - proj) / var_resid + proj / (var_resid + sizes * var_group)[:, None]
    vinv_x = v_inv @ X

    dV = [zzt, ident]
    grads = [C @ vinv_x.T @ dv @ vinv_x @ C for dv in dV]

    P = v_inv - vinv_x @ C @ vinv_x.T
    p_dv = [P @ dv for dv in dV]
    info = np.empty((2, 2))
    for i in range(2):
        for j in range(2):
            info[i, j] = 0.5 * float(np.sum(p_dv[i] * p_dv[j].T))
    try:
        vcov = np.linalg.inv(info)
    except np.linalg.LinAlgError:
        vcov = np.linalg.pinv(info)
    return beta, C, grads, vcov


def _exact_fit(X: np.ndarray, y: np.ndarray, groups: np.ndarray) -> bool:
    """True if fixed effects plus one intercept per group reproduce ``y``."""
    tss = float(np.sum((y - y.mean()) ** 2))
    if tss == 0:
        return True
    full = np.column_stack([X, pd.get_dummies(groups).to_numpy(dtype=float)])
    resid = y - full @ np.linalg.lstsq(full, y, rcond=None)[0]
    return float(resid @ resid) <= EXACT_FIT_TOLERANCE * tss


def _block_variance(X: np.ndarray, y: np.ndarray, groups: np.ndarray) -> float:
    """Spread of group-mean residuals after removing the fixed effects."""
    resid = y - X @ np.linalg.lstsq(X, y, rcond=None)[0]
    means = pd.Series(resid).groupby(groups).mean()
    if len(means) < 2:
        return 0.0
    return max(float(means.var(ddof=1)), 0.0)


def _predicted_intercepts(
    X: np.ndarray,
    y: np.ndarray,
    beta: np.ndarray,
    groups: np.ndarray,
    var_group: float,
    var_resid: float,
) -> np.ndarray:
    resid = pd.Series(y - X @ beta)
    stats_by_group = resid.groupby(groups).agg(["mean", "size"])
    shrink = stats_by_group["size"] * var_group / (var_resid + stats_by_group["size"] * var_group)
    return (stats_by_group["mean"] * shrink).reindex(groups).to_numpy()


def prepare_model_frame(df: pd.DataFrame, response: str, design: ModelDesign) -> pd.DataFrame:
    """
    Select model columns, drop missing rows and cast factors to strings.

    Raises
    ------
    NoObservationsError
        If no row has a non-missing response.
    """
    columns = list(dict.fromkeys([response, *design.fixed, *design.groups]))
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise KeyError(f"Columns missing from dataframe: {missing}")
    frame = df[columns].copy()
    frame[response] = pd.to_numeric(frame[response], errors="coerce")
    frame = frame.dropna().reset_index(drop=True)
    if frame.empty:
        raise NoObservationsError(response)
    for col in columns[1:]:
        frame[col] = frame[col].astype(str)
    return frame


def _reml_components(
    x_arr: np.ndarray,
    y: np.ndarray,
    groups: np.ndarray,
    design: ModelDesign,
    response: str,
    methods: Optional[Sequence[str]],
    reml: bool,
    maxiter: int,
) -> tuple[float, float, float, Any]:
    model = sm.MixedLM(endog=y, exog=x_arr, groups=groups)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            result = model.fit(reml=reml, method=list(methods or DEFAULT_FIT_METHODS), maxiter=maxiter)
        except (np.linalg.LinAlgError, ValueError, FloatingPointError, ZeroDivisionError) as exc:
            raise SingularFitError(f"Mixed model fit failed: {exc}") from exc
    for w in caught:
        logger.debug("MixedLM warning (%s, %s): %s", design.name, response, w.message)

    if not result.converged:
        raise SingularFitError("Mixed model fit did not converge")

    var_resid = float(result.scale)
    var_group = max(float(np.asarray(result.cov_re, dtype=float).ravel()[0]), 0.0)
    if not (np.isfinite(var_resid) and np.isfinite(var_group)):
        raise SingularFitError("Mixed model produced non-finite variance components")
    return var_group, var_resid, float(result.llf), result


def fit_mixed_model(
    df: pd.DataFrame,
    response: str,
    design: ModelDesign = SINGLE_ENVIRONMENT,
    methods: Optional[Sequence[str]] = None,
    reml: bool = True,
    maxiter: int = DEFAULT_MAXITER,
) -> FittedMixedModel:
    """
    Fit ``response ~ fixed factors (fully crossed) + (1 | group)`` by REML.

    Variance components come from statsmodels ``MixedLM``; fixed effects are
    then solved by generalized least squares at those components. When the
    fixed effects and group intercepts reproduce the data exactly, REML is
    skipped: the group variance is taken from the group-mean residuals and
    the residual variance is floored at ``RESID_VAR_FLOOR`` times the
    response variance, so the means equal the cell averages.

    Parameters
    ----------
    df : pd.DataFrame
        Observations; rows with missing response are dropped.
    response : str
        Numeric response column.
    design : ModelDesign, default=SINGLE_ENVIRONMENT
        Model shape (fixed factors and random grouping).
    methods : Optional[Sequence[str]]
        Optimizers tried in sequence by statsmodels until convergence.
    reml : bool, default=True
        Use restricted maximum likelihood.
    maxiter : int
        Maximum optimizer iterations.

    Returns
    -------
    FittedMixedModel
        Fit plus Satterthwaite inference state.

    Raises
    ------
    SingularFitError
        If the fixed design is rank deficient, a factor has a single level,
        there are too few random groups, or the fit fails to converge.
    """
    frame = prepare_model_frame(df, response, design)

    for factor in design.fixed:
        if frame[factor].nunique() < 2:
            raise SingularFitError(f"Factor '{factor}' has a single level in the data")

    groups = design.group_key(frame).to_numpy()
    n_groups = len(np.unique(groups))
    if n_groups < MIN_RANDOM_GROUPS:
        raise SingularFitError(
            f"Need at least {MIN_RANDOM_GROUPS} levels of '{design.group_label}', got {n_groups}"
        )

    X = patsy.dmatrix(design.formula_rhs, frame, return_type="dataframe")
    x_arr = X.to_numpy(dtype=float)
    rank = np.linalg.matrix_rank(x_arr, tol=RANK_TOLERANCE * max(x_arr.shape))
    if rank < x_arr.shape[1]:
        raise SingularFitError(
            f"Rank-deficient fixed-effects design ({rank} of {x_arr.shape[1]} columns estimable); "
            "a factor-level combination is probably missing"
        )
    y = frame[response].to_numpy(dtype=float)
    spread = float(np.var(y))
    var_floor = RESID_VAR_FLOOR * (spread if spread > 0 else 1.0)

    exact = _exact_fit(x_arr, y, groups)
    if exact:
        var_group, var_resid, llf, result = _block_variance(x_arr, y, groups), var_floor, np.nan, None
        logger.info(
            "Exact fit for %s (%s model); residual variance floored at %.3g",
            response, design.name, var_floor,
        )
    else:
        var_group, var_resid, llf, result = _reml_components(
            x_arr, y, groups, design, response, methods, reml, maxiter
        )
        if var_resid < var_floor:
            logger.info("Residual variance %.3g for %s floored at %.3g", var_resid, response, var_floor)
            var_resid = var_floor

    try:
        beta, cov_beta, grads, vcov = _satterthwaite_state(x_arr, y, groups, var_group, var_resid)
    except np.linalg.LinAlgError as exc:
        raise SingularFitError(f"Singular covariance at the fitted variance components: {exc}") from exc
    if not np.all(np.isfinite(beta)):
        raise SingularFitError("Mixed model produced non-finite estimates")

    fitted = x_arr @ beta + _predicted_intercepts(x_arr, y, beta, groups, var_group, var_resid)

    logger.debug(
        "Fitted %s model for %s: n=%d, %s var=%.4g, residual var=%.4g",
        design.name, response, len(y), design.group_label, var_group, var_resid,
    )
    return FittedMixedModel(
        design=design,
        response=response,
        data=frame,
        design_info=X.design_info,
        beta=beta,
        cov_beta=cov_beta,
        cov_beta_grad=grads,
        vcov_varpar=vcov,
        var_group=var_group,
        var_resid=var_resid,
        fitted_values=fitted,
        exact_fit=exact,
        llf=llf,
        converged=True,
        result=result,
    )
