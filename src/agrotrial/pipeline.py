"""
Orchestration of the transformation and inference pipeline.

Traits are fitted per environment (single-environment mode) and jointly
across environments (multi-environment mode). Per-iteration results are
built as immutable records and collected by a :class:`ResultAccumulator`;
single-environment tables are appended, multi-environment tables are
joined on their key columns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

import pandas as pd
import plotly.graph_objects as go

from .anova import mixed_anova
from .cld_utils import compact_letter_display
from .constants import (
    ADJUST_METHODS,
    CONTRAST_GENOTYPES,
    DEFAULT_ADJUST,
    DEFAULT_ALPHA,
    DEFAULT_CONFIDENCE,
    DEFAULT_SINGULAR_POLICY,
    ENVIRONMENT_COL,
    GENOTYPE_COL,
    SINGULAR_POLICIES,
    THETA_BOUNDS,
    TRANSFORMED_SUFFIX,
    TREATMENT_COL,
)
from .contrasts import absent_present_contrasts, pairwise_contrasts
from .data_loader import environments, prepare_trial_frame, select_observations
from .exceptions import NoObservationsError, SingularFitError
from .marginal_means import estimated_marginal_means
from .mixed_models import MULTI_ENVIRONMENT, SINGLE_ENVIRONMENT, ModelDesign, fit_mixed_model
from .transforms import back_transform_columns, ihs_forward, select_theta
from .visualization import interaction_plot

logger = logging.getLogger(__name__)

BACK_TRANSFORM_COLUMNS = ["emmean", "ci_low", "ci_high"]
RESPONSE_SUFFIX = "_response"


@dataclass(frozen=True)
class TraitSpec:
    """
    How one trait is analysed.

    ``transform`` selects the IHS transform before modelling,
    ``back_transform`` maps reported means back to the measurement scale,
    ``modeled`` is False for traits that are collected but never fitted.
    """

    column: str
    transform: bool = False
    back_transform: bool = False
    modeled: bool = True
    theta: Optional[float] = None

    @property
    def response_column(self) -> str:
        return f"{self.column}{TRANSFORMED_SUFFIX}" if self.transform else self.column

    def with_theta(self, theta: float) -> "TraitSpec":
        return replace(self, theta=float(theta))

    def back_transform_table(self, df: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
        """Inverse-transform ``columns`` when configured, otherwise copy them as-is."""
        if self.back_transform:
            if self.theta is None:
                raise ValueError(f"Trait '{self.column}' has no theta to back-transform with")
            return back_transform_columns(df, list(columns), self.theta)
        return df.copy()


class Trait(Enum):
    PIT = TraitSpec("PIT", transform=True, back_transform=True)
    NOPPT = TraitSpec("NOPPT", transform=True, back_transform=True)
    YIELD = TraitSpec("Yield")
    TEST_WEIGHT = TraitSpec("TestWeight", modeled=False)

    @property
    def spec(self) -> TraitSpec:
        return self.value


DEFAULT_TRAITS = (Trait.PIT, Trait.NOPPT, Trait.YIELD)

PlotSink = Callable[[str, go.Figure], None]


@dataclass
class PipelineConfig:
    """Run-wide settings of the analysis."""

    traits: tuple[Trait, ...] = DEFAULT_TRAITS
    alpha: float = DEFAULT_ALPHA
    confidence: float = DEFAULT_CONFIDENCE
    adjust: str = DEFAULT_ADJUST
    theta_bounds: tuple[float, float] = THETA_BOUNDS
    on_singular: str = DEFAULT_SINGULAR_POLICY
    compute_letters: bool = True
    single_environment: bool = True
    multi_environment: bool = True
    multi_env_by: tuple[str, ...] = (GENOTYPE_COL, TREATMENT_COL)
    contrast_genotypes: tuple[str, ...] = tuple(CONTRAST_GENOTYPES)
    emit_plots: bool = False
    plot_sink: Optional[PlotSink] = field(default=None, repr=False)

    def __post_init__(self):
        self.traits = tuple(Trait[t] if isinstance(t, str) else t for t in self.traits)
        if not self.traits:
            raise ValueError("At least one trait is required.")
        if not 0 < self.alpha < 1:
            raise ValueError("alpha must be between 0 and 1.")
        if not 0 < self.confidence < 1:
            raise ValueError("confidence must be between 0 and 1.")
        if self.adjust not in ADJUST_METHODS:
            raise ValueError(f"adjust must be one of {ADJUST_METHODS}.")
        if self.on_singular not in SINGULAR_POLICIES:
            raise ValueError(f"on_singular must be one of {SINGULAR_POLICIES}.")
        if self.theta_bounds[1] <= self.theta_bounds[0] or self.theta_bounds[0] < 0:
            raise ValueError(f"Invalid theta bounds: {self.theta_bounds}")
        if self.emit_plots and self.plot_sink is None:
            raise ValueError("emit_plots requires a plot_sink.")


@dataclass(frozen=True)
class IterationResult:
    """Tables produced by one fitted model."""

    trait: str
    environment: Optional[str]
    by: tuple[str, ...]
    anova: pd.DataFrame
    emmeans: pd.DataFrame
    contrasts: pd.DataFrame


@dataclass
class AnalysisResults:
    """Final result tables of a run."""

    thetas: dict[str, float]
    anova: pd.DataFrame
    emmeans: pd.DataFrame
    contrasts: pd.DataFrame
    anova_multi: pd.DataFrame
    emmeans_multi: pd.DataFrame
    contrasts_multi: pd.DataFrame
    emmeans_multi_backtransformed: pd.DataFrame

    def tables(self) -> dict[str, pd.DataFrame]:
        return {
            "anova": self.anova,
            "emmeans": self.emmeans,
            "contrasts": self.contrasts,
            "anova_multi": self.anova_multi,
            "emmeans_multi": self.emmeans_multi,
            "contrasts_multi": self.contrasts_multi,
            "emmeans_multi_backtransformed": self.emmeans_multi_backtransformed,
        }

    def to_csv(self, outdir: str | Path) -> list[Path]:
        """Write every table (and the θ values) as CSV files into ``outdir``."""
        outdir = Path(outdir)
        outdir.mkdir(parents=True, exist_ok=True)
        written = []
        for name, table in self.tables().items():
            path = outdir / f"{name}.csv"
            table.to_csv(path, index=False)
            written.append(path)
        path = outdir / "thetas.csv"
        pd.DataFrame({"trait": list(self.thetas), "theta": list(self.thetas.values())}).to_csv(path, index=False)
        written.append(path)
        return written


def _join_on(current: Optional[pd.DataFrame], new: pd.DataFrame, keys: list[str]) -> pd.DataFrame:
    if current is None:
        return new
    return current.merge(new, on=keys, how="outer", sort=False)


@dataclass
class ResultAccumulator:
    """
    Collects per-iteration results.

    Single-environment records are appended in long format with Trait and
    Environment columns. Multi-environment records are joined on their key
    columns (effect, the EMM factors, or the contrast) with value columns
    prefixed by the trait name.
    """

    single: list[IterationResult] = field(default_factory=list)
    anova_multi: Optional[pd.DataFrame] = None
    emmeans_multi: Optional[pd.DataFrame] = None
    contrasts_multi: Optional[pd.DataFrame] = None
    multi_traits: list[str] = field(default_factory=list)
    emm_keys: list[str] = field(default_factory=list)

    def append_single(self, result: IterationResult) -> None:
        self.single.append(result)

    def join_multi(self, result: IterationResult) -> None:
        def _prefixed(df: pd.DataFrame, keys: list[str]) -> pd.DataFrame:
            return df.rename(columns={c: f"{result.trait}_{c}" for c in df.columns if c not in keys})

        emm_keys = list(result.by)
        contrast_keys = ["contrast", "group_a", "group_b"]
        self.anova_multi = _join_on(self.anova_multi, _prefixed(result.anova, ["effect"]), ["effect"])
        self.emmeans_multi = _join_on(self.emmeans_multi, _prefixed(result.emmeans, emm_keys), emm_keys)
        self.contrasts_multi = _join_on(
            self.contrasts_multi, _prefixed(result.contrasts, contrast_keys), contrast_keys
        )
        self.multi_traits.append(result.trait)
        self.emm_keys = emm_keys

    def _long(self, attr: str) -> pd.DataFrame:
        frames = []
        for r in self.single:
            table = getattr(r, attr).copy()
            table.insert(0, ENVIRONMENT_COL, r.environment)
            table.insert(0, "Trait", r.trait)
            frames.append(table)
        if not frames:
            return pd.DataFrame()
        return pd.concat(frames, ignore_index=True)

    def to_results(self, specs: Sequence[TraitSpec]) -> AnalysisResults:
        by_column = {s.column: s for s in specs}

        emmeans = self._long("emmeans")
        if not emmeans.empty:
            parts = []
            for trait, sub in emmeans.groupby("Trait", sort=False):
                back = by_column[trait].back_transform_table(sub[BACK_TRANSFORM_COLUMNS], BACK_TRANSFORM_COLUMNS)
                sub = sub.copy()
                for col in BACK_TRANSFORM_COLUMNS:
                    sub[f"{col}{RESPONSE_SUFFIX}"] = back[col].to_numpy()
                parts.append(sub)
            emmeans = pd.concat(parts).sort_index()

        emm_multi = self.emmeans_multi if self.emmeans_multi is not None else pd.DataFrame()
        emm_back = emm_multi.copy()
        for trait in self.multi_traits:
            cols = [f"{trait}_{c}" for c in BACK_TRANSFORM_COLUMNS]
            emm_back[cols] = by_column[trait].back_transform_table(emm_multi[cols], cols)[cols]
        if not emm_back.empty:
            emm_back = emm_back[self.emm_keys + [f"{t}_{c}" for t in self.multi_traits for c in BACK_TRANSFORM_COLUMNS]]

        return AnalysisResults(
            thetas={s.column: s.theta for s in specs if s.theta is not None},
            anova=self._long("anova"),
            emmeans=emmeans,
            contrasts=self._long("contrasts"),
            anova_multi=self.anova_multi if self.anova_multi is not None else pd.DataFrame(),
            emmeans_multi=emm_multi,
            contrasts_multi=self.contrasts_multi if self.contrasts_multi is not None else pd.DataFrame(),
            emmeans_multi_backtransformed=emm_back,
        )


def estimate_trait_thetas(
    data: pd.DataFrame,
    traits: Sequence[Trait],
    bounds: tuple[float, float] = THETA_BOUNDS,
) -> list[TraitSpec]:
    """
    Estimate θ once per transformed trait from raw values pooled across environments.

    Raises
    ------
    InsufficientDataError
        If a transformed trait has fewer than two usable values.
    """
    specs = []
    for trait in traits:
        spec = trait.spec
        if spec.transform:
            spec = spec.with_theta(select_theta(data[spec.column], bounds=bounds, label=spec.column))
        specs.append(spec)
    return specs


def apply_trait_transforms(data: pd.DataFrame, specs: Sequence[TraitSpec]) -> pd.DataFrame:
    """Add IHS-transformed response columns for traits that need them."""
    out = data.copy()
    for spec in specs:
        if spec.transform:
            out[spec.response_column] = ihs_forward(out[spec.column].to_numpy(dtype=float), spec.theta)
    return out


def _context(trait: str, environment: Optional[str]) -> str:
    return f" (trait={trait}, environment={environment})" if environment is not None else f" (trait={trait})"


def analyze_subset(
    data: pd.DataFrame,
    spec: TraitSpec,
    design: ModelDesign,
    config: PipelineConfig,
    environment: Optional[str] = None,
    by: Sequence[str] = (GENOTYPE_COL, TREATMENT_COL),
) -> IterationResult:
    """
    Fit one model and derive its ANOVA, EMM, contrast and letter tables.

    Raises
    ------
    SingularFitError
        Annotated with the trait, environment and failing step.
    """
    step = "fit"
    try:
        fitted = fit_mixed_model(data, spec.response_column, design)
        step = "anova"
        anova = mixed_anova(fitted)
        step = "emmeans"
        emm = estimated_marginal_means(fitted, by=by, confidence=config.confidence)
        step = "contrasts"
        pairs = pairwise_contrasts(fitted, emm, adjust=config.adjust)
        contrasts = absent_present_contrasts(
            fitted,
            emm,
            genotypes=config.contrast_genotypes,
            pairs=pairs,
            context=_context(spec.column, environment),
        )
    except SingularFitError as exc:
        raise exc.with_context(trait=spec.column, environment=environment, step=step) from exc

    table = emm.table.copy()
    if config.compute_letters:
        letters = compact_letter_display(pairs, emm.labels, alpha=config.alpha)
        table["group"] = letters["group"].to_numpy()

    return IterationResult(
        trait=spec.column,
        environment=environment,
        by=tuple(by),
        anova=anova,
        emmeans=table,
        contrasts=contrasts,
    )


def _handle_singular(exc: SingularFitError, config: PipelineConfig) -> None:
    if config.on_singular == "abort":
        logger.error("Aborting run: %s", exc)
        raise exc
    logger.warning("Skipping singular fit: %s", exc)


def _emit_plot(result: IterationResult, config: PipelineConfig) -> None:
    if not config.emit_plots:
        return
    name = result.trait if result.environment is None else f"{result.trait}_{result.environment}"
    title = f"{result.trait}: {result.environment or 'all environments'}"
    config.plot_sink(name, interaction_plot(result.emmeans, title=title))


def run_single_environment(
    data: pd.DataFrame,
    specs: Sequence[TraitSpec],
    config: PipelineConfig,
    accumulator: ResultAccumulator,
) -> ResultAccumulator:
    """Fit every modelled trait separately in every environment."""
    for spec in specs:
        if not spec.modeled:
            continue
        for env in environments(data):
            try:
                subset = select_observations(data, spec.response_column, env)
            except NoObservationsError:
                logger.warning("No data collected%s; skipping", _context(spec.column, env))
                continue
            try:
                result = analyze_subset(subset, spec, SINGLE_ENVIRONMENT, config, environment=env)
            except SingularFitError as exc:
                _handle_singular(exc, config)
                continue
            logger.info("Finished single-environment analysis%s", _context(spec.column, env))
            accumulator.append_single(result)
            _emit_plot(result, config)
    return accumulator


def run_multi_environment(
    data: pd.DataFrame,
    specs: Sequence[TraitSpec],
    config: PipelineConfig,
    accumulator: ResultAccumulator,
) -> ResultAccumulator:
    """Fit every modelled trait jointly across environments."""
    for spec in specs:
        if not spec.modeled:
            continue
        try:
            subset = select_observations(data, spec.response_column)
        except NoObservationsError:
            logger.warning("No data collected%s; skipping", _context(spec.column, None))
            continue
        n_env = subset[ENVIRONMENT_COL].nunique()
        if n_env < 2:
            logger.warning(
                "Only %d environment with data%s; skipping multi-environment model",
                n_env, _context(spec.column, None),
            )
            continue
        try:
            result = analyze_subset(subset, spec, MULTI_ENVIRONMENT, config, by=config.multi_env_by)
        except SingularFitError as exc:
            _handle_singular(exc, config)
            continue
        logger.info("Finished multi-environment analysis%s", _context(spec.column, None))
        accumulator.join_multi(result)
        _emit_plot(result, config)
    return accumulator


def run_analysis(data: pd.DataFrame, config: Optional[PipelineConfig] = None) -> AnalysisResults:
    """
    Run the full pipeline on a raw trial table.

    θ is estimated once per transformed trait before any model is fitted,
    then single- and multi-environment analyses run in turn and the
    configured traits are back-transformed.

    Parameters
    ----------
    data : pd.DataFrame
        Observations with Location, Rep, Treatment, Genotype and trait columns.
    config : Optional[PipelineConfig]
        Run settings; defaults to :class:`PipelineConfig()`.

    Returns
    -------
    AnalysisResults
        All result tables.
    """
    config = config or PipelineConfig()
    trait_columns = [t.spec.column for t in config.traits]
    data = prepare_trial_frame(data, trait_columns)

    specs = estimate_trait_thetas(data, config.traits, bounds=config.theta_bounds)
    data = apply_trait_transforms(data, specs)

    accumulator = ResultAccumulator()
    if config.single_environment:
        run_single_environment(data, specs, config, accumulator)
    if config.multi_environment:
        run_multi_environment(data, specs, config, accumulator)
    return accumulator.to_results(specs)
