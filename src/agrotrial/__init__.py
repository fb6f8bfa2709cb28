"""
agrotrial - transformation and mixed-model inference for replicated field trials.

This package estimates an inverse hyperbolic sine transform for zero-inflated
traits, fits split-plot and multi-environment mixed models, and reports
ANOVA tables, estimated marginal means, Absent vs Present contrasts and
compact letter displays, with back-transformation to the measurement scale.
"""

from .constants import *
from .anova import mixed_anova
from .cld_utils import (
    compact_letter_display,
    make_cld_from_significance,
    significance_from_contrasts,
)
from .contrasts import (
    absent_present_contrasts,
    adjust_pvalues,
    pairwise_contrasts,
)
from .data_loader import (
    coerce_numeric_columns,
    load_data_from_path,
    prepare_trial_frame,
    sanitize_columns,
    select_observations,
)
from .exceptions import (
    AgrotrialError,
    InsufficientDataError,
    NoObservationsError,
    SingularFitError,
    UnknownContrastLevelError,
)
from .marginal_means import MarginalMeans, estimated_marginal_means
from .mixed_models import (
    MULTI_ENVIRONMENT,
    SINGLE_ENVIRONMENT,
    FittedMixedModel,
    ModelDesign,
    fit_mixed_model,
)
from .pipeline import (
    AnalysisResults,
    PipelineConfig,
    ResultAccumulator,
    Trait,
    TraitSpec,
    run_analysis,
    run_multi_environment,
    run_single_environment,
)
from .transforms import (
    back_transform_columns,
    ihs_forward,
    ihs_inverse,
    ihs_loglik,
    select_theta,
)
from .visualization import apply_paper_layout, interaction_plot

__version__ = "1.0.0"
__author__ = "Agrotrial Team"

__all__ = [
    # Data loading
    "load_data_from_path",
    "sanitize_columns",
    "coerce_numeric_columns",
    "prepare_trial_frame",
    "select_observations",
    # Transform
    "ihs_forward",
    "ihs_inverse",
    "ihs_loglik",
    "select_theta",
    "back_transform_columns",
    # Models and inference
    "ModelDesign",
    "SINGLE_ENVIRONMENT",
    "MULTI_ENVIRONMENT",
    "FittedMixedModel",
    "fit_mixed_model",
    "mixed_anova",
    "MarginalMeans",
    "estimated_marginal_means",
    "pairwise_contrasts",
    "absent_present_contrasts",
    "adjust_pvalues",
    "significance_from_contrasts",
    "make_cld_from_significance",
    "compact_letter_display",
    # Pipeline
    "Trait",
    "TraitSpec",
    "PipelineConfig",
    "ResultAccumulator",
    "AnalysisResults",
    "run_analysis",
    "run_single_environment",
    "run_multi_environment",
    # Errors
    "AgrotrialError",
    "InsufficientDataError",
    "NoObservationsError",
    "SingularFitError",
    "UnknownContrastLevelError",
    # Visualization
    "interaction_plot",
    "apply_paper_layout",
]
