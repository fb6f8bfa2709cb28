"""
Global constants and literal level names for agrotrial.
"""

# Statistical Analysis Constants
DEFAULT_ALPHA = 0.05
DEFAULT_CONFIDENCE = 0.95
DEFAULT_ADJUST = "tukey"
ADJUST_METHODS = ["tukey", "bonferroni", "holm", "none"]
MIN_SAMPLES_FOR_THETA = 2
MIN_RANDOM_GROUPS = 2

# IHS Transform Search
THETA_BOUNDS = (0.0, 200.0)
THETA_FLOOR = 1e-8
THETA_XATOL = 1.220703e-4  # double eps ** 0.25
THETA_GRID_POINTS = 241

# Mixed Model Fitting
DEFAULT_FIT_METHODS = ["lbfgs", "powell"]
DEFAULT_MAXITER = 500
RANK_TOLERANCE = 1e-8
EIGEN_TOLERANCE = 1e-8
EXACT_FIT_TOLERANCE = 1e-20
RESID_VAR_FLOOR = 1e-10
MAX_TUKEY_DF = 1000.0

# Singular fit policies
SINGULAR_POLICIES = ["abort", "skip"]
DEFAULT_SINGULAR_POLICY = "abort"

# Input Columns
LOCATION_COL = "Location"
ENVIRONMENT_COL = "Environment"
REP_COL = "Rep"
TREATMENT_COL = "Treatment"
GENOTYPE_COL = "Genotype"
ENV_REP_COL = "Environment_Rep"
KEY_COLUMNS = [LOCATION_COL, REP_COL, TREATMENT_COL, GENOTYPE_COL]
TRAIT_COLUMNS = ["PIT", "NOPPT", "Yield", "TestWeight"]
TRANSFORMED_SUFFIX = "_ihs"

# Contrast Levels (literal, case and spacing sensitive)
ABSENT_LEVEL = "Absent"
PRESENT_LEVEL = "Present"
CONTRAST_GENOTYPES = [
    "Jamestown",
    "LA03136E71",
    "(NC11546-14)",
    "Shirley",
    "SS8641",
    "USG3404",
]
LEVEL_SEPARATOR = " "
CONTRAST_SEPARATOR = " - "

# Plot Constants
INTERACTION_PLOT_HEIGHT = 560
INTERACTION_PLOT_WIDTH = 900

# Column Sanitization
COL_REPLACE_MAP = {
    " ": "_",
    "-": "_",
    "(": "",
    ")": "",
    ":": "_",
    "/": "_",
    ".": "_",
    "*": "",
}
