import os

# gpmp picks its numerical backend when first imported
os.environ.setdefault("GPMP_BACKEND", "numpy")

from .gp import (  # noqa: E402
    FittedGP,
    GPHyperparameters,
    OptimizerConfig,
    build_gp,
    fit_gp,
    log_restricted_likelihood,
    with_explicit_noise,
)
from .kernels import matern52_correlation  # noqa: E402
from .trend import (  # noqa: E402
    TREND_NAMES,
    TrendName,
    check_trend_rank,
    n_trend_terms,
    trend_matrix,
    trend_terms,
)

__all__ = [
    "FittedGP",
    "GPHyperparameters",
    "OptimizerConfig",
    "build_gp",
    "fit_gp",
    "log_restricted_likelihood",
    "with_explicit_noise",
    "matern52_correlation",
    "TREND_NAMES",
    "TrendName",
    "check_trend_rank",
    "n_trend_terms",
    "trend_matrix",
    "trend_terms",
]
