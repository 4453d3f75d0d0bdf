from .improvement import (
    improvement_draws,
    improvement_from_prediction,
    improvement_from_table,
    mortality_improvement,
    mortality_improvement_from_log,
)
from .prediction import PredictionResult, predict, prediction_grid
from .risk_tools import (
    DrawSummary,
    SurfaceDrawSummary,
    summarize_draws,
    summarize_surface_draws,
)
from .simulation import SimulationDraws, posterior_covariance, simulate
from .validation import time_split_backtest_gp

__all__ = [
    "PredictionResult",
    "predict",
    "prediction_grid",
    "SimulationDraws",
    "posterior_covariance",
    "simulate",
    "mortality_improvement",
    "mortality_improvement_from_log",
    "improvement_from_prediction",
    "improvement_from_table",
    "improvement_draws",
    "DrawSummary",
    "SurfaceDrawSummary",
    "summarize_draws",
    "summarize_surface_draws",
    "time_split_backtest_gp",
]
