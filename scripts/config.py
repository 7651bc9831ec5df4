"""AutoML Orchestrator – Global Configuration

This module centralises every *immutable* knob that governs the work plan,
the polling loop and the search-spaces handed to the task substrate.  **Never**
import these constants into a function just to mutate them.
"""
from __future__ import annotations

from typing import Dict, Tuple

# ---------------------------------------------------------------------------
# Reproducibility
# ---------------------------------------------------------------------------
RANDOM_STATE: int = 42  # Seed used for data partitioning when the run has none
RANDOM_SEED_SENTINEL: int = -1  # "random" seed requested by the caller

# ---------------------------------------------------------------------------
# Parallelism
# ---------------------------------------------------------------------------
# Number of concurrently running tasks on the local substrate
N_JOBS_CV: int = 2
# n_jobs to be forwarded into *individual* models
N_JOBS_MODEL: int = 1

# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------
WALLCLOCK_LIMIT_SEC: int = 3_600  # default run budget when max_models is unset
POLL_INTERVAL_SECS: float = 1.0
DEFAULT_NFOLDS: int = 5
DEFAULT_STOPPING_ROUNDS: int = 3
AUTO_STOPPING_TOLERANCE: float = -1.0
AUTO_STOPPING_METRIC: str = "AUTO"

# ---------------------------------------------------------------------------
# Work plan – (algo, count, job type, share)
# ---------------------------------------------------------------------------
DEFAULT_WORK_PLAN: Tuple[Tuple[str, int, str, int], ...] = (
    ("DeepLearning", 1, "build", 10),
    ("DeepLearning", 3, "search", 20),
    ("DRF", 2, "build", 10),
    ("GBM", 5, "build", 10),
    ("GBM", 1, "search", 60),
    ("GLM", 1, "search", 20),
    ("XGBoost", 3, "build", 10),
    ("XGBoost", 1, "search", 100),
    ("StackedEnsemble", 2, "build", 15),
)

# The fixed learn sequence.  The third field selects a subset of the family's
# default builds by name (``None`` runs all of them).  Ensembles always run
# last and are not listed here.
LEARN_STEPS: Tuple[Tuple[str, str, str | None], ...] = (
    ("XGBoost", "build", None),
    ("GLM", "search", None),
    ("DRF", "build", "DRF"),
    ("GBM", "build", None),
    ("DeepLearning", "build", None),
    ("DRF", "build", "XRT"),
    ("XGBoost", "search", None),
    ("GBM", "search", None),
    ("DeepLearning", "search", None),
)

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
DEFAULT_METRIC: str = "r2"  # regression sort metric
DEFAULT_BINOMIAL_METRIC: str = "auc"
DEFAULT_MULTINOMIAL_METRIC: str = "logloss"

# True when larger is better
METRIC_DIRECTIONS: Dict[str, bool] = {
    "r2": True,
    "rmse": False,
    "mse": False,
    "mae": False,
    "mean_residual_deviance": False,
    "auc": True,
    "accuracy": True,
    "logloss": False,
    "mean_per_class_error": False,
}

REGRESSION_METRICS: Tuple[str, ...] = ("r2", "rmse", "mse", "mae", "mean_residual_deviance")
CLASSIFICATION_METRICS: Tuple[str, ...] = ("auc", "accuracy", "logloss", "mean_per_class_error")

# ---------------------------------------------------------------------------
# Data partitioning when cross-validation is disabled
# ---------------------------------------------------------------------------
SPLIT_RATIOS_NO_FRAMES: Tuple[float, float, float] = (0.8, 0.1, 0.1)
SPLIT_RATIOS_NO_VALIDATION: Tuple[float, float, float] = (0.9, 0.1, 0.0)
SPLIT_RATIOS_NO_LEADERBOARD: Tuple[float, float, float] = (0.9, 0.0, 0.1)


def metric_is_increasing(metric: str) -> bool:
    """Return ``True`` if a larger value of *metric* ranks higher."""
    try:
        return METRIC_DIRECTIONS[metric]
    except KeyError:
        raise ValueError(f"Unsupported metric: {metric}") from None


__all__ = [
    "RANDOM_STATE",
    "RANDOM_SEED_SENTINEL",
    "N_JOBS_CV",
    "N_JOBS_MODEL",
    "WALLCLOCK_LIMIT_SEC",
    "POLL_INTERVAL_SECS",
    "DEFAULT_NFOLDS",
    "DEFAULT_STOPPING_ROUNDS",
    "AUTO_STOPPING_TOLERANCE",
    "AUTO_STOPPING_METRIC",
    "DEFAULT_WORK_PLAN",
    "LEARN_STEPS",
    "DEFAULT_METRIC",
    "DEFAULT_BINOMIAL_METRIC",
    "DEFAULT_MULTINOMIAL_METRIC",
    "METRIC_DIRECTIONS",
    "REGRESSION_METRICS",
    "CLASSIFICATION_METRICS",
    "SPLIT_RATIOS_NO_FRAMES",
    "SPLIT_RATIOS_NO_VALIDATION",
    "SPLIT_RATIOS_NO_LEADERBOARD",
    "metric_is_increasing",
]
