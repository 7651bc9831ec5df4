"""Base abstractions shared by the orchestrator and the task substrate.

Every algorithm family **must** be exposed through a subclass of
`BaseEstimatorBlock`: the block is both the scikit-learn style adapter around
the concrete estimator (`fit`/`predict`) and the registry entry describing the
family's default builds and hyper-parameter search spaces.

Every task substrate **must** inherit from `BaseEngine` and hand out
`BaseTaskHandle` instances, so the orchestrator can poll, cancel and collect
work without knowing where it runs.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from scripts.work_plan import JobType


class BaseComponent(ABC):
    """Root of the component hierarchy – do *not* subclass directly."""

    # Each concrete block *must* override this with a concise description of
    # its nature and hyper-parameters.  It is embedded in the run manifest.
    signature: Dict[str, Any] = {}

    @classmethod
    def get_signature(cls) -> Dict[str, Any]:
        """Return the static *signature* of the block."""
        return dict(cls.signature)


@dataclass(frozen=True)
class BuildConfig:
    """One named default model build of a family."""

    name: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchPlan:
    """One random hyper-parameter search of a family."""

    name: str
    base_params: Dict[str, Any]
    hyper_params: Dict[str, Sequence[Any]]


class BaseEstimatorBlock(BaseComponent):
    """Mixin for estimator-style components (expose `fit`/`predict`)."""

    # Parameter grown in chunks while fitting, so that progress can be reported
    # and stop requests honoured between chunks.  ``None`` means one-shot fit.
    incremental_param: Optional[str] = None
    incremental_step: int = 10
    seed_param: Optional[str] = "random_state"
    supports_class_weight: bool = False

    def __init__(self, problem_type: str = "regression", **kwargs):
        self.problem_type = problem_type
        self._params = kwargs.copy()
        self._impl = self._make_impl(problem_type, **kwargs)
        self._fitted = False

    @abstractmethod
    def _make_impl(self, problem_type: str, **kwargs):
        raise NotImplementedError

    def fit(self, X, y, sample_weight=None):
        if sample_weight is None:
            self._impl.fit(X, y)
        else:
            self._impl.fit(X, y, sample_weight=sample_weight)
        self._fitted = True
        return self

    def predict(self, X):
        return self._impl.predict(X)

    def predict_proba(self, X):
        return self._impl.predict_proba(X)

    @property
    def classes_(self):
        return self._impl.classes_

    def get_params(self, deep: bool = True):
        return self._impl.get_params(deep=deep)

    def set_params(self, **params):
        self._impl.set_params(**params)
        return self

    def __sklearn_is_fitted__(self) -> bool:
        return self._fitted

    def __sklearn_tags__(self):
        # Pipeline asks every step for its tags
        return self._impl.__sklearn_tags__()

    def fitted_increments(self) -> Optional[int]:
        """Number of increments the last fit actually produced (early stopping)."""
        return None

    @classmethod
    def default_builds(cls) -> List[BuildConfig]:
        return []

    @classmethod
    def search_plans(cls) -> List[SearchPlan]:
        return []

    @classmethod
    def stopping_params(cls, stopping_rounds: int, stopping_tolerance: float) -> Dict[str, Any]:
        """Translate the run's early-stopping criteria into estimator params."""
        return {}


# ---------------------------------------------------------------------------
# Data handed to the substrate
# ---------------------------------------------------------------------------

@dataclass
class TrainingData:
    train: pd.DataFrame
    response_column: str
    problem_type: str = "regression"  # regression | binomial | multinomial
    validation: Optional[pd.DataFrame] = None
    blending: Optional[pd.DataFrame] = None
    leaderboard: Optional[pd.DataFrame] = None
    fold_column: Optional[str] = None
    weights_column: Optional[str] = None
    ignored_columns: Tuple[str, ...] = ()
    nfolds: int = 0

    @property
    def is_classification(self) -> bool:
        return self.problem_type != "regression"

    @property
    def cv_enabled(self) -> bool:
        return self.nfolds != 0 or self.fold_column is not None

    def feature_columns(self) -> List[str]:
        excluded = {self.response_column, self.fold_column, self.weights_column, *self.ignored_columns}
        return [c for c in self.train.columns if c not in excluded]

    def split(self, frame: pd.DataFrame):
        """Return ``(X, y, sample_weight)`` for *frame*."""
        X = frame[self.feature_columns()]
        y = frame[self.response_column]
        w = frame[self.weights_column].to_numpy() if self.weights_column else None
        return X, y, w


@dataclass(frozen=True)
class SearchCriteria:
    """Random-discrete search limits; ``0`` means unlimited."""

    max_models: int = 0
    max_runtime_secs: float = 0.0
    seed: Optional[int] = None


@dataclass(frozen=True)
class StoppingParams:
    metric: str = "AUTO"
    rounds: int = 3
    tolerance: float = 1e-3


@dataclass
class TaskParameters:
    """Everything the substrate needs to run one task."""

    key: str
    job_type: JobType
    data: TrainingData
    model_type: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    hyper_params: Dict[str, Sequence[Any]] = field(default_factory=dict)
    search_criteria: SearchCriteria = field(default_factory=SearchCriteria)
    base_models: Tuple[str, ...] = ()
    max_runtime_secs: float = 0.0
    stopping: StoppingParams = field(default_factory=StoppingParams)
    balance_classes: bool = False
    keep_cross_validation_predictions: bool = True
    keep_cross_validation_models: bool = False
    keep_cross_validation_fold_assignment: bool = False
    export_checkpoints_dir: Optional[str] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ModelResult:
    key: str
    algo: str
    model_type: str
    model: Any
    metrics: Dict[str, float] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    cv_predictions: Any = None
    cv_models: Optional[List[Any]] = None
    fold_assignment: Any = None
    classes: Optional[List[Any]] = None
    run_time_secs: float = 0.0
    is_ensemble: bool = False

    def delete_cross_validation_predictions(self) -> None:
        self.cv_predictions = None


class SearchResult:
    """Container for a hyper-parameter search; grows while the search runs."""

    def __init__(self, key: str, algo: str):
        self.key = key
        self.algo = algo
        self._result_keys: List[str] = []
        self.failures: List[Tuple[Dict[str, Any], str]] = []
        self._attempts = 0
        self._lock = threading.Lock()

    def next_model_key(self) -> str:
        with self._lock:
            self._attempts += 1
            return f"{self.key}_model_{self._attempts}"

    def append(self, model_key: str) -> None:
        with self._lock:
            self._result_keys.append(model_key)

    def add_failure(self, params: Dict[str, Any], reason: str) -> None:
        with self._lock:
            self.failures.append((params, reason))

    @property
    def result_keys(self) -> List[str]:
        with self._lock:
            return list(self._result_keys)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._result_keys)


# ---------------------------------------------------------------------------
# Task substrate contract
# ---------------------------------------------------------------------------

class BaseTaskHandle(ABC):
    """Handle to one asynchronously executing build, search or stack."""

    key: str = ""

    @abstractmethod
    def is_running(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def progress(self) -> float:
        """Self-reported fraction of work done, in ``[0, 1]``."""
        raise NotImplementedError

    @abstractmethod
    def request_stop(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def await_result(self) -> Any:
        """Block until done; ``None`` if the task was cancelled or crashed."""
        raise NotImplementedError

    @abstractmethod
    def is_crashed(self) -> bool:
        raise NotImplementedError

    @property
    def error(self) -> Optional[BaseException]:
        return None

    def partial_result(self) -> Any:
        """Result container visible while the task runs (searches only)."""
        return None


class BaseEngine(ABC):
    """Base class for all task substrates."""

    store: Any = None

    @abstractmethod
    def launch(self, algo: Any, parameters: TaskParameters) -> BaseTaskHandle:
        """Start one task and return its handle."""
        raise NotImplementedError

    @abstractmethod
    def submit_run(self, fn: Callable[[], Any]):
        """Run an orchestrator loop off the caller's thread; return a future."""
        raise NotImplementedError

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


__all__ = [
    "BaseComponent",
    "BuildConfig",
    "SearchPlan",
    "BaseEstimatorBlock",
    "TrainingData",
    "SearchCriteria",
    "StoppingParams",
    "TaskParameters",
    "ModelResult",
    "SearchResult",
    "BaseTaskHandle",
    "BaseEngine",
]
