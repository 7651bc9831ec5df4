from __future__ import annotations

from typing import Any, List, Optional, Sequence

import numpy as np

from components.base import BaseEstimatorBlock


class StackedEnsembleBlock(BaseEstimatorBlock):
    """Metalearner of a stacked ensemble.

    A non-negative linear regression for regression problems and a logistic
    regression for classification, fitted on the level-one frame built from
    the base models' predictions.
    """

    signature = {
        "type": "model",
        "name": "StackedEnsemble",
        "algo": "StackedEnsemble",
        "hyperparameters": {
            "metalearner": "str",
        },
    }

    seed_param = None

    def _make_impl(self, problem_type: str, **kwargs):
        from sklearn.linear_model import LinearRegression, LogisticRegression

        kwargs.pop("random_state", None)
        if problem_type == "regression":
            return LinearRegression(positive=True, **kwargs)
        return LogisticRegression(max_iter=1000, **kwargs)


def base_model_predictions(model: Any, X, problem_type: str) -> np.ndarray:
    """Level-one columns contributed by one base model for frame ``X``."""
    if problem_type == "regression":
        return np.asarray(model.predict(X), dtype=float).reshape(-1, 1)
    proba = np.asarray(model.predict_proba(X), dtype=float)
    if problem_type == "binomial":
        return proba[:, 1].reshape(-1, 1)
    return proba


def level_one_frame(columns: Sequence[np.ndarray]) -> np.ndarray:
    """Stack per-model prediction blocks side by side."""
    return np.hstack([np.asarray(c, dtype=float).reshape(len(c), -1) for c in columns])


class StackedEnsembleModel:
    """Fitted ensemble: base models feed a metalearner."""

    def __init__(
        self,
        base_models: List[Any],
        base_keys: List[str],
        metalearner: StackedEnsembleBlock,
        problem_type: str,
        classes: Optional[List[Any]] = None,
    ):
        self.base_models = base_models
        self.base_keys = base_keys
        self.metalearner = metalearner
        self.problem_type = problem_type
        self.classes = classes

    @property
    def classes_(self):
        # integer codes, as seen by the metalearner
        return self.metalearner.classes_

    def _level_one(self, X) -> np.ndarray:
        return level_one_frame([base_model_predictions(m, X, self.problem_type) for m in self.base_models])

    def predict(self, X):
        return self.metalearner.predict(self._level_one(X))

    def predict_proba(self, X):
        return self.metalearner.predict_proba(self._level_one(X))

    def __repr__(self) -> str:
        return f"StackedEnsembleModel(base_models={len(self.base_models)}, problem_type={self.problem_type!r})"


__all__ = [
    "StackedEnsembleBlock",
    "StackedEnsembleModel",
    "base_model_predictions",
    "level_one_frame",
]
