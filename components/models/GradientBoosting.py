from __future__ import annotations

from typing import Any, Dict, List

from components.base import BaseEstimatorBlock, BuildConfig, SearchPlan


class GradientBoostingBlock(BaseEstimatorBlock):
    """Adapter for ``sklearn.ensemble.GradientBoosting{Regressor,Classifier}``."""

    signature = {
        "type": "model",
        "name": "GradientBoosting",
        "algo": "GBM",
        "hyperparameters": {
            "n_estimators": "int",
            "learning_rate": "float",
            "max_depth": "int",
            "min_samples_leaf": "int",
            "subsample": "float",
            "max_features": "float",
        },
    }

    incremental_param = "n_estimators"
    incremental_step = 25

    def _make_impl(self, problem_type: str, **kwargs):
        from sklearn.ensemble import GradientBoostingClassifier, GradientBoostingRegressor

        impl_cls = GradientBoostingRegressor if problem_type == "regression" else GradientBoostingClassifier
        return impl_cls(warm_start=True, **kwargs)

    def fitted_increments(self):
        return getattr(self._impl, "n_estimators_", None)

    @classmethod
    def stopping_params(cls, stopping_rounds: int, stopping_tolerance: float) -> Dict[str, Any]:
        if stopping_rounds <= 0:
            return {}
        return {"n_iter_no_change": stopping_rounds, "tol": stopping_tolerance, "validation_fraction": 0.1}

    @classmethod
    def default_builds(cls) -> List[BuildConfig]:
        # five fixed configurations of increasing depth
        base = {"n_estimators": 500, "subsample": 0.8, "max_features": 0.8, "learning_rate": 0.1}
        depth_and_leaf = [(6, 1), (7, 10), (8, 10), (10, 10), (15, 100)]
        return [
            BuildConfig(f"GBM {i}", dict(base, max_depth=depth, min_samples_leaf=leaf))
            for i, (depth, leaf) in enumerate(depth_and_leaf, start=1)
        ]

    @classmethod
    def search_plans(cls) -> List[SearchPlan]:
        return [
            SearchPlan(
                "GBM hyperparameter search",
                {"n_estimators": 500},
                {
                    "max_depth": list(range(3, 18)),
                    "min_samples_leaf": [1, 5, 10, 15, 30, 100],
                    "learning_rate": [0.001, 0.005, 0.008, 0.01, 0.05, 0.08, 0.1, 0.5, 0.8],
                    "subsample": [0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
                    "max_features": [0.4, 0.7, 1.0],
                    "min_impurity_decrease": [1e-4, 1e-5],
                },
            )
        ]
