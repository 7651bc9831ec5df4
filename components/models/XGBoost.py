from __future__ import annotations

from typing import List

from components.base import BaseEstimatorBlock, BuildConfig, SearchPlan


class XGBoostBlock(BaseEstimatorBlock):
    """Adapter for ``xgboost.XGB{Regressor,Classifier}`` (optional backend)."""

    signature = {
        "type": "model",
        "name": "XGBoost",
        "algo": "XGBoost",
        "hyperparameters": {
            "n_estimators": "int",
            "learning_rate": "float",
            "max_depth": "int",
            "min_child_weight": "float",
            "subsample": "float",
            "colsample_bytree": "float",
        },
    }

    def _make_impl(self, problem_type: str, **kwargs):
        from xgboost import XGBClassifier, XGBRegressor

        impl_cls = XGBRegressor if problem_type == "regression" else XGBClassifier
        return impl_cls(n_jobs=1, **kwargs)

    @classmethod
    def default_builds(cls) -> List[BuildConfig]:
        base = {"n_estimators": 300, "learning_rate": 0.05, "colsample_bylevel": 0.8, "colsample_bytree": 0.8}
        return [
            BuildConfig("XGBoost 1", dict(base, max_depth=10, min_child_weight=5, subsample=0.6)),   # medium
            BuildConfig("XGBoost 2", dict(base, max_depth=20, min_child_weight=10, subsample=0.6)),  # deep
            BuildConfig("XGBoost 3", dict(base, max_depth=5, min_child_weight=3, subsample=0.8)),    # shallow
        ]

    @classmethod
    def search_plans(cls) -> List[SearchPlan]:
        return [
            SearchPlan(
                "XGBoost hyperparameter search",
                {"n_estimators": 300, "learning_rate": 0.05},
                {
                    "max_depth": [5, 10, 15, 20],
                    "min_child_weight": [0.01, 0.1, 1.0, 3.0, 5.0, 10.0, 15.0, 20.0],
                    "subsample": [0.6, 0.8, 1.0],
                    "colsample_bylevel": [0.6, 0.8, 1.0],
                    "colsample_bytree": [0.7, 0.8, 0.9, 1.0],
                    # gbtree listed twice so it is sampled more often than dart
                    "booster": ["gbtree", "gbtree", "dart"],
                    "reg_lambda": [0.001, 0.01, 0.1, 1.0, 10.0, 100.0],
                    "reg_alpha": [0.001, 0.01, 0.1, 0.5, 1.0],
                },
            )
        ]
