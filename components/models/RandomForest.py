from __future__ import annotations

from typing import List

from components.base import BaseEstimatorBlock, BuildConfig


class RandomForestBlock(BaseEstimatorBlock):
    """Adapter for the ``sklearn.ensemble`` random forests (DRF and XRT)."""

    signature = {
        "type": "model",
        "name": "RandomForest",
        "algo": "DRF",
        "hyperparameters": {
            "n_estimators": "int",
            "max_depth": "int_or_none",
            "min_samples_leaf": "int",
            "extremely_randomized": "bool",
        },
    }

    incremental_param = "n_estimators"
    incremental_step = 10
    supports_class_weight = True

    def _make_impl(self, problem_type: str, extremely_randomized: bool = False, **kwargs):
        from sklearn.ensemble import (
            ExtraTreesClassifier,
            ExtraTreesRegressor,
            RandomForestClassifier,
            RandomForestRegressor,
        )

        self.extremely_randomized = extremely_randomized
        if problem_type == "regression":
            impl_cls = ExtraTreesRegressor if extremely_randomized else RandomForestRegressor
            kwargs.pop("class_weight", None)
        else:
            impl_cls = ExtraTreesClassifier if extremely_randomized else RandomForestClassifier
        return impl_cls(warm_start=True, **kwargs)

    def fitted_increments(self):
        return len(getattr(self._impl, "estimators_", []))

    @classmethod
    def default_builds(cls) -> List[BuildConfig]:
        base = {"n_estimators": 50, "max_depth": 20, "min_samples_leaf": 1}
        return [
            BuildConfig("DRF", dict(base)),
            BuildConfig("XRT", dict(base, extremely_randomized=True)),
        ]
