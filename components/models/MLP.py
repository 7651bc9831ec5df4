from __future__ import annotations

from typing import Any, Dict, List

from components.base import BaseEstimatorBlock, BuildConfig, SearchPlan


class MLPBlock(BaseEstimatorBlock):
    """Adapter for ``sklearn.neural_network.MLP{Regressor,Classifier}``."""

    signature = {
        "type": "model",
        "name": "MLP",
        "algo": "DeepLearning",
        "hyperparameters": {
            "hidden_layer_sizes": "tuple",
            "activation": "str",
            "alpha": "float",
            "beta_2": "float",
            "epsilon": "float",
        },
    }

    def _make_impl(self, problem_type: str, **kwargs):
        from sklearn.neural_network import MLPClassifier, MLPRegressor

        impl_cls = MLPRegressor if problem_type == "regression" else MLPClassifier
        return impl_cls(**kwargs)

    @classmethod
    def stopping_params(cls, stopping_rounds: int, stopping_tolerance: float) -> Dict[str, Any]:
        if stopping_rounds <= 0:
            return {}
        return {"early_stopping": True, "n_iter_no_change": stopping_rounds, "tol": stopping_tolerance}

    @classmethod
    def default_builds(cls) -> List[BuildConfig]:
        return [BuildConfig("Default Deep Learning build", {"hidden_layer_sizes": (10, 10, 10), "max_iter": 200})]

    @classmethod
    def search_plans(cls) -> List[SearchPlan]:
        base = {"max_iter": 500, "solver": "adam", "activation": "relu"}
        common = {
            "beta_2": [0.9, 0.95, 0.99],
            "epsilon": [1e-6, 1e-7, 1e-8, 1e-9],
            "alpha": [0.0, 1e-4, 1e-3, 1e-2, 1e-1],
        }
        plans = []
        for depth in (1, 2, 3):
            hidden = [(width,) * depth for width in (50, 200, 500)]
            plans.append(
                SearchPlan(
                    f"DeepLearning hyperparameter search {depth}",
                    dict(base),
                    dict(common, hidden_layer_sizes=hidden),
                )
            )
        return plans
