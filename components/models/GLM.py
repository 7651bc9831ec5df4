from __future__ import annotations

from typing import List

from components.base import BaseEstimatorBlock, SearchPlan


class GLMBlock(BaseEstimatorBlock):
    """Adapter for elastic-net GLMs.

    Regression uses ``sklearn.linear_model.ElasticNet``; classification uses
    ``LogisticRegression`` with an elastic-net penalty, where ``C = 1 / alpha``.
    """

    signature = {
        "type": "model",
        "name": "GLM",
        "algo": "GLM",
        "hyperparameters": {
            "alpha": "float",
            "l1_ratio": "float",
            "max_iter": "int",
        },
    }

    supports_class_weight = True

    def _make_impl(self, problem_type: str, alpha: float = 1.0, l1_ratio: float = 0.5, **kwargs):
        from sklearn.linear_model import ElasticNet, LogisticRegression

        if problem_type == "regression":
            kwargs.pop("class_weight", None)
            return ElasticNet(alpha=alpha, l1_ratio=l1_ratio, **kwargs)
        return LogisticRegression(
            penalty="elasticnet", solver="saga", C=1.0 / max(alpha, 1e-12), l1_ratio=l1_ratio, **kwargs
        )

    @classmethod
    def search_plans(cls) -> List[SearchPlan]:
        return [
            SearchPlan(
                "GLM hyperparameter search",
                {"max_iter": 2000},
                {
                    "l1_ratio": [0.0, 0.2, 0.4, 0.6, 0.8, 1.0],
                    "alpha": [1e-4, 1e-3, 1e-2, 1e-1, 1.0],
                },
            )
        ]
