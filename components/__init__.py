"""AutoML Components Package

Groups the algorithm families the orchestrator knows about.  Each family is an
``Algo`` member mapped to the ``BaseEstimatorBlock`` subclass under
``components/models`` that builds its estimators and describes its default
builds and hyper-parameter searches.
"""
from __future__ import annotations

import importlib
from enum import Enum
from typing import Dict, Tuple, Type

# algo name -> (module under components.models, block class name)
_BLOCKS: Dict[str, Tuple[str, str]] = {
    "DeepLearning": ("MLP", "MLPBlock"),
    "DRF": ("RandomForest", "RandomForestBlock"),
    "GBM": ("GradientBoosting", "GradientBoostingBlock"),
    "GLM": ("GLM", "GLMBlock"),
    "XGBoost": ("XGBoost", "XGBoostBlock"),
    "StackedEnsemble": ("StackedEnsemble", "StackedEnsembleBlock"),
}

# Families backed by an optional third-party library.
_OPTIONAL_BACKENDS: Dict[str, str] = {
    "XGBoost": "xgboost",
}


class Algo(Enum):
    DeepLearning = "DeepLearning"
    DRF = "DRF"
    GBM = "GBM"
    GLM = "GLM"
    XGBoost = "XGBoost"
    StackedEnsemble = "StackedEnsemble"

    @property
    def block(self) -> Type:
        module_name, class_name = _BLOCKS[self.value]
        module = importlib.import_module(f"{__name__}.models.{module_name}")
        return getattr(module, class_name)

    def enabled(self) -> bool:
        """``False`` when the family's backend library is not installed."""
        backend = _OPTIONAL_BACKENDS.get(self.value)
        if backend is None:
            return True
        from engines import discover_available

        return backend in discover_available()

    @classmethod
    def resolve(cls, name: "str | Algo") -> "Algo":
        """Case-insensitive lookup by name."""
        if isinstance(name, cls):
            return name
        for member in cls:
            if member.value.lower() == str(name).lower():
                return member
        raise ValueError(f"Unknown algorithm: {name}")


__all__ = ["Algo"]
