from __future__ import annotations

from typing import List, Tuple

import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.impute import SimpleImputer
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler


def split_columns(X: pd.DataFrame) -> Tuple[List[str], List[str]]:
    """Return ``(numeric_columns, categorical_columns)`` of *X*."""
    numeric = list(X.select_dtypes(include="number").columns)
    categorical = [c for c in X.columns if c not in numeric]
    return numeric, categorical


def build_preprocessor(X: pd.DataFrame) -> ColumnTransformer:
    """Unfitted preprocessing shared by every model trained on *X*.

    Parameters
    ----------
    X : pd.DataFrame
        Feature matrix; only its dtypes are inspected.

    Returns
    -------
    ColumnTransformer
        Median-imputed, standardised numeric columns and most-frequent-imputed,
        one-hot encoded categorical columns.  Other columns are dropped.
    """
    numeric, categorical = split_columns(X)

    # ------------------------------------------------------------------
    # Numeric columns
    # ------------------------------------------------------------------
    numeric_pipeline = Pipeline([
        ("impute", SimpleImputer(strategy="median")),
        ("scale", StandardScaler()),
    ])

    # ------------------------------------------------------------------
    # Categorical columns
    # ------------------------------------------------------------------
    categorical_pipeline = Pipeline([
        ("impute", SimpleImputer(strategy="most_frequent")),
        ("onehot", OneHotEncoder(handle_unknown="ignore", sparse_output=False)),
    ])

    transformers = []
    if numeric:
        transformers.append(("numeric", numeric_pipeline, numeric))
    if categorical:
        transformers.append(("categorical", categorical_pipeline, categorical))
    return ColumnTransformer(transformers, remainder="drop")


__all__ = ["split_columns", "build_preprocessor"]
