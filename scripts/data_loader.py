from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
from pandas.api import types as ptypes


def load_frame(path: str | Path, **kwargs) -> pd.DataFrame:
    """Load a tabular dataset (predictors and response in one file).

    Parameters
    ----------
    path : str | Path
        Path to a CSV or Parquet file.
    **kwargs
        Additional keyword arguments passed to the underlying pandas reader.

    Returns
    -------
    pd.DataFrame
        The loaded frame.

    Raises
    ------
    ValueError
        If the file format is unsupported or the file holds no rows.
    FileNotFoundError
        If the specified path does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")

    if path.suffix == ".csv":
        frame = pd.read_csv(path, **kwargs)
    elif path.suffix in (".parquet", ".pq"):
        frame = pd.read_parquet(path, **kwargs)
    else:
        raise ValueError(f"Unsupported data file format: {path.suffix}")

    if frame.empty:
        raise ValueError(f"Data file contains no rows: {path}")
    return frame


def frame_checksum(frame: pd.DataFrame) -> int:
    """Content checksum used to verify a frame was not modified during a run."""
    values = pd.util.hash_pandas_object(frame, index=True).to_numpy()
    columns = pd.util.hash_pandas_object(pd.Index(frame.columns.astype(str)), index=False).to_numpy()
    with np.errstate(over="ignore"):
        return int(values.sum(dtype=np.uint64) ^ columns.sum(dtype=np.uint64))


def infer_problem_type(response: pd.Series) -> str:
    """``regression`` for numeric responses, else ``binomial``/``multinomial``."""
    if ptypes.is_bool_dtype(response) or not ptypes.is_numeric_dtype(response):
        n_classes = response.dropna().nunique()
        return "binomial" if n_classes <= 2 else "multinomial"
    return "regression"


def frame_density(frame: pd.DataFrame) -> float:
    """Fraction of non-zero, non-missing cells among the numeric columns."""
    numeric = frame.select_dtypes(include="number")
    if numeric.size == 0:
        return 1.0
    nonzero = numeric.notna() & (numeric != 0)
    return float(nonzero.to_numpy().sum()) / numeric.size


__all__ = ["load_frame", "frame_checksum", "infer_problem_type", "frame_density"]
