"""Training routines executed by the local task substrate.

Each routine runs on a worker thread and cooperates with its ``TaskContext``:
it reports a completed fraction in ``[0, 1]`` and checks for stop requests
between units of work (cross-validation folds, boosting/bagging increments,
search candidates).  A build that is asked to stop returns ``None``; a build
that runs out of its own time budget returns the model trained so far.
"""
from __future__ import annotations

import logging
import math
import pickle
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.metrics import (
    accuracy_score,
    balanced_accuracy_score,
    log_loss,
    mean_absolute_error,
    mean_squared_error,
    r2_score,
    roc_auc_score,
)
from sklearn.model_selection import ParameterSampler, cross_val_predict
from sklearn.pipeline import Pipeline

from components.base import ModelResult, SearchResult, TaskParameters, TrainingData
from components.models.StackedEnsemble import (
    StackedEnsembleModel,
    base_model_predictions,
    level_one_frame,
)
from engines.object_store import ObjectStore
from scripts.feature_engineering import build_preprocessor

logger = logging.getLogger(__name__)


class TaskContext:
    """Progress, stop flag and runtime limit of one running task."""

    def __init__(self, max_runtime_secs: float = 0.0, stop_event: Optional[threading.Event] = None):
        self.max_runtime_secs = max_runtime_secs or 0.0
        self._stop = stop_event if stop_event is not None else threading.Event()
        self._started = time.monotonic()
        self._progress = 0.0
        self._lock = threading.Lock()

    def child(self, max_runtime_secs: float) -> "TaskContext":
        """Context for a sub-task sharing this task's stop flag."""
        return TaskContext(max_runtime_secs, stop_event=self._stop)

    def request_stop(self) -> None:
        self._stop.set()

    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def remaining(self) -> float:
        if not self.max_runtime_secs:
            return math.inf
        return max(0.0, self.max_runtime_secs - self.elapsed())

    def out_of_time(self) -> bool:
        return bool(self.max_runtime_secs) and self.elapsed() >= self.max_runtime_secs

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    def report(self, fraction: float) -> None:
        with self._lock:
            self._progress = max(self._progress, min(1.0, max(0.0, fraction)))


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------

def response_classes(data: TrainingData) -> Optional[List[Any]]:
    if not data.is_classification:
        return None
    return sorted(data.train[data.response_column].dropna().unique().tolist())


def encode_response(y: pd.Series, classes: Optional[List[Any]]) -> np.ndarray:
    """Class labels as integer codes (``-1`` for unseen labels); numeric otherwise."""
    if classes is None:
        return y.to_numpy(dtype=float)
    return np.asarray(pd.Categorical(y, categories=classes).codes, dtype=int)


def fold_ids(data: TrainingData, n_rows: int) -> Optional[np.ndarray]:
    if data.fold_column:
        return data.train[data.fold_column].to_numpy()
    if data.nfolds >= 2:
        return np.arange(n_rows) % data.nfolds
    return None


def _predictions(model: Any, X, problem_type: str, n_classes: int) -> np.ndarray:
    """Point predictions for regression, class probabilities for classification."""
    if problem_type == "regression":
        return np.asarray(model.predict(X), dtype=float)
    proba = np.asarray(model.predict_proba(X), dtype=float)
    aligned = np.zeros((proba.shape[0], n_classes))
    aligned[:, np.asarray(model.classes_, dtype=int)] = proba
    if problem_type == "binomial":
        return aligned[:, 1]
    return aligned


def score(problem_type: str, y_true: np.ndarray, predicted: np.ndarray, n_classes: int = 0) -> Dict[str, float]:
    """Regression or classification metrics for *predicted* (see ``_predictions``)."""
    if problem_type == "regression":
        mse = mean_squared_error(y_true, predicted)
        return {
            "rmse": float(np.sqrt(mse)),
            "mse": float(mse),
            "mae": float(mean_absolute_error(y_true, predicted)),
            "r2": float(r2_score(y_true, predicted)),
            "mean_residual_deviance": float(mse),
        }

    known = y_true >= 0
    y_true, predicted = y_true[known], predicted[known]
    if problem_type == "binomial":
        proba = np.column_stack([1.0 - predicted, predicted])
    else:
        proba = predicted
    labels = list(range(n_classes))
    y_pred = proba.argmax(axis=1)
    try:
        if problem_type == "binomial":
            auc = roc_auc_score(y_true, predicted)
        else:
            auc = roc_auc_score(y_true, proba, multi_class="ovr", labels=labels)
    except ValueError as exc:
        logger.debug("AUC undefined: %s", exc)
        auc = math.nan
    return {
        "auc": float(auc),
        "logloss": float(log_loss(y_true, np.clip(proba, 1e-15, 1.0), labels=labels)),
        "accuracy": float(accuracy_score(y_true, y_pred)),
        "mean_per_class_error": float(1.0 - balanced_accuracy_score(y_true, y_pred)),
    }


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

def block_params(block_cls, parameters: TaskParameters) -> Dict[str, Any]:
    stopping = parameters.stopping
    params = dict(block_cls.stopping_params(stopping.rounds, stopping.tolerance))
    params.update(parameters.params)
    if parameters.balance_classes and block_cls.supports_class_weight and parameters.data.is_classification:
        params.setdefault("class_weight", "balanced")
    seed_param = block_cls.seed_param
    if seed_param and params.get(seed_param) is not None:
        params[seed_param] = int(params[seed_param]) % (2 ** 32)
    return params


def check_parameters(block_cls, parameters: TaskParameters) -> None:
    """Raise ``ValueError`` if the estimator rejects the parameters."""
    try:
        block_cls(parameters.data.problem_type, **block_params(block_cls, parameters))
    except TypeError as exc:
        raise ValueError(f"Illegal parameters for {parameters.key}: {exc}") from exc


# ---------------------------------------------------------------------------
# Model builds
# ---------------------------------------------------------------------------

def _fit_block(block_cls, params, problem_type, X, y, w, ctx: Optional[TaskContext] = None,
               progress_from: float = 0.0, progress_to: float = 1.0):
    block = block_cls(problem_type, **params)
    param = block.incremental_param
    if param is None or ctx is None:
        block.fit(X, y, sample_weight=w)
        return block

    target = int(block.get_params()[param])
    built = 0
    while built < target:
        if ctx.stop_requested():
            return None
        built = min(target, built + block.incremental_step)
        block.set_params(**{param: built})
        block.fit(X, y, sample_weight=w)
        ctx.report(progress_from + (progress_to - progress_from) * built / target)
        fitted = block.fitted_increments()
        if fitted is not None and fitted < built:
            break  # converged
        if ctx.out_of_time() and built < target:
            logger.debug("Max runtime reached after %d/%d %s", built, target, param)
            break
    return block


def _fit_pipeline(block_cls, params, problem_type, X, y, w, ctx=None, progress_from=0.0, progress_to=1.0):
    preprocessor = build_preprocessor(X)
    Xt = preprocessor.fit_transform(X)
    block = _fit_block(block_cls, params, problem_type, Xt, y, w, ctx, progress_from, progress_to)
    if block is None:
        return None
    return Pipeline([("preprocess", preprocessor), ("model", block)])


def _evaluate(model, data: TrainingData, classes, cv_predictions, y_train) -> Dict[str, float]:
    """Leaderboard frame, else out-of-fold predictions, else validation, else training frame."""
    n_classes = len(classes) if classes else 0
    if data.leaderboard is not None:
        frame = data.leaderboard
    elif cv_predictions is not None:
        return score(data.problem_type, y_train, cv_predictions, n_classes)
    elif data.validation is not None:
        frame = data.validation
    else:
        frame = data.train
    X, y, _ = data.split(frame)
    return score(data.problem_type, encode_response(y, classes), _predictions(model, X, data.problem_type, n_classes), n_classes)


def _export_checkpoint(result: ModelResult, directory: str) -> None:
    path = Path(directory)
    path.mkdir(parents=True, exist_ok=True)
    with open(path / f"{result.key}.pkl", "wb") as f:
        pickle.dump(result.model, f)
    logger.info("Checkpoint for %s saved to %s", result.key, path)


def train_model(parameters: TaskParameters, block_cls, ctx: TaskContext, store: ObjectStore) -> Optional[ModelResult]:
    """Cross-validate (when enabled) and fit one model; ``None`` when stopped."""
    start = time.perf_counter()
    data = parameters.data
    problem_type = data.problem_type
    X, y, w = data.split(data.train)
    classes = response_classes(data)
    n_classes = len(classes) if classes else 0
    y_enc = encode_response(y, classes)
    params = block_params(block_cls, parameters)

    folds = fold_ids(data, len(X))
    cv_predictions = None
    cv_models: List[Any] = []
    main_from = 0.0
    if folds is not None:
        unique_folds = np.unique(folds)
        n_steps = len(unique_folds) + 1
        oof = np.zeros((len(X), n_classes)) if problem_type == "multinomial" else np.zeros(len(X))
        for i, fold in enumerate(unique_folds):
            if ctx.stop_requested():
                return None
            if ctx.out_of_time():
                logger.debug("%s: max runtime reached during cross-validation", parameters.key)
                oof = None
                break
            holdout = folds == fold
            fold_model = _fit_pipeline(
                block_cls, params, problem_type,
                X[~holdout], y_enc[~holdout], None if w is None else w[~holdout],
            )
            oof[holdout] = _predictions(fold_model, X[holdout], problem_type, n_classes)
            cv_models.append(fold_model)
            ctx.report((i + 1) / n_steps)
        cv_predictions = oof
        main_from = (n_steps - 1) / n_steps

    model = _fit_pipeline(block_cls, params, problem_type, X, y_enc, w, ctx, main_from, 1.0)
    if model is None:
        return None

    result = ModelResult(
        key=parameters.key,
        algo=block_cls.signature.get("algo", block_cls.__name__),
        model_type=parameters.model_type,
        model=model,
        metrics=_evaluate(model, data, classes, cv_predictions, y_enc),
        params=params,
        cv_predictions=cv_predictions,
        cv_models=cv_models if parameters.keep_cross_validation_models else None,
        fold_assignment=folds if parameters.keep_cross_validation_fold_assignment else None,
        classes=classes,
        run_time_secs=time.perf_counter() - start,
    )
    store.put(result.key, result)
    if parameters.export_checkpoints_dir:
        _export_checkpoint(result, parameters.export_checkpoints_dir)
    ctx.report(1.0)
    logger.debug("%s trained in %.2fs: %s", result.key, result.run_time_secs, result.metrics)
    return result


# ---------------------------------------------------------------------------
# Hyper-parameter search
# ---------------------------------------------------------------------------

def grid_size(hyper_params: Dict[str, Sequence[Any]]) -> int:
    size = 1
    for values in hyper_params.values():
        size *= len(values)
    return size


def run_search(parameters: TaskParameters, block_cls, ctx: TaskContext, store: ObjectStore,
               result: SearchResult) -> SearchResult:
    """Random discrete search; models are appended to *result* as they finish."""
    criteria = parameters.search_criteria
    total = grid_size(parameters.hyper_params)
    n_iter = min(criteria.max_models, total) if criteria.max_models else total
    seed = None if criteria.seed is None else int(criteria.seed) % (2 ** 32)
    search_ctx = ctx.child(criteria.max_runtime_secs)

    built = 0
    for candidate in ParameterSampler(parameters.hyper_params, n_iter=n_iter, random_state=seed):
        if ctx.stop_requested() or search_ctx.out_of_time():
            break
        model_key = result.next_model_key()
        per_model = parameters.max_runtime_secs or 0.0
        if criteria.max_runtime_secs:
            remaining = search_ctx.remaining()
            per_model = min(per_model, remaining) if per_model else remaining
        model_params = dict(parameters.params)
        model_params.update(candidate)
        sub = replace(parameters, key=model_key, params=model_params, max_runtime_secs=per_model)
        try:
            model = train_model(sub, block_cls, ctx.child(per_model), store)
        except Exception as exc:  # noqa: BLE001
            logger.warning("[Search|%s] Candidate %s failed: %s", result.key, candidate, exc)
            result.add_failure(candidate, str(exc))
            continue
        if model is None:
            break
        result.append(model.key)
        built += 1
        fraction = built / n_iter
        if criteria.max_runtime_secs:
            fraction = max(fraction, search_ctx.elapsed() / criteria.max_runtime_secs)
        ctx.report(fraction)

    logger.info("[Search|%s] built %d model(s), %d failure(s)", result.key, result.count, len(result.failures))
    return result


# ---------------------------------------------------------------------------
# Stacked ensembles
# ---------------------------------------------------------------------------

def build_stacked_ensemble(parameters: TaskParameters, block_cls, ctx: TaskContext,
                           store: ObjectStore) -> Optional[ModelResult]:
    start = time.perf_counter()
    data = parameters.data
    problem_type = data.problem_type
    classes = response_classes(data)
    n_classes = len(classes) if classes else 0

    bases = []
    for key in parameters.base_models:
        base = store.get(key)
        if base is None:
            raise ValueError(f"Base model {key} not found")
        bases.append(base)

    if data.blending is not None:
        X_blend, y_blend, _ = data.split(data.blending)
        columns = [base_model_predictions(b.model, X_blend, problem_type) for b in bases]
        y_level_one = encode_response(y_blend, classes)
    else:
        usable = [b for b in bases if b.cv_predictions is not None]
        if len(usable) < len(bases):
            logger.warning("%s: %d base model(s) without cross-validation predictions dropped",
                           parameters.key, len(bases) - len(usable))
        bases = usable
        columns = [b.cv_predictions for b in bases]
        y_level_one = encode_response(data.train[data.response_column], classes)
    if not bases:
        raise ValueError("No usable base models for the stacked ensemble")

    level_one = level_one_frame(columns)
    known = y_level_one >= 0 if classes else np.ones(len(y_level_one), dtype=bool)
    ctx.report(0.5)
    if ctx.stop_requested():
        return None

    metalearner = block_cls(problem_type)
    metalearner.fit(level_one[known], y_level_one[known])
    model = StackedEnsembleModel([b.model for b in bases], [b.key for b in bases], metalearner, problem_type, classes)

    eval_frame = data.leaderboard if data.leaderboard is not None else data.validation
    if eval_frame is not None:
        X_eval, y_eval, _ = data.split(eval_frame)
        metrics = score(problem_type, encode_response(y_eval, classes),
                        _predictions(model, X_eval, problem_type, n_classes), n_classes)
    else:
        method = "predict" if problem_type == "regression" else "predict_proba"
        cv_pred = cross_val_predict(block_cls(problem_type)._impl, level_one[known], y_level_one[known],
                                    cv=min(5, int(known.sum())), method=method)
        if problem_type == "binomial":
            cv_pred = cv_pred[:, 1]
        metrics = score(problem_type, y_level_one[known], cv_pred, n_classes)

    result = ModelResult(
        key=parameters.key,
        algo="StackedEnsemble",
        model_type="StackedEnsemble",
        model=model,
        metrics=metrics,
        params={"base_models": [b.key for b in bases]},
        classes=classes,
        run_time_secs=time.perf_counter() - start,
        is_ensemble=True,
    )
    store.put(result.key, result)
    if parameters.export_checkpoints_dir:
        _export_checkpoint(result, parameters.export_checkpoints_dir)
    ctx.report(1.0)
    return result


__all__ = [
    "TaskContext",
    "response_classes",
    "encode_response",
    "fold_ids",
    "score",
    "block_params",
    "check_parameters",
    "train_model",
    "grid_size",
    "run_search",
    "build_stacked_ensemble",
]
