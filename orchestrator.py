"""AutoML Orchestrator – Budgeted Model-Search Controller

This module runs a fixed, ordered sequence of model builds and random
hyper-parameter searches against a global time / model-count budget, ranks the
resulting models on a per-project leaderboard and finally stacks the best of
them into ensembles.

Only the orchestration logic lives here; model fitting runs on the task
substrate in ``engines/``.
"""
from __future__ import annotations

import argparse
import json
import logging
import math
import os
import pickle
import sys
import threading
import time
from concurrent.futures import Future
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from rich.console import Console
from rich.tree import Tree

from components import Algo
from components.base import (
    BaseEngine,
    BaseTaskHandle,
    SearchCriteria,
    SearchPlan,
    StoppingParams,
    TaskParameters,
    TrainingData,
)
from engines.local_engine import LocalEngine
from engines.object_store import ObjectStore
from scripts.budget import Countdown
from scripts.build_spec import (
    AutoMLBuildSpec,
    AutoMLConfigurationError,
    BuildControl,
    BuildModels,
    InputSpec,
    StoppingCriteria,
)
from scripts.config import (
    AUTO_STOPPING_METRIC,
    AUTO_STOPPING_TOLERANCE,
    DEFAULT_BINOMIAL_METRIC,
    DEFAULT_METRIC,
    DEFAULT_MULTINOMIAL_METRIC,
    DEFAULT_NFOLDS,
    DEFAULT_WORK_PLAN,
    LEARN_STEPS,
    POLL_INTERVAL_SECS,
    RANDOM_SEED_SENTINEL,
    RANDOM_STATE,
    WALLCLOCK_LIMIT_SEC,
    metric_is_increasing,
)
from scripts.counters import InstanceCounter
from scripts.data_loader import frame_checksum, frame_density, infer_problem_type, load_frame
from scripts.event_log import DATE_TIME_FORMAT, EventLog, Stage
from scripts.leaderboard import LeaderboardRef, LeaderboardStore
from scripts.partition import partition_frames
from scripts.progress import RunProgress
from scripts.work_plan import JobType, Work, WorkAllocations

# Define the project version
__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# Rich console with recording enabled so we can persist logs afterwards
console = Console(highlight=False, record=True)

KEY_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class AutoMLStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Start-time de-duplication
# ---------------------------------------------------------------------------
# Model keys embed the start time to the second, so two runs started within
# the same second get consecutive start times instead.
_start_time_lock = threading.Lock()
_last_start_time: Optional[datetime] = None


def _unique_start_time(now: datetime) -> datetime:
    global _last_start_time
    now = now.replace(microsecond=0)
    with _start_time_lock:
        if _last_start_time is not None and now <= _last_start_time:
            now = _last_start_time + timedelta(seconds=1)
        _last_start_time = now
    return now


def default_stopping_tolerance(frame: pd.DataFrame) -> float:
    """``min(0.05, max(0.001, 1/sqrt(density * rows)))``."""
    weight = frame_density(frame) * len(frame)
    if weight <= 0:
        return 0.05
    return min(0.05, max(0.001, 1.0 / math.sqrt(weight)))


def model_type_for(key: str, algo: str) -> str:
    return "XRT" if key.startswith("XRT_") else algo


class AutoML:
    """One budgeted AutoML run.

    The run is configured (and its inputs validated) on construction; ``run()``
    executes it on the calling thread while ``start()`` hands it to the
    engine's run pool.  Every decision taken along the way is recorded in the
    project's event log.
    """

    def __init__(
        self,
        build_spec: AutoMLBuildSpec,
        *,
        engine: Optional[BaseEngine] = None,
        store: Optional[ObjectStore] = None,
        counter: Optional[InstanceCounter] = None,
        tick_interval: float = POLL_INTERVAL_SECS,
        work_plan: Optional[Sequence[Tuple[str, int, str, int]]] = None,
        steps: Sequence[Tuple[str, str, Optional[str]]] = LEARN_STEPS,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        build_spec.validate()
        self.build_spec = build_spec
        if engine is None:
            engine = LocalEngine(store)
        self.engine = engine
        self.store = store if store is not None else engine.store
        self.counter = counter if counter is not None else InstanceCounter()
        self.tick_interval = tick_interval
        self._steps = tuple(steps)
        self._time_fn = time_fn

        self.project_name = build_spec.project()
        self.start_time = _unique_start_time(datetime.now())
        self.timestamp = self.start_time.strftime(KEY_TIMESTAMP_FORMAT)
        self.key = f"AutoML_{self.timestamp}"
        self.status = AutoMLStatus.IDLE

        self._jobs: List[BaseTaskHandle] = []
        self._model_count = 0
        self._individual_models_trained = 0
        self._added_keys: List[str] = []
        self._created_keys: List[str] = []
        self._run_future: Optional[Future] = None

        event_log_key = EventLog.key_for(self.project_name)
        if not self.store.contains(event_log_key):
            self._created_keys.append(event_log_key)
        self.event_log = EventLog.get_or_make(self.store, self.project_name)

        try:
            self._initialize(work_plan)
        except Exception:
            self.delete()  # cleanup potentially leaked keys
            raise

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _initialize(self, work_plan) -> None:
        spec = self.build_spec
        control = spec.build_control
        criteria = control.stopping_criteria
        el = self.event_log

        el.info(Stage.WORKFLOW, f"Project: {self.project_name}")
        el.info(
            Stage.WORKFLOW,
            f"AutoML job created: {self.start_time.strftime(DATE_TIME_FORMAT)}",
            creation_epoch=self.start_time.timestamp(),
        )

        self.max_models = criteria.max_models
        self.max_runtime_secs = criteria.resolved_max_runtime_secs()
        self.countdown = Countdown.from_seconds(self.max_runtime_secs, time_fn=self._time_fn)
        self.work_plan = self._plan_work(work_plan)

        inp = spec.input_spec
        self.nfolds = control.nfolds
        if inp.fold_column is not None:
            el.warn(
                Stage.WORKFLOW,
                f"Custom fold column, {inp.fold_column}, will be used. nfolds value will be ignored.",
            )
            self.nfolds = 0

        self.seed = criteria.seed
        el.info(
            Stage.WORKFLOW,
            f"Build control seed: {self.seed}" + (" (random)" if self.seed == RANDOM_SEED_SENTINEL else ""),
        )

        self.training_data = self._handle_datafile_parameters()
        self.stopping = self._stopping_params()

        leaderboards = LeaderboardStore(self.store)
        if not leaderboards.exists(self.project_name):
            self._created_keys.append(LeaderboardStore.key_for(self.project_name))
        self.leaderboard: LeaderboardRef = leaderboards.get_or_create(self.project_name, self.sort_metric)
        self._progress = RunProgress(self.work_plan.remaining_work())

    def _plan_work(self, table) -> WorkAllocations:
        models = self.build_spec.build_models
        if models.include_algos is not None and models.exclude_algos is not None:
            raise AutoMLConfigurationError(
                "Parameters `exclude_algos` and `include_algos` are mutually exclusive: "
                "please use only one of them if necessary."
            )
        try:
            if models.exclude_algos is not None:
                skipped = {Algo.resolve(a) for a in models.exclude_algos}
            elif models.include_algos is not None:
                skipped = set(Algo) - {Algo.resolve(a) for a in models.include_algos}
            else:
                skipped = set()
        except ValueError as exc:
            raise AutoMLConfigurationError(str(exc)) from exc

        for algo in Algo:
            if algo not in skipped and not algo.enabled():
                self.event_log.warn(Stage.MODEL_TRAINING, f"AutoML: {algo.value} is not available; skipping it.")
                skipped.add(algo)

        plan = WorkAllocations.from_table(table if table is not None else DEFAULT_WORK_PLAN, resolve=Algo.resolve)
        plan.end()
        for algo in Algo:
            if algo in skipped:
                self.event_log.info(Stage.MODEL_TRAINING, f"Disabling Algo: {algo.value} as requested by the user.")
                plan.remove(algo)
        return plan

    def _handle_datafile_parameters(self) -> TrainingData:
        inp = self.build_spec.input_spec
        el = self.event_log
        train = inp.training_frame
        if train is None:
            raise AutoMLConfigurationError("Training frame must be set")

        response = inp.response_column
        frames = {
            "training": train,
            "validation": inp.validation_frame,
            "blending": inp.blending_frame,
            "leaderboard": inp.leaderboard_frame,
        }
        for name, frame in frames.items():
            if frame is not None and response not in frame.columns:
                raise AutoMLConfigurationError(f"Response column '{response}' is not in the {name} frame.")
        for label, column in (("Fold", inp.fold_column), ("Weights", inp.weights_column)):
            if column is not None and column not in train.columns:
                raise AutoMLConfigurationError(f"{label} column '{column}' is not in the training frame.")

        self._training_checksum = frame_checksum(train)
        missing = int(train[response].isna().sum())
        if missing:
            el.warn(Stage.DATA_IMPORT, f"Dropping {missing} training rows with a missing response.")
            train = train[train[response].notna()]

        self.problem_type = infer_problem_type(train[response])
        self.sort_metric = self._resolve_sort_metric(inp.sort_metric)

        validation, leaderboard = inp.validation_frame, inp.leaderboard_frame
        cv_enabled = self.nfolds != 0 or inp.fold_column is not None
        if not cv_enabled:
            seed = RANDOM_STATE if self.seed == RANDOM_SEED_SENTINEL else self.seed
            partition = partition_frames(train, validation, leaderboard, seed)
            train, validation, leaderboard = partition.train, partition.validation, partition.leaderboard
            if partition.message:
                el.info(Stage.DATA_IMPORT, partition.message)

        el.info(Stage.DATA_IMPORT, f"training frame: {train.shape[0]} rows x {train.shape[1]} columns")
        for name, frame in (("validation", validation), ("leaderboard", leaderboard), ("blending", inp.blending_frame)):
            if frame is None:
                el.info(Stage.DATA_IMPORT, f"{name} frame: NULL")
            else:
                el.info(Stage.DATA_IMPORT, f"{name} frame: {frame.shape[0]} rows x {frame.shape[1]} columns")
        el.info(Stage.DATA_IMPORT, f"response column: {response}")
        el.info(Stage.DATA_IMPORT, f"fold column: {inp.fold_column}")
        el.info(Stage.DATA_IMPORT, f"weights column: {inp.weights_column}")
        el.info(Stage.DATA_IMPORT, f"problem type: {self.problem_type}")

        return TrainingData(
            train=train,
            response_column=response,
            problem_type=self.problem_type,
            validation=validation,
            blending=inp.blending_frame,
            leaderboard=leaderboard,
            fold_column=inp.fold_column,
            weights_column=inp.weights_column,
            ignored_columns=tuple(inp.ignored_columns),
            nfolds=self.nfolds,
        )

    def _resolve_sort_metric(self, requested: Optional[str]) -> str:
        if requested is None or requested.upper() == "AUTO":
            return {
                "regression": DEFAULT_METRIC,
                "binomial": DEFAULT_BINOMIAL_METRIC,
                "multinomial": DEFAULT_MULTINOMIAL_METRIC,
            }[self.problem_type]
        metric = requested.lower()
        try:
            metric_is_increasing(metric)
        except ValueError as exc:
            raise AutoMLConfigurationError(str(exc)) from exc
        return metric

    def _stopping_params(self) -> StoppingParams:
        criteria = self.build_spec.build_control.stopping_criteria
        el = self.event_log
        train = self.build_spec.input_spec.training_frame
        default_tolerance = default_stopping_tolerance(train)
        if criteria.stopping_tolerance == AUTO_STOPPING_TOLERANCE:
            tolerance = default_tolerance
            el.info(Stage.WORKFLOW, f"Setting stopping tolerance adaptively based on the training frame: {tolerance}")
        else:
            tolerance = criteria.stopping_tolerance
            el.info(Stage.WORKFLOW, f"Stopping tolerance set by the user: {tolerance}")
            if tolerance < 0.7 * default_tolerance:
                el.warn(
                    Stage.WORKFLOW,
                    f"Stopping tolerance set by the user is < 70% of the recommended default of "
                    f"{default_tolerance}, so models may take a long time to converge or may not converge at all.",
                )

        metric = criteria.stopping_metric
        if metric is None or metric.upper() == AUTO_STOPPING_METRIC:
            metric = "logloss" if self.sort_metric == "auc" else self.sort_metric
        return StoppingParams(metric=metric, rounds=criteria.stopping_rounds, tolerance=tolerance)

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    @property
    def model_count(self) -> int:
        return self._model_count

    @property
    def progress(self) -> RunProgress:
        return self._progress

    def remaining_time_ms(self) -> float:
        return self.countdown.remaining_time_ms()

    def remaining_models(self) -> int:
        if self.max_models == 0:
            return sys.maxsize
        return self.max_models - self._model_count

    def timing_out(self) -> bool:
        return self.countdown.timed_out()

    def keep_running(self) -> bool:
        return not self.timing_out() and self.remaining_models() > 0 and not self._progress.stop_requested()

    def _exceeded_search_limits(self, work: Work, algo_desc: str, ignore_limits: bool = False) -> bool:
        if ignore_limits:
            return False
        if work.count == 0:
            self.event_log.debug(Stage.MODEL_TRAINING, f"AutoML: no work left for {work.algo.value}; skipping {algo_desc}")
            return True
        if self.keep_running():
            return False
        if self._progress.stop_requested():
            self.event_log.info(Stage.MODEL_TRAINING, f"AutoML job cancelled; skipping {algo_desc}")
        elif self.timing_out():
            self.event_log.info(Stage.MODEL_TRAINING, f"AutoML: out of time; skipping {algo_desc}")
        else:
            self.event_log.info(Stage.MODEL_TRAINING, f"AutoML: hit the max_models limit; skipping {algo_desc}")
        return True

    def _model_runtime(self, ignore_limits: bool) -> float:
        if ignore_limits:
            return 0.0
        per_model = self.build_spec.build_control.stopping_criteria.max_runtime_secs_per_model
        remaining = self.countdown.remaining_time()
        if math.isinf(remaining):
            return per_model
        if per_model == 0:
            return remaining
        return min(per_model, remaining)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _next_model_key(self, algo_name: str) -> str:
        return f"{algo_name}_{self.counter.next(algo_name)}_AutoML_{self.timestamp}"

    def _next_grid_key(self, algo_name: str) -> str:
        return f"{algo_name}_grid_{self.counter.next(algo_name + '_grid')}_AutoML_{self.timestamp}"

    # ------------------------------------------------------------------
    # Task launching
    # ------------------------------------------------------------------

    def _task_parameters(self, key: str, job_type: JobType, algo: Algo, **kwargs) -> TaskParameters:
        control = self.build_spec.build_control
        return TaskParameters(
            key=key,
            job_type=job_type,
            data=self.training_data,
            model_type=model_type_for(key, algo.value),
            stopping=self.stopping,
            balance_classes=control.balance_classes,
            # out-of-fold predictions are needed for stacking; dropped in stop()
            keep_cross_validation_predictions=True,
            keep_cross_validation_models=control.keep_cross_validation_models,
            keep_cross_validation_fold_assignment=control.keep_cross_validation_fold_assignment,
            export_checkpoints_dir=control.export_checkpoints_dir,
            **kwargs,
        )

    def _assign_seed(self, algo: Algo, params: Dict[str, Any]) -> None:
        seed_param = algo.block.seed_param
        if seed_param is None or params.get(seed_param) is not None or self.seed == RANDOM_SEED_SENTINEL:
            return
        params[seed_param] = self.seed + self._individual_models_trained
        self._individual_models_trained += 1

    def _launch(self, algo: Algo, parameters: TaskParameters) -> Optional[BaseTaskHandle]:
        try:
            return self.engine.launch(algo, parameters)
        except ValueError as exc:
            self.event_log.warn(
                Stage.MODEL_TRAINING, f"Skipping training of model {parameters.key} due to exception: {exc}"
            )
            return None

    def _train_model(
        self,
        key: Optional[str],
        algo: Algo,
        work: Work,
        params: Dict[str, Any],
        *,
        name: Optional[str] = None,
        ignore_limits: bool = False,
        base_models: Sequence[str] = (),
    ) -> Optional[BaseTaskHandle]:
        if self._exceeded_search_limits(work, key or name or algo.value, ignore_limits):
            return None
        if key is None:
            key = self._next_model_key(name or algo.value)

        params = dict(params)
        self._assign_seed(algo, params)
        parameters = self._task_parameters(
            key,
            JobType.MODEL_BUILD,
            algo,
            params=params,
            base_models=tuple(base_models),
            max_runtime_secs=self._model_runtime(ignore_limits),
        )
        logger.debug("Training model: %s, time remaining (ms): %s", key, self.remaining_time_ms())
        return self._launch(algo, parameters)

    def _hyperparameter_search(self, grid_key: str, algo: Algo, work: Work, plan: SearchPlan) -> Optional[BaseTaskHandle]:
        if self._exceeded_search_limits(work, plan.name):
            return None

        criteria = self.build_spec.build_control.stopping_criteria
        remaining_work = self.work_plan.remaining_work()
        ratio = work.share / remaining_work if remaining_work else 0.0

        remaining_time = self.countdown.remaining_time()
        max_runtime = 0.0 if math.isinf(remaining_time) else ratio * remaining_time
        if self.max_runtime_secs and max_runtime:
            max_runtime = min(self.max_runtime_secs, max_runtime)

        max_models = 0 if self.max_models == 0 else int(math.ceil(ratio * self.remaining_models()))
        if self.max_models and max_models:
            max_models = min(self.max_models, max_models)

        self.event_log.info(
            Stage.MODEL_TRAINING,
            f"AutoML: starting {algo.value} hyperparameter search",
            max_models=max_models,
            max_runtime_secs=max_runtime,
        )
        base_params = dict(plan.base_params)
        self._assign_seed(algo, base_params)
        parameters = self._task_parameters(
            grid_key,
            JobType.HYPERPARAM_SEARCH,
            algo,
            params=base_params,
            hyper_params=dict(plan.hyper_params),
            search_criteria=SearchCriteria(
                max_models=max_models,
                max_runtime_secs=max_runtime,
                seed=None if self.seed == RANDOM_SEED_SENTINEL else self.seed,
            ),
            max_runtime_secs=criteria.max_runtime_secs_per_model,
        )
        return self._launch(algo, parameters)

    # ------------------------------------------------------------------
    # Progress polling
    # ------------------------------------------------------------------

    def _poll_and_update_progress(
        self,
        stage: Stage,
        name: str,
        work: Work,
        parent: Optional[RunProgress],
        task: Optional[BaseTaskHandle],
        ignore_timeout: bool = False,
    ) -> None:
        if task is None:
            if parent is not None:
                parent.update(work.consume(), f"SKIPPED: {name}")
                logger.info("AutoML skipping %s", name)
            return

        self.event_log.debug(stage, f"{name} started")
        self._jobs.append(task)

        last_worked_so_far = 0
        last_search_count = 0
        stop_sent = False
        while task.is_running():
            if parent is not None and not stop_sent:
                if parent.stop_requested():
                    self.event_log.debug(stage, f"AutoML job cancelled; skipping {name}")
                    task.request_stop()
                    stop_sent = True
                elif not ignore_timeout and self.timing_out():
                    self.event_log.debug(stage, f"AutoML: out of time; skipping {name}")
                    task.request_stop()
                    stop_sent = True

            worked_so_far = round(task.progress() * work.share)
            if parent is not None:
                parent.update(worked_so_far - last_worked_so_far, name)

            if work.type == JobType.HYPERPARAM_SEARCH:
                last_search_count = self._ingest_search(stage, name, task.partial_result(), last_search_count)

            time.sleep(self.tick_interval)
            last_worked_so_far = worked_so_far

        # pick up any stragglers
        if task.is_crashed():
            self.event_log.warn(stage, f"{name} failed: {task.error!r}")
        else:
            result = task.await_result()
            if result is None:
                self.event_log.info(stage, f"{name} cancelled")
            elif work.type == JobType.HYPERPARAM_SEARCH:
                self._ingest_search(stage, name, result, last_search_count)
                self.event_log.debug(stage, f"{name} complete")
            else:
                self.event_log.debug(stage, f"{name} complete")
                self._add_model(result.key)

        # add remaining work
        if parent is not None:
            parent.update(work.share - last_worked_so_far)
        work.consume()
        self._jobs.remove(task)

    def _ingest_search(self, stage: Stage, name: str, search: Any, last_count: int) -> int:
        if search is None:
            return last_count
        count = search.count
        if count > last_count:
            self.event_log.debug(stage, f"Built: {count} models for search: {name}")
            self._add_models(search.result_keys)
            return count
        return last_count

    # ------------------------------------------------------------------
    # Leaderboard integration
    # ------------------------------------------------------------------

    def _add_models(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        added = self.leaderboard.add_results(keys)
        self._model_count += added
        for key in keys:
            if key not in self._added_keys:
                self._added_keys.append(key)

    def _add_model(self, key: str) -> None:
        self._add_models([key])

    def leader(self) -> Optional[Any]:
        return self.leaderboard.leader()

    # ------------------------------------------------------------------
    # Learn sequence
    # ------------------------------------------------------------------

    def _default_builds(self, algo: Algo, build_name: Optional[str] = None) -> None:
        work = self.work_plan.get_allocation(algo, JobType.MODEL_BUILD)
        if work is None:
            return
        for build in algo.block.default_builds():
            if build_name is not None and build.name != build_name:
                continue
            key_name = build.name if build.name == "XRT" else algo.value
            task = self._train_model(None, algo, work, build.params, name=key_name)
            self._poll_and_update_progress(Stage.MODEL_TRAINING, build.name, work, self._progress, task)

    def _default_searches(self, algo: Algo) -> None:
        work = self.work_plan.get_allocation(algo, JobType.HYPERPARAM_SEARCH)
        if work is None:
            return
        grid_key = None
        for plan in algo.block.search_plans():
            if grid_key is None:
                grid_key = self._next_grid_key(algo.value)
            task = self._hyperparameter_search(grid_key, algo, work, plan)
            self._poll_and_update_progress(Stage.MODEL_TRAINING, plan.name, work, self._progress, task)

    def _default_stacked_ensembles(self) -> None:
        work = self.work_plan.get_allocation(Algo.StackedEnsemble, JobType.MODEL_BUILD)
        el = self.event_log
        if work is None:
            self._progress.update(0, "StackedEnsemble builds skipped")
            el.info(Stage.MODEL_TRAINING, "StackedEnsemble builds skipped due to the exclude_algos option.")
            return

        all_models = self.leaderboard.models()
        if not all_models:
            self._progress.update(work.consume_all(), "No models built; StackedEnsemble builds skipped")
            el.info(
                Stage.MODEL_TRAINING,
                "No models were built, due to timeouts or the exclude_algos option. StackedEnsemble builds skipped.",
            )
            return
        if len(all_models) == 1:
            self._progress.update(work.consume_all(), "One model built; StackedEnsemble builds skipped")
            el.info(Stage.MODEL_TRAINING, "StackedEnsemble builds skipped since there is only one model built")
            return
        if not self.training_data.cv_enabled and self.training_data.blending is None:
            message = "Cross-validation disabled by the user and no blending frame provided; StackedEnsemble build skipped"
            self._progress.update(work.consume_all(), message)
            el.info(Stage.MODEL_TRAINING, message)
            return

        # stack models from other runs of the project too, but never stack stacks
        not_ensembles = [m for m in all_models if not m.is_ensemble]
        if self.training_data.blending is None:
            # level-one data is built from holdout predictions on this exact training frame
            n_rows = len(self.training_data.train)
            stackable = [
                m for m in not_ensembles if m.cv_predictions is not None and len(m.cv_predictions) == n_rows
            ]
            if len(stackable) < len(not_ensembles):
                el.info(
                    Stage.MODEL_TRAINING,
                    f"{len(not_ensembles) - len(stackable)} model(s) without cross-validation predictions "
                    "for this training frame left out of the StackedEnsemble builds",
                )
            if len(stackable) < 2:
                message = "Fewer than two models with cross-validation predictions; StackedEnsemble builds skipped"
                self._progress.update(work.consume_all(), message)
                el.info(Stage.MODEL_TRAINING, message)
                return
            not_ensembles = stackable
        best_of_family = []
        seen_types = set()
        for model in not_ensembles:
            if model.model_type not in seen_types:
                best_of_family.append(model)
                seen_types.add(model.model_type)

        key = f"StackedEnsemble_BestOfFamily_AutoML_{self.timestamp}"
        task = self._train_model(
            key, Algo.StackedEnsemble, work, {}, ignore_limits=True, base_models=[m.key for m in best_of_family]
        )
        self._poll_and_update_progress(
            Stage.MODEL_TRAINING,
            "StackedEnsemble build using top model from each algorithm type",
            work, self._progress, task, ignore_timeout=True,
        )

        key = f"StackedEnsemble_AllModels_AutoML_{self.timestamp}"
        task = self._train_model(
            key, Algo.StackedEnsemble, work, {}, ignore_limits=True, base_models=[m.key for m in not_ensembles]
        )
        self._poll_and_update_progress(
            Stage.MODEL_TRAINING,
            "StackedEnsemble build using all AutoML models",
            work, self._progress, task, ignore_timeout=True,
        )

    def _skip_unused_work(self) -> None:
        """Report the share of planned jobs that no learn step ran."""
        for work in self.work_plan:
            if work.algo is Algo.StackedEnsemble or work.count == 0:
                continue
            desc = f"{work.algo.value} {work.type.value}"
            self.event_log.debug(
                Stage.MODEL_TRAINING, f"AutoML: {work.count} planned {desc} job(s) not run; skipping them"
            )
            self._progress.update(work.consume_all(), f"SKIPPED: {desc}")

    def learn(self) -> None:
        for algo_name, job_type, build_name in self._steps:
            algo = Algo.resolve(algo_name)
            if JobType(job_type) == JobType.MODEL_BUILD:
                self._default_builds(algo, build_name)
            else:
                self._default_searches(algo)
        self._skip_unused_work()
        self._default_stacked_ensembles()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> LeaderboardRef:
        if self.status is not AutoMLStatus.IDLE:
            raise RuntimeError(f"AutoML {self.key} was already started")
        self.status = AutoMLStatus.RUNNING
        self.countdown.start()
        self.event_log.info(
            Stage.WORKFLOW,
            f"AutoML build started: {self.countdown.start_time.strftime(DATE_TIME_FORMAT)}",
            start_epoch=self.countdown.start_time.timestamp(),
        )
        try:
            self.learn()
        finally:
            self.stop()
        return self.leaderboard

    def start(self) -> "AutoML":
        """Run in the background on the engine's run pool."""
        if self._run_future is not None:
            raise RuntimeError(f"AutoML {self.key} was already started")
        self._run_future = self.engine.submit_run(self.run)
        return self

    def block_until_done(self, timeout: Optional[float] = None) -> LeaderboardRef:
        if self._run_future is None:
            if self.status is AutoMLStatus.STOPPED:
                return self.leaderboard
            raise RuntimeError(f"AutoML {self.key} was not started")
        return self._run_future.result(timeout=timeout)

    def request_stop(self) -> None:
        self.event_log.info(Stage.WORKFLOW, "AutoML: stop requested")
        self._progress.request_stop()

    def stop(self) -> None:
        if self.status is AutoMLStatus.STOPPED:
            return
        self.status = AutoMLStatus.DRAINING
        jobs = list(self._jobs)
        for job in jobs:
            job.request_stop()
        for job in jobs:
            job.await_result()  # hold until they all completely stop
        self._jobs.clear()

        self.countdown.stop()
        stop_time = self.countdown.stop_time or datetime.now()
        el = self.event_log
        el.info(
            Stage.WORKFLOW,
            f"AutoML build stopped: {stop_time.strftime(DATE_TIME_FORMAT)}",
            stop_epoch=stop_time.timestamp(),
        )
        el.info(Stage.WORKFLOW, f"AutoML build done: built {self._model_count} models")
        el.info(Stage.WORKFLOW, f"AutoML duration: {timedelta(seconds=round(self.countdown.duration(), 3))}")

        console.print(el.to_table(f"Event log for project {self.project_name}"))
        console.print(self.leaderboard.to_table())

        self._verify_immutability()
        if not self.build_spec.build_control.keep_cross_validation_predictions:
            self._clean_up_cv_predictions()
        self.status = AutoMLStatus.STOPPED

    def _verify_immutability(self) -> bool:
        self.event_log.debug(Stage.WORKFLOW, "Verifying training frame immutability. . .")
        mutated = frame_checksum(self.build_spec.input_spec.training_frame) != self._training_checksum
        if mutated:
            self.event_log.warn(Stage.WORKFLOW, "Training frame was mutated!  This indicates a bug in the AutoML software.")
        else:
            self.event_log.debug(Stage.WORKFLOW, "Training frame was not mutated (as expected).")
        return mutated

    def _clean_up_cv_predictions(self) -> None:
        for key in self._added_keys:
            result = self.store.get(key)
            if result is not None and hasattr(result, "delete_cross_validation_predictions"):
                result.delete_cross_validation_predictions()

    def delete(self) -> None:
        """Remove the models this run added and any project state it created."""
        for key in self._added_keys:
            self.store.remove(key)
        for key in self._created_keys:
            self.store.remove(key)
        self._added_keys = []
        self._created_keys = []

    def summary_tree(self) -> Tree:
        root = Tree(f"[bold cyan]AutoML {self.key} ({self.project_name})[/bold cyan]")
        plan_node = root.add("[bold blue]Work plan[/bold blue]")
        for work in self.work_plan:
            plan_node.add(f"{work.algo.value} {work.type.value}: {work.count} left x {work.share}")
        board = root.add(f"[bold blue]Leaderboard ({self.sort_metric})[/bold blue]")
        for rank, result in enumerate(self.leaderboard.models(), start=1):
            board.add(f"{rank}. {result.key}: {result.metrics.get(self.sort_metric, float('nan')):.4f}")
        return root

    def __repr__(self) -> str:
        return f"AutoML({self.key!r}, project={self.project_name!r}, status={self.status.value})"


# ---------------------------------------------------------------------------
# Command-line interface
# ---------------------------------------------------------------------------

def _configure_logging(run_dir: Optional[Path] = None) -> None:
    # Set base logging level; can be overridden by AUTOML_VERBOSE
    logging_level = logging.DEBUG if "AUTOML_VERBOSE" in os.environ else logging.INFO

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if run_dir is not None:
        handlers.append(logging.FileHandler(run_dir / "run.log", mode="a"))
    logging.basicConfig(
        level=logging_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    # Optional Logstash integration for centralized logging
    if os.getenv("LOGSTASH_HOST"):
        try:
            from logstash_async.formatter import LogstashFormatter
            from logstash_async.handler import AsynchronousLogstashHandler

            ls_host = os.environ.get("LOGSTASH_HOST")
            ls_port = int(os.environ.get("LOGSTASH_PORT", "5959"))
            ls_handler = AsynchronousLogstashHandler(ls_host, ls_port, database_path=None)
            ls_handler.setFormatter(LogstashFormatter())
            logging.getLogger().addHandler(ls_handler)
            logger.info("Logging to Logstash at %s:%s", ls_host, ls_port)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not configure Logstash handler: %s", exc)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="\nAutoML Orchestrator – Budgeted Model-Search Controller",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--data", type=str, required=True, help="Path to the training CSV/Parquet file")
    parser.add_argument("--response", type=str, required=True, help="Name of the response column")
    parser.add_argument("--validation", type=str, default=None, help="Optional validation frame")
    parser.add_argument("--leaderboard-frame", type=str, default=None, help="Optional frame used to score the leaderboard")
    parser.add_argument("--blending", type=str, default=None, help="Optional blending frame for stacked ensembles")
    parser.add_argument(
        "--max-runtime-secs",
        type=float,
        default=None,
        help=f"Run budget in seconds, 0 for unlimited (default: {WALLCLOCK_LIMIT_SEC} unless --max-models is set)",
    )
    parser.add_argument("--max-models", type=int, default=0, help="Maximum number of models, 0 for unlimited")
    parser.add_argument("--max-runtime-secs-per-model", type=float, default=0.0, help="Per-model time limit")
    parser.add_argument("--nfolds", type=int, default=DEFAULT_NFOLDS, help=f"Cross-validation folds (default: {DEFAULT_NFOLDS})")
    parser.add_argument("--fold-column", type=str, default=None)
    parser.add_argument("--weights-column", type=str, default=None)
    parser.add_argument("--ignored-columns", nargs="*", default=[])
    parser.add_argument("--seed", type=int, default=RANDOM_SEED_SENTINEL, help="Run seed, -1 for random")
    parser.add_argument("--sort-metric", type=str, default="AUTO", help="Leaderboard sort metric")
    parser.add_argument("--include-algos", nargs="*", default=None, help="Only run these algorithm families")
    parser.add_argument("--exclude-algos", nargs="*", default=None, help="Skip these algorithm families")
    parser.add_argument("--project-name", type=str, default=None)
    parser.add_argument("--balance-classes", action="store_true")
    parser.add_argument("--keep-cross-validation-predictions", action="store_true")
    parser.add_argument("--export-checkpoints-dir", type=str, default=None)
    parser.add_argument("--output-dir", type=str, default="05_outputs", help="Base directory for run artifacts")
    parser.add_argument("--tree", action="store_true", help="Print a summary tree of the run")
    return parser


def _build_spec_from_args(args: argparse.Namespace) -> AutoMLBuildSpec:
    def _maybe_load(path):
        return None if path is None else load_frame(path)

    return AutoMLBuildSpec(
        input_spec=InputSpec(
            training_frame=load_frame(args.data),
            response_column=args.response,
            validation_frame=_maybe_load(args.validation),
            blending_frame=_maybe_load(args.blending),
            leaderboard_frame=_maybe_load(args.leaderboard_frame),
            fold_column=args.fold_column,
            weights_column=args.weights_column,
            ignored_columns=tuple(args.ignored_columns),
            sort_metric=args.sort_metric,
        ),
        build_control=BuildControl(
            project_name=args.project_name,
            nfolds=args.nfolds,
            balance_classes=args.balance_classes,
            keep_cross_validation_predictions=args.keep_cross_validation_predictions,
            export_checkpoints_dir=args.export_checkpoints_dir,
            stopping_criteria=StoppingCriteria(
                max_runtime_secs=args.max_runtime_secs,
                max_models=args.max_models,
                max_runtime_secs_per_model=args.max_runtime_secs_per_model,
                seed=args.seed,
            ),
        ),
        build_models=BuildModels(include_algos=args.include_algos, exclude_algos=args.exclude_algos),
    )


def _write_outputs(aml: AutoML, run_dir: Path, args: argparse.Namespace) -> None:
    leaderboard = aml.leaderboard.as_data_frame()
    leaderboard.to_csv(run_dir / "leaderboard.csv", index=False)

    with open(run_dir / "events.json", "w") as f:
        json.dump(aml.event_log.as_records(), f, indent=2)

    leader = aml.leader()
    if leader is not None:
        with open(run_dir / "leader.pkl", "wb") as f:
            pickle.dump(leader.model, f)
        logger.info("Leader model %s saved to %s", leader.key, run_dir / "leader.pkl")

    metrics_data = {
        "run_meta": {
            "timestamp_utc": datetime.utcnow().isoformat(timespec="seconds") + "Z",
            "automl_key": aml.key,
            "project_name": aml.project_name,
            "budget_seconds": aml.max_runtime_secs,
            "max_models": aml.max_models,
            "sort_metric": aml.sort_metric,
            "problem_type": aml.problem_type,
            "models_built": aml.model_count,
            "total_duration_seconds": aml.countdown.duration(),
            "data_path": str(Path(args.data).resolve()),
        },
        "leader": None if leader is None else {
            "model_id": leader.key,
            "algo": leader.algo,
            "metrics": leader.metrics,
        },
    }
    with open(run_dir / "metrics.json", "w") as f:
        json.dump(metrics_data, f, indent=2, default=str)
    logger.info("Metrics saved to %s", run_dir / "metrics.json")


def _cli(argv: Optional[Sequence[str]] = None) -> int:
    """Parses command-line arguments and runs one AutoML build."""
    args = _build_parser().parse_args(argv)

    # Define unique run directory for artifacts
    timestamp_str = datetime.now().strftime("%Y%m%d-%H%M%S")
    run_dir = Path(args.output_dir) / Path(args.data).stem / timestamp_str
    run_dir.mkdir(parents=True, exist_ok=True)
    _configure_logging(run_dir)

    console.log("[bold green]Starting AutoML Orchestrator Run[/bold green]")
    console.log(f"  Dataset: {args.data}")
    console.log(f"  Response: {args.response}")
    console.log(f"  Artifacts Directory: {run_dir}")

    try:
        build_spec = _build_spec_from_args(args)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Failed to load data: {e}", exc_info=True)
        return 1

    engine = LocalEngine()
    try:
        aml = AutoML(build_spec, engine=engine)
        aml.run()
        _write_outputs(aml, run_dir, args)
        if args.tree:
            console.print(aml.summary_tree())
    except AutoMLConfigurationError as e:
        logger.error(f"Invalid AutoML configuration: {e}")
        return 1
    finally:
        engine.shutdown()

    console.log("[bold green]AutoML Orchestrator Run Completed[/bold green]")
    return 0


if __name__ == "__main__":
    sys.exit(_cli())
