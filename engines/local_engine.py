"""Local task substrate – runs builds, searches and stacks on thread pools.

Tasks run on a pool of ``N_JOBS_CV`` worker threads.  Orchestrator loops
submitted through ``submit_run`` get their own pool, so a run waiting on its
tasks can never starve them of workers.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from components import Algo
from components.base import BaseEngine, BaseTaskHandle, SearchResult, TaskParameters
from engines import training
from engines.object_store import ObjectStore
from scripts.config import N_JOBS_CV
from scripts.work_plan import JobType

logger = logging.getLogger(__name__)


class LocalTaskHandle(BaseTaskHandle):
    def __init__(self, key: str, future: Future, ctx: training.TaskContext, partial: Optional[SearchResult] = None):
        self.key = key
        self._future = future
        self._ctx = ctx
        self._partial = partial

    def is_running(self) -> bool:
        return not self._future.done()

    def progress(self) -> float:
        return self._ctx.progress

    def request_stop(self) -> None:
        self._ctx.request_stop()

    def await_result(self) -> Any:
        if self.is_crashed():
            return None
        return self._future.result()

    def is_crashed(self) -> bool:
        return self._future.done() and self._future.exception() is not None

    @property
    def error(self) -> Optional[BaseException]:
        if not self._future.done():
            return None
        return self._future.exception()

    def partial_result(self) -> Optional[SearchResult]:
        return self._partial

    def __repr__(self) -> str:
        state = "running" if self.is_running() else ("crashed" if self.is_crashed() else "done")
        return f"LocalTaskHandle({self.key!r}, {state}, progress={self.progress():.2f})"


class LocalEngine(BaseEngine):
    """In-process substrate backed by scikit-learn (and optionally xgboost)."""

    def __init__(self, store: Optional[ObjectStore] = None, max_workers: int = N_JOBS_CV, max_runs: int = 4):
        self.store = store if store is not None else ObjectStore()
        self._tasks = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="automl-task")
        self._runs = ThreadPoolExecutor(max_workers=max_runs, thread_name_prefix="automl-run")

    @property
    def name(self) -> str:
        return "local"

    def launch(self, algo: Algo, parameters: TaskParameters) -> LocalTaskHandle:
        block_cls = algo.block
        training.check_parameters(block_cls, parameters)
        ctx = training.TaskContext(parameters.max_runtime_secs)

        if parameters.job_type == JobType.HYPERPARAM_SEARCH:
            # searches launched with the same key keep growing the same result
            partial = self.store.put_if_absent(parameters.key, lambda: SearchResult(parameters.key, algo.value))
            future = self._tasks.submit(training.run_search, parameters, block_cls, ctx, self.store, partial)
            logger.debug("[LocalEngine] launched search %s", parameters.key)
            return LocalTaskHandle(parameters.key, future, ctx, partial)

        if algo is Algo.StackedEnsemble:
            future = self._tasks.submit(training.build_stacked_ensemble, parameters, block_cls, ctx, self.store)
        else:
            future = self._tasks.submit(training.train_model, parameters, block_cls, ctx, self.store)
        logger.debug("[LocalEngine] launched build %s", parameters.key)
        return LocalTaskHandle(parameters.key, future, ctx)

    def submit_run(self, fn: Callable[[], Any]) -> Future:
        return self._runs.submit(fn)

    def shutdown(self) -> None:
        self._runs.shutdown(wait=True)
        self._tasks.shutdown(wait=True)


__all__ = ["LocalTaskHandle", "LocalEngine"]
