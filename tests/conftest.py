from concurrent.futures import ThreadPoolExecutor
import threading

import numpy as np
import pandas as pd
import pytest

from components.base import BaseEngine, BaseTaskHandle, ModelResult, SearchResult
from engines.object_store import ObjectStore
from scripts.build_spec import AutoMLBuildSpec, BuildControl, BuildModels, InputSpec, StoppingCriteria
from scripts.work_plan import JobType


class FakeClock:
    """Manual time source; handles advance it on every poll."""

    def __init__(self, start=1000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, secs):
        with self._lock:
            self.now += secs


class FakeHandle(BaseTaskHandle):
    """Scripted task: runs for ``ticks`` polls (forever if ``None``)."""

    def __init__(self, key, engine, *, ticks=1, crash=None, search=None, score=0.5,
                 models_per_tick=1, cancelled=False, n_rows=3):
        self.key = key
        self._engine = engine
        self._ticks = ticks
        self._total = ticks or 10
        self._polled = 0
        self._crash = crash
        self._search = search
        self._score = score
        self._models_per_tick = models_per_tick
        self._cancelled = cancelled
        self._n_rows = n_rows
        self.stop_requested = False

    def _finished(self):
        if self.stop_requested:
            return True
        return self._ticks is not None and self._polled >= self._ticks

    def is_running(self):
        if self._finished():
            return False
        self._polled += 1
        self._engine.clock.advance(self._engine.secs_per_tick)
        if self._search is not None:
            for _ in range(self._models_per_tick):
                self._engine.add_search_model(self._search, self._n_rows)
        return True

    def progress(self):
        return min(1.0, self._polled / self._total)

    def request_stop(self):
        self.stop_requested = True

    def await_result(self):
        if self._crash is not None:
            return None
        if self._search is not None:
            return self._search
        if self.stop_requested or self._cancelled:
            return None
        result = ModelResult(self.key, self.key.split("_")[0], "", model=None, metrics={"r2": self._score})
        result.model_type = "XRT" if self.key.startswith("XRT_") else result.algo
        result.is_ensemble = self.key.startswith("StackedEnsemble")
        result.cv_predictions = np.zeros(self._n_rows)
        self._engine.store.put(self.key, result)
        return result

    def is_crashed(self):
        return self._crash is not None and self._finished()

    @property
    def error(self):
        return self._crash

    def partial_result(self):
        return self._search


class FakeEngine(BaseEngine):
    """Records launches and hands out scripted handles."""

    def __init__(self, store=None, clock=None, secs_per_tick=0.0, behaviours=None):
        self.store = store if store is not None else ObjectStore()
        self.clock = clock if clock is not None else FakeClock()
        self.secs_per_tick = secs_per_tick
        self.behaviours = behaviours or {}
        self.launched = []
        self.handles = []
        self._scores = iter(np.linspace(0.9, 0.1, 200))
        self._runs = ThreadPoolExecutor(max_workers=4)
        self._lock = threading.Lock()

    @property
    def name(self):
        return "fake"

    def launch(self, algo, parameters):
        with self._lock:
            self.launched.append((algo, parameters))
            score = float(next(self._scores))
        behaviour = dict(self.behaviours.get(algo.value, {}))
        if behaviour.pop("invalid", False):
            raise ValueError("illegal parameter")
        search = None
        if parameters.job_type == JobType.HYPERPARAM_SEARCH:
            search = self.store.put_if_absent(parameters.key, lambda: SearchResult(parameters.key, algo.value))
        handle = FakeHandle(
            parameters.key, self, search=search, score=score, n_rows=len(parameters.data.train), **behaviour
        )
        self.handles.append(handle)
        return handle

    def add_search_model(self, search, n_rows):
        key = search.next_model_key()
        with self._lock:
            score = float(next(self._scores))
        result = ModelResult(key, search.algo, search.algo, model=None, metrics={"r2": score})
        result.cv_predictions = np.zeros(n_rows)
        self.store.put(key, result)
        search.append(key)

    def submit_run(self, fn):
        return self._runs.submit(fn)

    def shutdown(self):
        self._runs.shutdown(wait=True)


@pytest.fixture
def regression_frame():
    rng = np.random.default_rng(0)
    n = 60
    frame = pd.DataFrame({
        "x1": rng.normal(size=n),
        "x2": rng.normal(size=n),
        "cat": rng.choice(["a", "b", "c"], size=n),
    })
    frame["y"] = 3 * frame["x1"] - 2 * frame["x2"] + (frame["cat"] == "a") + rng.normal(scale=0.1, size=n)
    return frame


@pytest.fixture
def binomial_frame():
    rng = np.random.default_rng(1)
    n = 80
    frame = pd.DataFrame({"x1": rng.normal(size=n), "x2": rng.normal(size=n)})
    frame["label"] = np.where(frame["x1"] + 0.3 * rng.normal(size=n) > 0, "yes", "no")
    return frame


def make_spec(frame, response="y", *, max_runtime_secs=None, max_models=0, nfolds=3, seed=-1,
              include=None, exclude=None, project=None, **input_kwargs):
    return AutoMLBuildSpec(
        input_spec=InputSpec(training_frame=frame, response_column=response, **input_kwargs),
        build_control=BuildControl(
            project_name=project,
            nfolds=nfolds,
            stopping_criteria=StoppingCriteria(
                max_runtime_secs=max_runtime_secs,
                max_models=max_models,
                seed=seed,
            ),
        ),
        build_models=BuildModels(include_algos=include, exclude_algos=exclude),
    )
