from components import Algo
from components.base import SearchResult
from conftest import FakeEngine, FakeHandle, make_spec
from orchestrator import AutoML
from scripts.event_log import Level, Stage
from scripts.progress import RunProgress
from scripts.work_plan import JobType, Work

PLAN = (("GBM", 1, "build", 10),)


def _automl(frame, engine):
    return AutoML(make_spec(frame, max_models=50), engine=engine, tick_interval=0, work_plan=PLAN, steps=())


def test_progress_deltas_sum_to_share(regression_frame):
    engine = FakeEngine()
    aml = _automl(regression_frame, engine)
    work = Work(Algo.GBM, 1, JobType.MODEL_BUILD, 40)
    parent = RunProgress(40)

    aml._poll_and_update_progress(Stage.MODEL_TRAINING, "GBM 1", work, parent, FakeHandle("GBM_1", engine, ticks=4))

    assert [units for units, _ in parent.updates] == [10, 10, 10, 10, 0]
    assert parent.worked == 40
    assert work.count == 0
    assert aml.model_count == 1
    assert aml._jobs == []


def test_uneven_progress_still_sums_to_share(regression_frame):
    engine = FakeEngine()
    aml = _automl(regression_frame, engine)
    work = Work(Algo.GBM, 1, JobType.MODEL_BUILD, 40)
    parent = RunProgress(40)

    aml._poll_and_update_progress(Stage.MODEL_TRAINING, "GBM 1", work, parent, FakeHandle("GBM_1", engine, ticks=3))

    assert parent.worked == 40


def test_skipped_task_consumes_one_unit_of_work(regression_frame):
    aml = _automl(regression_frame, FakeEngine())
    work = Work(Algo.GBM, 3, JobType.MODEL_BUILD, 10)
    parent = RunProgress(30)

    aml._poll_and_update_progress(Stage.MODEL_TRAINING, "GBM 2", work, parent, None)

    assert list(parent.updates) == [(10, "SKIPPED: GBM 2")]
    assert work.count == 2


def test_crashed_task_is_logged_as_warning(regression_frame):
    engine = FakeEngine()
    aml = _automl(regression_frame, engine)
    work = Work(Algo.GBM, 1, JobType.MODEL_BUILD, 10)
    parent = RunProgress(10)
    handle = FakeHandle("GBM_1", engine, ticks=2, crash=RuntimeError("boom"))

    aml._poll_and_update_progress(Stage.MODEL_TRAINING, "GBM 1", work, parent, handle)

    failures = aml.event_log.find("GBM 1 failed", Level.WARN)
    assert len(failures) == 1 and "boom" in failures[0].message
    assert aml.model_count == 0
    assert parent.worked == 10


def test_cancelled_task_is_logged_as_info(regression_frame):
    engine = FakeEngine()
    aml = _automl(regression_frame, engine)
    work = Work(Algo.GBM, 1, JobType.MODEL_BUILD, 10)
    parent = RunProgress(10)

    aml._poll_and_update_progress(
        Stage.MODEL_TRAINING, "GBM 1", work, parent, FakeHandle("GBM_1", engine, cancelled=True)
    )

    assert aml.event_log.find("GBM 1 cancelled", Level.INFO)
    assert aml.model_count == 0


def test_parent_stop_is_forwarded_to_task(regression_frame):
    engine = FakeEngine()
    aml = _automl(regression_frame, engine)
    work = Work(Algo.GBM, 1, JobType.MODEL_BUILD, 10)
    parent = RunProgress(10)
    parent.request_stop()
    handle = FakeHandle("GBM_1", engine, ticks=None)

    aml._poll_and_update_progress(Stage.MODEL_TRAINING, "GBM 1", work, parent, handle)

    assert handle.stop_requested
    assert aml.event_log.find("GBM 1 cancelled")
    assert parent.worked == 10


def test_search_models_are_ingested_once(regression_frame):
    engine = FakeEngine()
    aml = _automl(regression_frame, engine)
    work = Work(Algo.GBM, 1, JobType.HYPERPARAM_SEARCH, 60)
    parent = RunProgress(60)
    search = engine.store.put_if_absent("GBM_grid_1", lambda: SearchResult("GBM_grid_1", "GBM"))
    handle = FakeHandle("GBM_grid_1", engine, ticks=3, search=search, models_per_tick=2)

    aml._poll_and_update_progress(Stage.MODEL_TRAINING, "GBM hyperparameter search", work, parent, handle)

    assert search.count == 6
    assert aml.model_count == 6
    assert aml.leaderboard.count() == 6
    assert parent.worked == 60
    assert aml.event_log.find("Built: 6 models for search: GBM hyperparameter search")


def test_progress_without_parent_is_not_reported(regression_frame):
    engine = FakeEngine()
    aml = _automl(regression_frame, engine)
    work = Work(Algo.GBM, 1, JobType.MODEL_BUILD, 10)

    aml._poll_and_update_progress(Stage.MODEL_TRAINING, "GBM 1", work, None, FakeHandle("GBM_1", engine))

    assert aml.model_count == 1
    assert aml.progress.worked == 0


def test_update_history_is_capped():
    parent = RunProgress(1000, history=5)
    for _ in range(40):
        parent.update(1)
    parent.update(2, "last")

    assert parent.worked == 42
    assert len(parent.updates) == 5
    assert parent.updates[-1] == (2, "last")
