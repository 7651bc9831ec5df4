import re

import numpy as np
import pandas as pd
import pytest

from components import Algo
from conftest import FakeClock, FakeEngine, make_spec
from orchestrator import AutoML, AutoMLStatus, default_stopping_tolerance
from scripts.build_spec import AutoMLConfigurationError
from scripts.event_log import Level
from scripts.work_plan import JobType

TS = r"\d{8}_\d{6}"


def _automl(spec, engine, plan, steps):
    return AutoML(spec, engine=engine, tick_interval=0, work_plan=plan, steps=steps, time_fn=engine.clock)


def _launched(engine, algo):
    return [params for a, params in engine.launched if a is algo]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_include_and_exclude_are_mutually_exclusive(regression_frame):
    engine = FakeEngine()
    with pytest.raises(AutoMLConfigurationError, match="mutually exclusive"):
        AutoML(make_spec(regression_frame, include=[], exclude=[]), engine=engine)
    assert engine.store.keys() == []


def test_missing_response_column_raises_and_cleans_up(regression_frame):
    engine = FakeEngine()
    with pytest.raises(AutoMLConfigurationError, match="Response column 'nope'"):
        AutoML(make_spec(regression_frame, response="nope"), engine=engine)
    assert engine.store.keys() == []


def test_unknown_algo_name_rejected(regression_frame):
    with pytest.raises(AutoMLConfigurationError, match="Unknown algorithm"):
        AutoML(make_spec(regression_frame, exclude=["SVM"]), engine=FakeEngine())


def test_nfolds_of_one_rejected(regression_frame):
    with pytest.raises(AutoMLConfigurationError):
        AutoML(make_spec(regression_frame, nfolds=1), engine=FakeEngine())


def test_excluded_algos_are_removed_from_plan(regression_frame):
    aml = AutoML(make_spec(regression_frame, exclude=["gbm", "DeepLearning"]), engine=FakeEngine())
    assert Algo.GBM not in aml.work_plan.algos()
    assert Algo.DeepLearning not in aml.work_plan.algos()
    assert aml.event_log.find("Disabling Algo: GBM as requested by the user.")


def test_include_keeps_only_listed_algos(regression_frame):
    aml = AutoML(make_spec(regression_frame, include=["GLM", "DRF"]), engine=FakeEngine())
    assert aml.work_plan.algos() == [Algo.DRF, Algo.GLM]


def test_default_budget_is_one_hour_without_max_models(regression_frame):
    assert AutoML(make_spec(regression_frame), engine=FakeEngine()).max_runtime_secs == 3600
    assert AutoML(make_spec(regression_frame, max_models=3), engine=FakeEngine()).max_runtime_secs == 0


def test_problem_type_and_metrics(regression_frame, binomial_frame):
    reg = AutoML(make_spec(regression_frame), engine=FakeEngine())
    assert (reg.problem_type, reg.sort_metric, reg.stopping.metric) == ("regression", "r2", "r2")

    binomial = AutoML(make_spec(binomial_frame, response="label"), engine=FakeEngine())
    assert (binomial.problem_type, binomial.sort_metric, binomial.stopping.metric) == ("binomial", "auc", "logloss")

    multi = binomial_frame.assign(label=np.resize(["a", "b", "c"], len(binomial_frame)))
    aml = AutoML(make_spec(multi, response="label"), engine=FakeEngine())
    assert (aml.problem_type, aml.sort_metric) == ("multinomial", "logloss")


def test_explicit_sort_metric(regression_frame):
    aml = AutoML(make_spec(regression_frame, sort_metric="RMSE"), engine=FakeEngine())
    assert aml.sort_metric == "rmse"
    with pytest.raises(AutoMLConfigurationError):
        AutoML(make_spec(regression_frame, sort_metric="bogus"), engine=FakeEngine())


def test_rows_with_missing_response_are_dropped(regression_frame):
    frame = regression_frame.copy()
    frame.loc[[0, 1], "y"] = np.nan
    aml = AutoML(make_spec(frame), engine=FakeEngine())
    assert len(aml.training_data.train) == len(frame) - 2
    assert aml.event_log.find("Dropping 2 training rows", Level.WARN)


def test_frames_partitioned_when_cv_disabled(regression_frame):
    aml = AutoML(make_spec(regression_frame, nfolds=0), engine=FakeEngine())
    data = aml.training_data
    assert (len(data.train), len(data.validation), len(data.leaderboard)) == (48, 6, 6)
    assert aml.event_log.find("in the ratio 80/10/10")


def test_fold_column_overrides_nfolds(regression_frame):
    frame = regression_frame.assign(fold=np.arange(len(regression_frame)) % 3)
    aml = AutoML(make_spec(frame, fold_column="fold"), engine=FakeEngine())
    assert aml.nfolds == 0
    assert aml.training_data.cv_enabled
    assert aml.event_log.find("Custom fold column, fold, will be used", Level.WARN)


def test_adaptive_stopping_tolerance(regression_frame):
    aml = AutoML(make_spec(regression_frame), engine=FakeEngine())
    assert aml.stopping.tolerance == pytest.approx(default_stopping_tolerance(regression_frame))
    assert 0.001 <= aml.stopping.tolerance <= 0.05


def test_user_stopping_tolerance_far_below_default_warns(regression_frame):
    spec = make_spec(regression_frame)
    spec.build_control.stopping_criteria.stopping_tolerance = 1e-6
    aml = AutoML(spec, engine=FakeEngine())
    assert aml.stopping.tolerance == 1e-6
    assert aml.event_log.find("< 70% of the recommended default", Level.WARN)


# ---------------------------------------------------------------------------
# Learn sequence
# ---------------------------------------------------------------------------

def test_build_plan_accounts_all_work(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 3, "build", 10),), (("GBM", "build", None),))
    aml.run()

    assert aml.model_count == 3
    assert len(_launched(engine, Algo.GBM)) == 3
    assert aml.work_plan.remaining_work() == 0
    assert aml.progress.worked == aml.progress.total_work == 30
    assert aml.event_log.find("StackedEnsemble builds skipped due to the exclude_algos option.")
    assert aml.status is AutoMLStatus.STOPPED


def test_planned_jobs_beyond_family_builds_are_accounted(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("DRF", 3, "build", 10),), (("DRF", "build", None),))
    aml.run()

    assert len(_launched(engine, Algo.DRF)) == 2  # DRF and XRT
    assert aml.work_plan.remaining_work() == 0
    assert aml.progress.worked == aml.progress.total_work == 30
    assert aml.event_log.find("1 planned DRF build job(s) not run")


def test_default_plan_runs_to_full_progress(regression_frame):
    engine = FakeEngine()
    aml = AutoML(make_spec(regression_frame), engine=engine, tick_interval=0, time_fn=engine.clock)
    aml.run()

    total = 380 if Algo.XGBoost.enabled() else 250
    assert aml.progress.worked == aml.progress.total_work == total
    assert aml.work_plan.remaining_work() == 0
    assert len(_launched(engine, Algo.DRF)) == 2
    assert len(_launched(engine, Algo.StackedEnsemble)) == 2
    assert aml.progress.progress() == 1.0


def test_model_keys_follow_naming_scheme(regression_frame):
    engine = FakeEngine()
    plan = (("DRF", 2, "build", 10), ("GBM", 1, "search", 60))
    aml = _automl(make_spec(regression_frame), engine, plan, (("DRF", "build", None), ("GBM", "search", None)))
    aml.run()

    drf, xrt = _launched(engine, Algo.DRF)
    assert re.fullmatch(rf"DRF_1_AutoML_{TS}", drf.key)
    assert re.fullmatch(rf"XRT_1_AutoML_{TS}", xrt.key)
    assert (drf.model_type, xrt.model_type) == ("DRF", "XRT")

    (grid,) = _launched(engine, Algo.GBM)
    assert re.fullmatch(rf"GBM_grid_1_AutoML_{TS}", grid.key)
    assert grid.job_type is JobType.HYPERPARAM_SEARCH
    assert engine.store.get(grid.key).result_keys == [f"{grid.key}_model_1"]


def test_max_models_limit_skips_remaining_builds(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame, max_models=2), engine, (("GBM", 5, "build", 10),), (("GBM", "build", None),))
    aml.run()

    assert aml.model_count == 2
    assert len(aml.event_log.find("hit the max_models limit")) == 3
    assert aml.progress.worked == 50


def test_search_sub_budget(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 1, "search", 60), ("GLM", 1, "search", 20))
    steps = (("GBM", "search", None), ("GLM", "search", None))
    aml = _automl(make_spec(regression_frame, max_models=10, max_runtime_secs=100), engine, plan, steps)
    aml.run()

    (gbm,) = _launched(engine, Algo.GBM)
    assert gbm.search_criteria.max_runtime_secs == pytest.approx(75)
    assert gbm.search_criteria.max_models == 8

    (glm,) = _launched(engine, Algo.GLM)
    assert glm.search_criteria.max_runtime_secs == pytest.approx(100)
    assert glm.search_criteria.max_models == 9


def test_search_limits_are_unbounded_without_budget(regression_frame):
    engine = FakeEngine()
    spec = make_spec(regression_frame, max_runtime_secs=0)
    aml = _automl(spec, engine, (("GLM", 1, "search", 20),), (("GLM", "search", None),))
    aml.run()

    (glm,) = _launched(engine, Algo.GLM)
    assert glm.search_criteria.max_models == 0
    assert glm.search_criteria.max_runtime_secs == 0


def test_seed_is_incremented_per_model(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 2, "build", 10), ("GBM", 1, "search", 60))
    steps = (("GBM", "build", None), ("GBM", "search", None))
    aml = _automl(make_spec(regression_frame, seed=100), engine, plan, steps)
    aml.run()

    builds = [p for p in _launched(engine, Algo.GBM) if p.job_type is JobType.MODEL_BUILD]
    search = [p for p in _launched(engine, Algo.GBM) if p.job_type is JobType.HYPERPARAM_SEARCH]
    assert [p.params["random_state"] for p in builds] == [100, 101]
    assert search[0].params["random_state"] == 102
    assert search[0].search_criteria.seed == 100


def test_random_seed_leaves_params_untouched(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 1, "build", 10),), (("GBM", "build", None),))
    aml.run()
    (build,) = _launched(engine, Algo.GBM)
    assert "random_state" not in build.params


def test_invalid_parameters_skip_model(regression_frame):
    engine = FakeEngine(behaviours={"GBM": {"invalid": True}})
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 2, "build", 10),), (("GBM", "build", None),))
    aml.run()

    warnings = aml.event_log.find("Skipping training of model", Level.WARN)
    assert len(warnings) == 2
    assert re.search(rf"GBM_1_AutoML_{TS}", warnings[0].message)
    assert aml.model_count == 0
    assert aml.progress.worked == 20


def test_request_stop_before_run_skips_everything(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 2, "build", 10), ("StackedEnsemble", 2, "build", 15))
    aml = _automl(make_spec(regression_frame), engine, plan, (("GBM", "build", None),))
    aml.request_stop()
    aml.run()

    assert engine.launched == []
    assert aml.event_log.find("AutoML job cancelled; skipping")
    assert aml.event_log.find("No models were built")
    assert aml.progress.worked == aml.progress.total_work


def test_run_cannot_be_repeated(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 1, "build", 10),), (("GBM", "build", None),))
    aml.run()
    with pytest.raises(RuntimeError):
        aml.run()


def test_timeout_stops_builds_but_not_ensembles(regression_frame):
    engine = FakeEngine(clock=FakeClock(), secs_per_tick=6)
    plan = (("GBM", 3, "build", 10), ("GLM", 1, "search", 20), ("StackedEnsemble", 2, "build", 15))
    steps = (("GBM", "build", None), ("GLM", "search", None))
    aml = _automl(make_spec(regression_frame, max_runtime_secs=15), engine, plan, steps)
    aml.run()

    assert aml.event_log.find("GBM 3 cancelled")
    assert aml.event_log.find("out of time; skipping GLM hyperparameter search")
    assert _launched(engine, Algo.GLM) == []
    assert len(_launched(engine, Algo.StackedEnsemble)) == 2
    # two GBMs and both ensembles
    assert aml.model_count == 4
    assert aml.progress.worked == aml.progress.total_work


# ---------------------------------------------------------------------------
# Stacked ensembles
# ---------------------------------------------------------------------------

def test_ensembles_stack_best_of_family_and_all_models(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 2, "build", 10), ("DRF", 2, "build", 10), ("StackedEnsemble", 2, "build", 15))
    aml = _automl(make_spec(regression_frame), engine, plan, (("GBM", "build", None), ("DRF", "build", None)))
    aml.run()

    best_of_family, all_models = _launched(engine, Algo.StackedEnsemble)
    assert re.fullmatch(rf"StackedEnsemble_BestOfFamily_AutoML_{TS}", best_of_family.key)
    assert re.fullmatch(rf"StackedEnsemble_AllModels_AutoML_{TS}", all_models.key)
    assert len(best_of_family.base_models) == 3  # GBM, DRF, XRT
    assert len(all_models.base_models) == 4
    assert best_of_family.max_runtime_secs == 0
    assert aml.model_count == 6
    assert aml.leader().key.startswith("GBM_1_")


def test_ensembles_skipped_when_no_model_was_built(regression_frame):
    engine = FakeEngine(behaviours={"GBM": {"crash": RuntimeError("boom")}})
    plan = (("GBM", 2, "build", 10), ("StackedEnsemble", 2, "build", 15))
    aml = _automl(make_spec(regression_frame), engine, plan, (("GBM", "build", None),))
    aml.run()

    assert aml.event_log.find("No models were built")
    assert _launched(engine, Algo.StackedEnsemble) == []
    assert aml.progress.worked == aml.progress.total_work == 50


def test_ensembles_skipped_with_a_single_model(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 1, "build", 10), ("StackedEnsemble", 2, "build", 15))
    aml = _automl(make_spec(regression_frame), engine, plan, (("GBM", "build", None),))
    aml.run()

    assert aml.event_log.find("only one model built")
    assert aml.progress.worked == aml.progress.total_work


def test_ensembles_skipped_without_cv_or_blending_frame(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 2, "build", 10), ("StackedEnsemble", 2, "build", 15))
    aml = _automl(make_spec(regression_frame, nfolds=0), engine, plan, (("GBM", "build", None),))
    aml.run()

    assert aml.event_log.find("Cross-validation disabled by the user and no blending frame provided")
    assert _launched(engine, Algo.StackedEnsemble) == []


def test_ensembles_use_blending_frame_without_cv(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 2, "build", 10), ("StackedEnsemble", 2, "build", 15))
    spec = make_spec(regression_frame.iloc[:40], nfolds=0, blending_frame=regression_frame.iloc[40:])
    aml = _automl(spec, engine, plan, (("GBM", "build", None),))
    aml.run()

    assert len(_launched(engine, Algo.StackedEnsemble)) == 2


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------

def test_cv_predictions_dropped_unless_kept(regression_frame):
    plan = (("GBM", 2, "build", 10),)
    steps = (("GBM", "build", None),)

    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, plan, steps)
    aml.run()
    assert all(engine.store.get(k).cv_predictions is None for k in aml.leaderboard.ranked_keys())

    spec = make_spec(regression_frame, project="kept")
    spec.build_control.keep_cross_validation_predictions = True
    engine = FakeEngine()
    aml = _automl(spec, engine, plan, steps)
    aml.run()
    assert all(engine.store.get(k).cv_predictions is not None for k in aml.leaderboard.ranked_keys())


def test_stop_logs_summary(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 2, "build", 10),), (("GBM", "build", None),))
    aml.run()
    assert aml.event_log.find("AutoML build stopped")
    assert aml.event_log.find("AutoML build done: built 2 models")
    assert aml.event_log.find("AutoML duration")
    assert not aml.event_log.find("Training frame was mutated")


def test_mutated_training_frame_is_detected(regression_frame):
    frame = regression_frame.copy()
    aml = AutoML(make_spec(frame), engine=FakeEngine())
    frame.loc[0, "x1"] = 1e6
    assert aml._verify_immutability()
    assert aml.event_log.find("Training frame was mutated!", Level.WARN)


def test_delete_removes_models_and_project_state(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 2, "build", 10),), (("GBM", "build", None),))
    aml.run()
    model_keys = aml.leaderboard.ranked_keys()
    aml.delete()
    assert not any(engine.store.contains(k) for k in model_keys)
    assert not engine.store.contains("automl_y@@Leaderboard")
    assert not engine.store.contains("automl_y@@EventLog")


# ---------------------------------------------------------------------------
# Concurrent runs
# ---------------------------------------------------------------------------

def test_concurrent_runs_share_project_leaderboard(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 2, "build", 10),)
    steps = (("GBM", "build", None),)
    first = _automl(make_spec(regression_frame, project="shared"), engine, plan, steps)
    second = _automl(make_spec(regression_frame, project="shared"), engine, plan, steps)
    assert first.timestamp != second.timestamp

    first.start()
    second.start()
    first.block_until_done(timeout=30)
    board = second.block_until_done(timeout=30)
    engine.shutdown()

    assert board.count() == 4
    assert first.model_count == second.model_count == 2
    assert first.event_log is second.event_log


def test_later_run_sees_models_of_earlier_run(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 1, "build", 10), ("StackedEnsemble", 2, "build", 15))
    steps = (("GBM", "build", None),)
    first = make_spec(regression_frame, project="p")
    first.build_control.keep_cross_validation_predictions = True
    _automl(first, engine, plan, steps).run()
    second = _automl(make_spec(regression_frame, project="p"), engine, plan, steps)
    second.run()

    best_of_family, all_models = _launched(engine, Algo.StackedEnsemble)
    assert len(all_models.base_models) == 2
    assert second.model_count == 3


def test_rerun_skips_ensembles_when_earlier_cv_predictions_were_dropped(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 1, "build", 10), ("StackedEnsemble", 2, "build", 15))
    steps = (("GBM", "build", None),)
    _automl(make_spec(regression_frame, project="p"), engine, plan, steps).run()
    second = _automl(make_spec(regression_frame, project="p"), engine, plan, steps)
    second.run()

    assert _launched(engine, Algo.StackedEnsemble) == []
    assert second.event_log.find("1 model(s) without cross-validation predictions")
    assert second.event_log.find("Fewer than two models with cross-validation predictions")
    assert second.progress.worked == second.progress.total_work


def test_ensembles_leave_out_models_trained_on_another_frame(regression_frame):
    engine = FakeEngine()
    plan = (("GBM", 2, "build", 10), ("StackedEnsemble", 2, "build", 15))
    steps = (("GBM", "build", None),)
    first = make_spec(regression_frame, project="p")
    first.build_control.keep_cross_validation_predictions = True
    _automl(first, engine, plan, steps).run()
    engine.launched.clear()

    second = _automl(make_spec(regression_frame.iloc[:50], project="p"), engine, plan, steps)
    second.run()

    best_of_family, all_models = _launched(engine, Algo.StackedEnsemble)
    assert all(second.timestamp in key for key in best_of_family.base_models)
    assert all(second.timestamp in key for key in all_models.base_models)
    assert len(all_models.base_models) == 2


def test_summary_tree_lists_plan_and_leaderboard(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 1, "build", 10),), (("GBM", "build", None),))
    aml.run()
    tree = aml.summary_tree()
    labels = [str(child.label) for child in tree.children]
    assert any("Work plan" in label for label in labels)
    assert any("Leaderboard" in label for label in labels)
    assert isinstance(aml.leaderboard.as_data_frame(), pd.DataFrame)


def test_budget_queries(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame, max_models=3, max_runtime_secs=10), engine, (("GBM", 1, "build", 10),), ())
    assert aml.remaining_models() == 3
    assert aml.remaining_time_ms() == pytest.approx(10_000)
    assert aml.keep_running()
    aml.request_stop()
    assert not aml.keep_running()

    unlimited = AutoML(make_spec(regression_frame, max_runtime_secs=0), engine=FakeEngine())
    assert unlimited.remaining_models() > 10 ** 9


def test_search_limits_follow_keep_running(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 1, "search", 60),), ())
    work = aml.work_plan.get_allocation(Algo.GBM, JobType.HYPERPARAM_SEARCH)
    assert not aml._exceeded_search_limits(work, "GBM hyperparameter search")

    aml.request_stop()
    assert aml._exceeded_search_limits(work, "GBM hyperparameter search")
    assert aml.event_log.find("AutoML job cancelled; skipping GBM hyperparameter search")
    assert aml._exceeded_search_limits(work, "GBM hyperparameter search", ignore_limits=True) is False


def test_block_until_done_after_synchronous_run(regression_frame):
    engine = FakeEngine()
    aml = _automl(make_spec(regression_frame), engine, (("GBM", 1, "build", 10),), (("GBM", "build", None),))
    with pytest.raises(RuntimeError):
        aml.block_until_done()
    board = aml.run()
    assert aml.block_until_done() is board
