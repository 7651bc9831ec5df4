import os
import py_compile

import pytest
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.utils import get_tags
from sklearn.utils.validation import check_is_fitted

from components import Algo
from components.base import BaseEstimatorBlock

ROOT = os.path.dirname(os.path.dirname(__file__))

# Collect all Python files in the repository
python_files = [
    os.path.join(root, f)
    for root, _, files in os.walk(ROOT)
    for f in files if f.endswith('.py') and 'env-' not in root
]


@pytest.mark.parametrize("path", python_files)
def test_python_file_compiles(path):
    """Ensure all Python files are syntactically valid."""
    py_compile.compile(path, doraise=True)


@pytest.mark.parametrize("algo", list(Algo), ids=lambda a: a.value)
def test_block_signature_matches_algo(algo):
    block = algo.block
    assert issubclass(block, BaseEstimatorBlock)
    assert block.get_signature()["algo"] == algo.value
    for build in block.default_builds():
        assert build.name
    for plan in block.search_plans():
        assert plan.hyper_params


@pytest.mark.parametrize("algo", [Algo.GLM, Algo.DRF], ids=lambda a: a.value)
def test_block_works_as_pipeline_step(algo, regression_frame):
    block = algo.block("regression")
    assert get_tags(block) == get_tags(block._impl)

    X, y = regression_frame[["x1", "x2"]], regression_frame["y"]
    pipeline = Pipeline([("scale", StandardScaler()), ("model", block)]).fit(X, y)
    check_is_fitted(pipeline)
    assert pipeline.predict(X).shape == (len(X),)
