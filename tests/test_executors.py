from __future__ import annotations

import pickle
import time

import pytest
from threadpoolctl import threadpool_info, threadpool_limits

from ihtcv.experiments.cross_validation import cv_iht
from ihtcv.experiments.executors import SerialExecutor, blas_threads, make_executor, run_units
from ihtcv.models.errors import ConfigurationError, WorkUnitError


def _square(x: int) -> int:
    return x * x


def _slow_square(x: int) -> int:
    time.sleep(0.01 * (5 - x))
    return x * x


def _fail_on_three(x: int) -> int:
    if x == 3:
        raise WorkUnitError("boom", fold=x, k=7)
    return x


@pytest.mark.parametrize("kind", ["serial", "thread", "process"])
def test_results_are_keyed_by_unit_regardless_of_completion_order(kind):
    units = [(i, i) for i in range(5)]
    with make_executor(kind, 2) as pool:
        results = run_units(_slow_square, units, pool)
    assert results == {i: i * i for i in range(5)}


@pytest.mark.parametrize("kind", ["serial", "thread", "process"])
def test_first_failure_propagates_with_fold_and_size(kind):
    with make_executor(kind, 2) as pool:
        with pytest.raises(WorkUnitError) as info:
            run_units(_fail_on_three, [(i, i) for i in range(6)], pool)
    assert info.value.fold == 3
    assert info.value.k == 7


def test_serial_executor_stops_submitting_after_failure():
    seen = []

    def record(x):
        seen.append(x)
        return _fail_on_three(x)

    with pytest.raises(WorkUnitError):
        run_units(record, [(i, i) for i in range(6)], SerialExecutor())
    assert seen == [0, 1, 2, 3]


def test_make_executor_validates_arguments():
    with pytest.raises(ConfigurationError):
        make_executor("gpu")
    with pytest.raises(ConfigurationError):
        make_executor("thread", -2)
    assert isinstance(make_executor(), SerialExecutor)


def test_work_unit_error_survives_pickling():
    err = pickle.loads(pickle.dumps(WorkUnitError("fold failed", fold=2, k=5)))
    assert isinstance(err, WorkUnitError)
    assert (err.fold, err.k) == (2, 5)
    assert str(err) == "fold failed"


def test_blas_threads_is_a_noop_without_limit():
    with blas_threads(None):
        assert _square(3) == 9
    with blas_threads(1):
        assert _square(4) == 16


def _pool_threads():
    return [pool["num_threads"] for pool in threadpool_info()]


def test_thread_executor_leaves_blas_limits_as_found(sparse_normal):
    X, y, _ = sparse_normal
    with threadpool_limits(limits=4):
        before = _pool_threads()
        for _ in range(3):
            cv_iht(y, X, path=range(1, 13), q=5, fold_seed=0, executor="thread", n_jobs=8)
        assert _pool_threads() == before
