"""Pluggable execution of independent cross-validation work units."""
from __future__ import annotations

import logging
import os
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, as_completed, wait
from contextlib import contextmanager
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, Optional, Tuple

from threadpoolctl import threadpool_limits

from ihtcv.models.errors import ConfigurationError

__all__ = ["SerialExecutor", "make_executor", "run_units", "blas_threads", "EXECUTOR_KINDS"]

logger = logging.getLogger(__name__)

EXECUTOR_KINDS = ("serial", "thread", "process")


class SerialExecutor(Executor):
    """Runs every submitted callable immediately in the calling thread."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:  # delivered through future.result()
            future.set_exception(exc)
        return future


def make_executor(kind: str = "serial", n_jobs: Optional[int] = None) -> Executor:
    kind = str(kind).lower()
    if kind not in EXECUTOR_KINDS:
        raise ConfigurationError(f"Unknown executor '{kind}'. Use one of {EXECUTOR_KINDS}.")
    if kind == "serial":
        return SerialExecutor()
    workers = int(n_jobs) if n_jobs else (os.cpu_count() or 1)
    if workers < 1:
        raise ConfigurationError(f"n_jobs must be positive, got {n_jobs!r}.")
    if kind == "thread":
        return ThreadPoolExecutor(max_workers=workers)
    return ProcessPoolExecutor(max_workers=workers)


@contextmanager
def blas_threads(n: Optional[int]) -> Iterator[None]:
    """Cap BLAS/OpenMP threads at ``n`` inside the block (no-op for ``None`` or ``n <= 0``)."""
    if n is None or int(n) <= 0:
        yield
        return
    with threadpool_limits(limits=int(n)):
        yield


def _call_limited(fn: Callable[..., Any], payload: Any, blas: Optional[int]) -> Any:
    with blas_threads(blas):
        return fn(payload)


def run_units(
    fn: Callable[[Any], Any],
    units: Iterable[Tuple[Hashable, Any]],
    executor: Executor,
    *,
    blas: Optional[int] = 1,
) -> Dict[Hashable, Any]:
    """Evaluate ``fn(payload)`` for every ``(key, payload)`` and key results by unit.

    The first failing unit cancels everything still pending and its exception
    propagates; results of units that already finished are discarded.

    BLAS limits are process-global: process pools apply ``blas`` inside each
    worker, thread pools hold one limit in the caller for the whole batch.
    """

    if isinstance(executor, SerialExecutor):
        blas = None
    per_unit = blas if isinstance(executor, ProcessPoolExecutor) else None
    batch = None if isinstance(executor, ProcessPoolExecutor) else blas
    futures: Dict[Future, Hashable] = {}
    results: Dict[Hashable, Any] = {}
    with blas_threads(batch):
        try:
            for key, payload in units:
                future = executor.submit(_call_limited, fn, payload, per_unit)
                futures[future] = key
                if future.done() and future.exception() is not None:
                    future.result()
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        except BaseException:
            cancelled = sum(1 for future in futures if future.cancel())
            if cancelled:
                logger.debug("Cancelled %d pending work units after a failure.", cancelled)
            # running units still hold the batch limit
            wait(futures)
            raise
    return results
