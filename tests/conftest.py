from __future__ import annotations

import logging

import numpy as np
import pytest

from ihtcv.utils.logging_utils import ROOT_LOGGER


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Undo handlers installed by ``setup_logging`` so caplog keeps working."""
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def sparse_normal():
    """Strong-signal Gaussian problem with three active predictors."""
    rng = np.random.default_rng(11)
    n, p = 200, 40
    X = rng.normal(size=(n, p))
    X = (X - X.mean(axis=0)) / X.std(axis=0)
    beta = np.zeros(p)
    beta[[3, 17, 29]] = [1.5, -2.0, 1.0]
    y = 0.5 + X @ beta + 0.5 * rng.normal(size=n)
    return X, y, beta
