from __future__ import annotations

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pytest

from ihtcv.metrics.selection import false_discovery_rate, support_recovery, true_positive_rate
from ihtcv.viz.plots import coefficient_bar, plot_cv_curve


def test_support_recovery_counts():
    truth = np.array([0.0, 1.0, 0.0, -2.0, 0.0])
    estimate = np.array([0.0, 0.9, 0.3, 0.0, 0.0])
    metrics = support_recovery(truth, estimate)
    assert metrics["tpr"] == pytest.approx(0.5)
    assert metrics["fdr"] == pytest.approx(0.5)
    assert metrics["f1"] == pytest.approx(0.5)
    assert (metrics["n_true"], metrics["n_selected"], metrics["n_overlap"]) == (2, 2, 1)


def test_support_recovery_accepts_index_lists():
    truth = np.array([0.0, 1.0, 1.0, 0.0])
    metrics = support_recovery(truth, np.array([1, 2]))
    assert metrics["tpr"] == pytest.approx(1.0)
    assert metrics["fdr"] == pytest.approx(0.0)


def test_empty_selection_has_zero_fdr():
    assert false_discovery_rate(np.array([1, 0]), np.array([0, 0])) == 0.0
    assert true_positive_rate(np.array([1, 0]), np.array([0, 0])) == 0.0


def test_plots_draw_on_given_axes():
    fig, ax = plt.subplots()
    out = plot_cv_curve([1, 2, 3], [3.0, 1.0, 2.0], fold_errors=np.ones((3, 2)), best_k=2, ax=ax)
    assert out is ax
    assert len(ax.lines) == 4
    plt.close(fig)

    ax = coefficient_bar(np.array([0.0, 1.0, 0.0, 0.5]), truth=np.array([1.0, 1.0, 0.0, 0.0]))
    assert [t.get_text() for t in ax.get_xticklabels()] == ["0", "1", "3"]
    plt.close(ax.figure)
