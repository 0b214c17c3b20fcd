#!/usr/bin/env python3
import math

import pytest

np = pytest.importorskip("numpy")
pytest.importorskip("matplotlib")

from core import plotting
from core.insights import compute_insights
from core.models import DepthJob, RoiPair
from core.snr import annotate_gains
from utils.roi import Rect


def _jobs():
    depths = [8, 16, 32, 64]
    jobs = [
        DepthJob(
            label=f"N{d}",
            depth=d,
            total_exposure=d * 300.0,
            snr=2.0 * math.sqrt(d),
            decision_snr=2.1 * math.sqrt(d),
        )
        for d in depths
    ]
    return annotate_gains(jobs)


def test_plot_snr_vs_depth_ideal_line(tmp_path):
    jobs = _jobs()
    fig = plotting.plot_snr_vs_depth(
        jobs, tmp_path / "snr.png", compute_insights(jobs), return_fig=True
    )
    assert (tmp_path / "snr.png").exists()
    ideal_lines = [
        l
        for l in fig.axes[0].lines
        if l.get_color() == "k" and l.get_linestyle() == "--"
    ]
    assert len(ideal_lines) == 1
    # measured + decision + ideal, plus the stop marker
    assert len(fig.axes[0].lines) >= 3
    assert "exponent" in fig.axes[0].get_title()


def test_plot_snr_vs_depth_nothing_measured(tmp_path):
    jobs = [DepthJob(label="N8", depth=8, total_exposure=2400)]
    assert plotting.plot_snr_vs_depth(jobs, tmp_path / "snr.png") is None
    assert not (tmp_path / "snr.png").exists()


def test_plot_gain_per_hour(tmp_path):
    fig = plotting.plot_gain_per_hour(_jobs(), tmp_path / "gain.png", return_fig=True)
    assert (tmp_path / "gain.png").exists()
    # first depth has no step
    assert len(fig.axes[0].patches) == 3


def test_plot_roi_overlay(tmp_path):
    rng = np.random.default_rng(0)
    img = rng.normal(0.1, 0.01, size=(64, 64))
    mask = np.zeros((64, 64), dtype=bool)
    mask[30:50, 30:50] = True
    roi = RoiPair(bg=Rect(0, 0, 16, 16), fg=Rect(32, 32, 48, 48), source="rangeMask", mask=mask)
    out = tmp_path / "deep" / "roi.png"
    fig = plotting.plot_roi_overlay(img, roi, out, return_fig=True)
    assert out.exists()
    assert len(fig.axes[0].patches) == 2


def test_plot_roi_overlay_saturated_image(tmp_path):
    roi = RoiPair(bg=Rect(0, 0, 8, 8), fg=Rect(8, 8, 16, 16), source="manual")
    plotting.plot_roi_overlay(np.ones((32, 32)), roi, tmp_path / "roi.png")
    assert (tmp_path / "roi.png").exists()


def test_plots_from_worker_threads(tmp_path):
    from concurrent.futures import ThreadPoolExecutor

    jobs = _jobs()
    insights = compute_insights(jobs)

    def _draw(i):
        plotting.plot_snr_vs_depth(jobs, tmp_path / f"snr_{i}.png", insights)
        plotting.plot_gain_per_hour(jobs, tmp_path / f"gain_{i}.png")

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(_draw, range(8)))
    assert len(list(tmp_path.glob("*.png"))) == 16


def test_figures_are_not_registered_with_pyplot(tmp_path):
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    before = plt.get_fignums()
    fig = plotting.plot_gain_per_hour(_jobs(), tmp_path / "gain.png", return_fig=True)
    assert fig is not None
    assert plt.get_fignums() == before
