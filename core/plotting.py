# core/plotting.py – SNR-vs-depth, gain-per-hour and ROI overlay graphs

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence
import logging

# figures are built without pyplot so graphs can be drawn from worker threads
from matplotlib.figure import Figure
from matplotlib.patches import Rectangle
import numpy as np

from utils.logger import log_memory_usage
from core.models import DepthJob, InsightsReport, RoiPair
from core.transforms import AutoStfStretch, TransformUnavailable

__all__ = [
    "plot_snr_vs_depth",
    "plot_gain_per_hour",
    "plot_roi_overlay",
]


def _finish(fig: Figure, output_path: Path, return_fig: bool) -> Figure | None:
    fig.tight_layout()
    fig.savefig(output_path)
    return fig if return_fig else None


def plot_snr_vs_depth(
    jobs: Sequence[DepthJob],
    output_path: Path,
    insights: Optional[InsightsReport] = None,
    *,
    return_fig: bool = False,
) -> Figure | None:
    """Plot measured and decision SNR against exposure hours.

    An ideal ``sqrt(t)`` curve anchored at the first point is drawn for
    comparison, and the recommended stop depth is marked when known.
    """
    logging.info("plot_snr_vs_depth: output=%s", output_path)
    log_memory_usage("plot start: ")
    jobs = [
        j for j in jobs
        if j.snr is not None and np.isfinite(j.snr) and j.snr > 0 and j.total_exposure > 0
    ]
    if not jobs:
        logging.warning("plot_snr_vs_depth: no measured depths to plot")
        return None
    hours = np.array([j.total_hours for j in jobs], dtype=float)
    snr = np.array([j.snr for j in jobs], dtype=float)

    fig = Figure(figsize=(8, 5))
    ax = fig.subplots()
    ax.plot(hours, snr, marker="o", linestyle="-", label="SNR (measured)")
    if all(j.decision_snr is not None for j in jobs):
        ax.plot(
            hours,
            [j.decision_snr for j in jobs],
            marker="s",
            linestyle="-",
            label="SNR (fixed signal)",
        )
    xs = np.linspace(hours.min(), hours.max(), 200)
    ax.plot(xs, snr[0] * np.sqrt(xs / hours[0]), color="k", linestyle="--", label="Ideal √t")

    for h, s, j in zip(hours, snr, jobs):
        ax.annotate(j.label, (h, s), textcoords="offset points", xytext=(4, 4), fontsize=8)

    stop = insights.gain_per_hour_stop if insights else None
    if stop:
        stop_job = next((j for j in jobs if j.label == stop), None)
        if stop_job is not None:
            ax.axvline(stop_job.total_hours, color="r", linestyle=":", label=f"Stop: {stop}")

    title = "SNR vs Integration Time"
    if insights is not None and insights.scaling_exponent is not None:
        title += f" (exponent {insights.scaling_exponent:.2f})"
    ax.set_xlabel("Integration time (h)")
    ax.set_ylabel("SNR")
    ax.set_title(title)
    ax.grid(True)
    ax.legend()
    out = _finish(fig, output_path, return_fig)
    log_memory_usage("plot end: ")
    return out


def plot_gain_per_hour(
    jobs: Sequence[DepthJob],
    output_path: Path,
    threshold: float = 2.0,
    *,
    return_fig: bool = False,
) -> Figure | None:
    """Bar chart of SNR gain per added hour for each step."""
    steps = [j for j in jobs if j.gain_per_hour is not None]
    fig = Figure(figsize=(8, 4))
    ax = fig.subplots()
    if steps:
        ax.bar([j.label for j in steps], [j.gain_per_hour for j in steps], color="tab:blue")
    ax.axhline(threshold, color="r", linestyle="--", label=f"{threshold:g} %/hr")
    ax.set_xlabel("Depth")
    ax.set_ylabel("SNR gain (%/hr)")
    ax.set_title("Gain per Hour")
    ax.grid(True, axis="y")
    ax.legend()
    return _finish(fig, output_path, return_fig)


def plot_roi_overlay(
    image: np.ndarray,
    roi: RoiPair,
    output_path: Path,
    *,
    return_fig: bool = False,
) -> Figure | None:
    """Stretched reference with BG (blue) / FG (red) boxes and mask outline."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        shown = AutoStfStretch().apply(image)
    except TransformUnavailable:
        shown = np.clip(image, 0.0, 1.0)
    fig = Figure(figsize=(8, 8 * image.shape[0] / max(image.shape[1], 1)))
    ax = fig.subplots()
    ax.imshow(shown, cmap="gray", vmin=0, vmax=1)
    if roi.mask is not None:
        ax.contour(roi.mask.astype(float), levels=[0.5], colors="lime", linewidths=0.8)
    for rect, color, name in ((roi.bg, "tab:blue", "BG"), (roi.fg, "tab:red", "FG")):
        ax.add_patch(
            Rectangle(
                (rect.x0, rect.y0), rect.width, rect.height, edgecolor=color, facecolor="none", linewidth=2
            )
        )
        ax.text(rect.x0, rect.y0 - 4, name, color=color, fontsize=9)
    ax.set_title(f"ROI ({roi.source})")
    ax.set_axis_off()
    return _finish(fig, output_path, return_fig)
