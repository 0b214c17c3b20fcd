# core/snr.py – ROI SNR measurement with background scale-locking

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, replace
from typing import Dict, List, Optional, Sequence

import numpy as np

from core.models import DepthJob, MeasurementError
from utils.config import AnalysisConfig
from utils.robust_stats import global_noise, median, robust_stats
from utils.roi import Rect, validate_rect

__all__ = [
    "SnrMeasurement",
    "measure_roi",
    "compute_bg_ref",
    "scale_factor_for",
    "measure_snr",
    "apply_decision_snr",
    "annotate_gains",
]


@dataclass(frozen=True)
class SnrMeasurement:
    bg_mean: float
    bg_median: float
    bg_sigma: float
    bg_sigma_mad: float
    fg_mean: float
    fg_median: float
    fg_sigma: float
    fg_sigma_mad: float
    signal: float
    snr: float
    snr_fg: float
    scale_factor: float = 1.0
    bg_median_raw: Optional[float] = None
    bg_median_scaled: Optional[float] = None
    global_median: float = 0.0
    global_noise: float = 0.0
    global_noise_samples: int = 0

    def as_job_fields(self) -> Dict[str, float]:
        return asdict(self)


def measure_roi(image: np.ndarray, rect: Rect) -> Dict[str, float]:
    """mean / median / std sigma / MAD sigma of one rectangle."""
    validate_rect(rect, image.shape)
    return robust_stats(rect.crop(image))


def compute_bg_ref(image: np.ndarray, bg_rect: Rect) -> float:
    """Background median of the reference stack, the scale-lock target."""
    bg_ref = median(rect_crop_checked(image, bg_rect))
    logging.info("Reference background: BG_ref = %.8f", bg_ref)
    return bg_ref


def rect_crop_checked(image: np.ndarray, rect: Rect) -> np.ndarray:
    return validate_rect(rect, image.shape).crop(image)


def scale_factor_for(
    bg_ref: float, bg_raw: float, clamp: tuple = (0.25, 4.0)
) -> float:
    """``bg_ref / bg_raw`` clamped to ``clamp``; warns when clamping applies."""
    raw_factor = bg_ref / bg_raw
    lo, hi = clamp
    factor = max(lo, min(hi, raw_factor))
    if abs(factor - raw_factor) > 1e-3:
        logging.warning(
            "Scale factor clamped: %.4f -> %.4f", raw_factor, factor
        )
    return factor


def measure_snr(
    image: np.ndarray,
    bg_rect: Rect,
    fg_rect: Rect,
    bg_ref: Optional[float] = None,
    cfg: AnalysisConfig = AnalysisConfig(),
) -> SnrMeasurement:
    """Measure background-referenced SNR on one stacked image.

    When ``bg_ref`` is positive the image is first multiplied by
    ``bg_ref / bg_median`` (clamped) so that every depth is measured on the
    same signal scale. The multiplied copy is not truncated to [0, 1].

    Raises :class:`MeasurementError` when the background MAD sigma is zero.
    """
    validate_rect(bg_rect, image.shape)
    validate_rect(fg_rect, image.shape)
    data = np.asarray(image, dtype=np.float64)

    factor = 1.0
    bg_raw: Optional[float] = None
    bg_scaled: Optional[float] = None
    if bg_ref is not None and bg_ref > 0:
        bg_raw = median(bg_rect.crop(data))
        if bg_raw > 0:
            factor = scale_factor_for(bg_ref, bg_raw, cfg.scale_clamp)
            data = data * factor
            bg_scaled = median(bg_rect.crop(data))
            drift = (bg_scaled - bg_ref) / bg_ref * 100.0
            logging.info(
                "Scale lock: bgRef=%.8f bgRaw=%.8f scale=%.6f bgScaled=%.8f drift=%.3f%%",
                bg_ref,
                bg_raw,
                factor,
                bg_scaled,
                drift,
            )
            if abs(drift) > cfg.drift_warn_pct:
                logging.warning(
                    "Scaled background differs from reference by %.2f%%, verify ROI consistency",
                    drift,
                )
        else:
            logging.warning(
                "Invalid raw background median (%s), scaling disabled for this depth",
                bg_raw,
            )
    elif bg_ref is not None:
        logging.warning("Invalid BG_ref (%s), skipping normalization", bg_ref)

    bg = robust_stats(bg_rect.crop(data))
    fg = robust_stats(fg_rect.crop(data))
    noise = global_noise(data, cfg.noise_sample_fraction)

    if not bg["sigma_mad"] or not math.isfinite(bg["sigma_mad"]):
        raise MeasurementError(
            f"Background MAD sigma is zero in {bg_rect}; cannot compute SNR"
        )
    signal = fg["median"] - bg["median"]
    snr_fg = signal / fg["sigma_mad"] if fg["sigma_mad"] else float("nan")

    return SnrMeasurement(
        bg_mean=bg["mean"],
        bg_median=bg["median"],
        bg_sigma=bg["sigma"],
        bg_sigma_mad=bg["sigma_mad"],
        fg_mean=fg["mean"],
        fg_median=fg["median"],
        fg_sigma=fg["sigma"],
        fg_sigma_mad=fg["sigma_mad"],
        signal=signal,
        snr=signal / bg["sigma_mad"],
        snr_fg=snr_fg,
        scale_factor=factor,
        bg_median_raw=bg_raw,
        bg_median_scaled=bg_scaled,
        global_median=noise["median"],
        global_noise=noise["sigma_mad"],
        global_noise_samples=int(noise["sample_count"]),
    )


# ────────────────────────────────────────────────
# Cross-depth annotation
# ────────────────────────────────────────────────
def apply_decision_snr(jobs: Sequence[DepthJob]) -> List[DepthJob]:
    """Recompute SNR with the signal of the deepest job held fixed.

    ``decision_snr = signal_ref / bg_sigma_mad`` isolates the noise reduction
    from signal estimates that wander between depths.
    """
    measured = sorted((j for j in jobs if j.measured), key=lambda j: j.depth)
    if not measured:
        return list(jobs)
    deepest = measured[-1]
    signal_ref = float(deepest.fg_median - deepest.bg_median)
    logging.info("Decision SNR: signalRef from %s = %.8f", deepest.label, signal_ref)
    out = []
    for j in sorted(jobs, key=lambda j: j.depth):
        if j.measured and j.bg_sigma_mad:
            j = replace(j, signal_ref=signal_ref, decision_snr=signal_ref / j.bg_sigma_mad)
        out.append(j)
    return out


def annotate_gains(jobs: Sequence[DepthJob], metric: str = "decision") -> List[DepthJob]:
    """Fill step fields (% SNR gain, added hours, %/hr, hours to +10 %)."""
    ordered = sorted(jobs, key=lambda j: j.depth)
    out: List[DepthJob] = []
    for idx, job in enumerate(ordered):
        if idx == 0:
            out.append(
                replace(job, delta_snr_pct=None, delta_hours=None, gain_per_hour=None, t10_hours=None)
            )
            continue
        prev = ordered[idx - 1]
        cur_snr = job.metric_snr(metric)
        prev_snr = prev.metric_snr(metric)
        if cur_snr is None or prev_snr is None:
            out.append(job)
            continue
        delta_pct = (cur_snr - prev_snr) / prev_snr * 100.0 if prev_snr > 0 else 0.0
        delta_hours = (job.total_exposure - prev.total_exposure) / 3600.0
        gain = delta_pct / delta_hours if delta_hours > 0 else 0.0
        t10 = delta_hours * (10.0 / delta_pct) if delta_pct > 0 else math.inf
        out.append(
            replace(
                job,
                delta_snr_pct=delta_pct,
                delta_hours=delta_hours,
                gain_per_hour=gain,
                t10_hours=t10,
            )
        )
    return out
