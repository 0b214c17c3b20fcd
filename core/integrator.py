# core/integrator.py – Average combination with pixel rejection

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Sequence

import numpy as np

from core.loader import load_frame
from core.models import IntegrationError, Subframe
from utils.config import AnalysisConfig

__all__ = [
    "Integrator",
    "select_rejection",
    "percentile_clip",
    "winsorized_sigma_clip",
    "linear_fit_clip",
    "REJECTIONS",
]

_WINSOR_ITERS = 10
_WINSOR_CUT = 1.5
# std of a normal sample winsorized at ±1.5 sigma, rescaled to full sigma
_WINSOR_CORR = 1.134


def select_rejection(n: int, algorithm: str = "Auto") -> str:
    """Rejection used for ``n`` frames; ``Auto`` switches on frame count."""
    if algorithm != "Auto":
        if algorithm not in REJECTIONS:
            logging.warning("Unknown rejection '%s', using WinsorizedSigmaClip", algorithm)
            return "WinsorizedSigmaClip"
        return algorithm
    if n < 15:
        return "PercentileClip"
    if n < 25:
        return "WinsorizedSigmaClip"
    return "LinearFit"


# ────────────────────────────────────────────────
# Rejection kernels: cube (N, H, W) -> boolean keep mask
# ────────────────────────────────────────────────
def percentile_clip(cube: np.ndarray, low: float, high: float) -> np.ndarray:
    """Keep pixels within ``[-low, +high]`` relative deviation from the median."""
    med = np.median(cube, axis=0)
    safe = np.where(med > 0, med, 1.0)
    dev = (cube - med) / safe
    return (dev >= -low) & (dev <= high)


def winsorized_sigma_clip(
    cube: np.ndarray, sigma_low: float, sigma_high: float, iters: int = _WINSOR_ITERS
) -> np.ndarray:
    keep = np.ones(cube.shape, dtype=bool)
    for _ in range(iters):
        data = np.where(keep, cube, np.nan)
        med = np.nanmedian(data, axis=0)
        sig = np.nanstd(data, axis=0)
        lo = med - _WINSOR_CUT * sig
        hi = med + _WINSOR_CUT * sig
        wins = np.clip(data, lo, hi)
        sig_w = _WINSOR_CORR * np.nanstd(wins, axis=0)
        new_keep = keep & (cube >= med - sigma_low * sig_w) & (cube <= med + sigma_high * sig_w)
        if np.array_equal(new_keep, keep):
            break
        keep = new_keep
    return keep


def linear_fit_clip(cube: np.ndarray, sigma_low: float, sigma_high: float) -> np.ndarray:
    """Fit a line to each pixel's sorted stack and reject outliers from it."""
    n = cube.shape[0]
    order = np.argsort(cube, axis=0)
    ys = np.take_along_axis(cube, order, axis=0)
    x = np.arange(n, dtype=np.float64).reshape((n,) + (1,) * (cube.ndim - 1))
    xm = (n - 1) / 2.0
    ym = ys.mean(axis=0)
    sxx = float(np.sum((np.arange(n) - xm) ** 2))
    slope = np.sum((x - xm) * (ys - ym), axis=0) / sxx
    resid = ys - (ym + slope * (x - xm))
    sigma = np.mean(np.abs(resid), axis=0)
    keep_sorted = (resid >= -sigma_low * sigma) & (resid <= sigma_high * sigma)
    keep = np.empty_like(keep_sorted)
    np.put_along_axis(keep, order, keep_sorted, axis=0)
    return keep


RejectionFn = Callable[[np.ndarray, AnalysisConfig], np.ndarray]

# name -> kernel producing the keep mask; None averages every pixel
REJECTIONS: Dict[str, Optional[RejectionFn]] = {
    "PercentileClip": lambda cube, cfg: percentile_clip(cube, cfg.percentile_low, cfg.percentile_high),
    "WinsorizedSigmaClip": lambda cube, cfg: winsorized_sigma_clip(cube, cfg.sigma_low, cfg.sigma_high),
    "LinearFit": lambda cube, cfg: linear_fit_clip(cube, cfg.sigma_low, cfg.sigma_high),
    "NoRejection": None,
}


# ────────────────────────────────────────────────
# Integrator
# ────────────────────────────────────────────────
class Integrator:
    """Combine the first N subframes of a group into one float64 stack."""

    def __init__(
        self,
        cfg: AnalysisConfig = AnalysisConfig(),
        loader: Callable[[object], np.ndarray] = load_frame,
    ) -> None:
        self.cfg = cfg
        self.loader = loader

    def _load_cube(self, subframes: Sequence[Subframe]) -> np.ndarray:
        frames = []
        for sub in subframes:
            try:
                frames.append(np.asarray(self.loader(sub.path), dtype=np.float32))
            except (OSError, ValueError) as exc:
                raise IntegrationError(f"Failed to load {sub.path}: {exc}") from exc
        shapes = {f.shape for f in frames}
        if len(shapes) != 1:
            raise IntegrationError(f"Subframes differ in shape: {sorted(shapes)}")
        return np.stack(frames, axis=0)

    def integrate(self, subframes: Sequence[Subframe]) -> np.ndarray:
        if not subframes:
            raise IntegrationError("No subframes to integrate")
        cube = self._load_cube(subframes)
        n = cube.shape[0]
        algo = select_rejection(n, self.cfg.rejection_algorithm)
        logging.info("Integrating %d frames (rejection: %s)", n, algo)

        kernel = REJECTIONS[algo]
        if n < 3 or kernel is None:
            return cube.mean(axis=0, dtype=np.float64)
        keep = kernel(cube, self.cfg)

        counts = keep.sum(axis=0)
        sums = np.where(keep, cube, 0.0).sum(axis=0, dtype=np.float64)
        fallback = np.median(cube, axis=0).astype(np.float64)
        out = np.where(counts > 0, sums / np.maximum(counts, 1), fallback)
        rejected = 1.0 - keep.mean()
        logging.debug("Rejected %.2f%% of pixels", rejected * 100.0)
        if not np.all(np.isfinite(out)):
            raise IntegrationError("Integrated stack contains non-finite values")
        return out
