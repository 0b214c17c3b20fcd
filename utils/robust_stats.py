# utils/robust_stats.py – Median / MAD / percentile helpers on pixel samples

from __future__ import annotations

from typing import Dict, Sequence

import numpy as np
from numpy.typing import ArrayLike

__all__ = [
    "MAD_TO_SIGMA",
    "median",
    "mad",
    "sigma_mad",
    "robust_stats",
    "rank_percentile",
    "sparse_sample",
    "global_noise",
]

# Scales MAD to a consistent estimator of the standard deviation for
# normally distributed data.
MAD_TO_SIGMA = 1.4826

_SPARSE_MIN_SAMPLES = 10_000
_SPARSE_MAX_SAMPLES = 100_000


def _as_flat(values: ArrayLike) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).ravel()
    return arr[np.isfinite(arr)]


def median(values: ArrayLike) -> float:
    """Return the sample median (mean of the two middle values for even size)."""
    arr = _as_flat(values)
    if arr.size == 0:
        return float("nan")
    return float(np.median(arr))


def mad(values: ArrayLike, center: float | None = None) -> float:
    """Median absolute deviation around ``center`` (the median by default)."""
    arr = _as_flat(values)
    if arr.size == 0:
        return float("nan")
    c = float(np.median(arr)) if center is None else float(center)
    return float(np.median(np.abs(arr - c)))


def sigma_mad(values: ArrayLike) -> float:
    """Robust sigma, ``1.4826 * MAD``."""
    return MAD_TO_SIGMA * mad(values)


def robust_stats(values: ArrayLike) -> Dict[str, float]:
    """Return mean, median, std sigma and MAD-derived sigma of ``values``."""
    arr = _as_flat(values)
    if arr.size == 0:
        nan = float("nan")
        return {"mean": nan, "median": nan, "sigma": nan, "sigma_mad": nan}
    med = float(np.median(arr))
    return {
        "mean": float(np.mean(arr)),
        "median": med,
        "sigma": float(np.std(arr)),
        "sigma_mad": MAD_TO_SIGMA * float(np.median(np.abs(arr - med))),
    }


def rank_percentile(values: Sequence[float] | np.ndarray, q: float) -> float:
    """Nearest-rank percentile: ``sorted(values)[floor(n * q)]``.

    ``q`` is a fraction in ``[0, 1]``. The index is clamped to the last
    element so ``q=1.0`` returns the maximum.
    """
    arr = np.sort(_as_flat(values))
    if arr.size == 0:
        raise ValueError("rank_percentile of empty sample")
    idx = min(int(np.floor(arr.size * float(q))), arr.size - 1)
    return float(arr[max(idx, 0)])


def sparse_sample(image: np.ndarray, fraction: float = 0.01) -> np.ndarray:
    """Return an evenly strided subset of ``image`` pixels.

    The sample size is ``floor(total * fraction)`` clamped to
    [10 000, 100 000] pixels. Taking every ``step``-th pixel in raster order is
    an approximation of the full-image distribution; it is accurate for noise
    that is spatially uncorrelated at the stride scale and much cheaper than
    sorting every pixel.
    """
    flat = np.asarray(image, dtype=np.float64).ravel()
    total = flat.size
    count = int(np.floor(total * float(fraction)))
    count = max(_SPARSE_MIN_SAMPLES, min(count, _SPARSE_MAX_SAMPLES))
    step = max(1, total // count)
    return flat[::step]


def global_noise(image: np.ndarray, fraction: float = 0.01) -> Dict[str, float]:
    """Whole-image median and MAD sigma estimated from a sparse sample."""
    samples = _as_flat(sparse_sample(image, fraction))
    if samples.size < 10:
        return {"median": 0.0, "sigma_mad": 0.0, "sample_count": 0}
    med = float(np.median(samples))
    return {
        "median": med,
        "sigma_mad": MAD_TO_SIGMA * float(np.median(np.abs(samples - med))),
        "sample_count": int(samples.size),
    }
