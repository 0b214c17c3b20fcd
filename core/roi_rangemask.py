# core/roi_rangemask.py – Threshold-mask BG/FG detector for starless references

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

from core.models import MaskCandidate, NeedsManualInput, RoiPair
from core.roi_tiles import tile_grid
from utils.config import AnalysisConfig
from utils.robust_stats import MAD_TO_SIGMA
from utils.roi import Rect

__all__ = [
    "border_margin",
    "threshold_mask",
    "cleanup_mask",
    "analyze_mask",
    "search_threshold",
    "detect_rangemask",
]

DETECTOR = "rangeMask"
FLAT_SIGMA = 1e-8
MIN_MASK_PIXELS = 10
FG_OVERLAP_FALLBACK = 0.8
MIN_SEPARATION_FRAC = 0.25

_STRUCT3 = np.ones((3, 3), dtype=bool)


# ────────────────────────────────────────────────
# Geometry helpers
# ────────────────────────────────────────────────
def border_margin(shape: Tuple[int, ...]) -> int:
    """3 % of the shorter side, clamped to [20, 200] px."""
    m = int(round(min(shape[0], shape[1]) * 0.03))
    return max(20, min(200, m))


def _safe_zone(shape: Tuple[int, ...], margin: int) -> np.ndarray:
    zone = np.zeros(shape[:2], dtype=bool)
    zone[margin : shape[0] - margin, margin : shape[1] - margin] = True
    return zone


# ────────────────────────────────────────────────
# Mask construction
# ────────────────────────────────────────────────
def threshold_mask(image: np.ndarray, threshold: float) -> np.ndarray:
    return np.asarray(image) > threshold


def cleanup_mask(mask: np.ndarray) -> np.ndarray:
    """Gaussian blur (σ=1), re-binarize at 0.5, then close with a 3×3 element."""
    blurred = ndimage.gaussian_filter(mask.astype(np.float32), sigma=1.0)
    binary = blurred > 0.5
    dilated = ndimage.binary_dilation(binary, structure=_STRUCT3, iterations=2)
    return ndimage.binary_erosion(dilated, structure=_STRUCT3, iterations=2)


def analyze_mask(image: np.ndarray, mask: np.ndarray, margin: int) -> Optional[dict]:
    """FG/BG split statistics over the border-free safe zone.

    Areas are fractions of the safe zone. Returns None when either side has
    fewer than 10 pixels.
    """
    inner = (slice(margin, image.shape[0] - margin), slice(margin, image.shape[1] - margin))
    img = np.asarray(image[inner], dtype=np.float64)
    m = mask[inner]
    fg = img[m]
    bg = img[~m]
    if fg.size < MIN_MASK_PIXELS or bg.size < MIN_MASK_PIXELS:
        return None
    total = float(img.size)
    bg_median = float(np.median(bg))
    return {
        "fg_area": fg.size / total,
        "bg_area": bg.size / total,
        "fg_median": float(np.median(fg)),
        "bg_median": bg_median,
        "bg_sigma": MAD_TO_SIGMA * float(np.median(np.abs(bg - bg_median))),
    }


def search_threshold(
    image: np.ndarray,
    g_median: float,
    g_sigma: float,
    margin: int,
    cfg: AnalysisConfig,
) -> Optional[MaskCandidate]:
    """Best-contrast mask over ``cfg.k_ladder``, relaxing area bounds if needed."""
    candidates = []
    for k in cfg.k_ladder:
        threshold = g_median + k * g_sigma
        mask = cleanup_mask(threshold_mask(image, threshold))
        stats = analyze_mask(image, mask, margin)
        if stats is None:
            logging.debug("Range mask k=%.1f: too few FG or BG pixels", k)
            continue
        candidates.append((k, threshold, mask, stats))

    def _best(bounds, min_bg):
        best: Optional[MaskCandidate] = None
        lo, hi = bounds
        for k, threshold, mask, s in candidates:
            if not lo <= s["fg_area"] <= hi:
                logging.debug(
                    "Range mask k=%.1f: FG area %.1f%% out of range", k, s["fg_area"] * 100
                )
                continue
            if s["bg_area"] < min_bg or s["bg_sigma"] < FLAT_SIGMA:
                continue
            score = (s["fg_median"] - s["bg_median"]) / s["bg_sigma"]
            logging.debug(
                "Range mask k=%.1f: T=%.6f FG area %.1f%% score %.2f",
                k,
                threshold,
                s["fg_area"] * 100,
                score,
            )
            if best is None or score > best.score:
                best = MaskCandidate(k=k, threshold=threshold, mask=mask, score=score, **s)
        return best

    best = _best(cfg.fg_area_bounds, cfg.min_bg_area)
    if best is None:
        logging.info("Range mask: no candidate with standard bounds, relaxing")
        best = _best(cfg.fg_area_bounds_relaxed, 0.0)
    return best


# ────────────────────────────────────────────────
# Tile selection
# ────────────────────────────────────────────────
def _tile_rect(j: int, i: int, tile: int) -> Rect:
    return Rect.from_xywh(i * tile, j * tile, tile, tile)


def _bg_tile(image: np.ndarray, bg_mask: np.ndarray, tile: int) -> Optional[Rect]:
    blocks, _, _ = tile_grid(image, tile)
    inside, _, _ = tile_grid(bg_mask, tile)
    ok = inside.all(axis=2)
    if not ok.any():
        return None
    med = np.median(blocks, axis=2, keepdims=True)
    sig = MAD_TO_SIGMA * np.median(np.abs(blocks - med), axis=2)
    sig = np.where(ok, sig, np.inf)
    j, i = np.unravel_index(int(np.argmin(sig)), sig.shape)
    return _tile_rect(j, i, tile)


def _fg_tile(
    image: np.ndarray,
    inner_mask: np.ndarray,
    full_mask: np.ndarray,
    tile: int,
    bg_median: float,
    bg_rect: Rect,
    min_sep: float,
) -> Optional[Rect]:
    blocks, ny, nx = tile_grid(image, tile)
    med = np.median(blocks, axis=2)
    far = np.array(
        [
            [_tile_rect(j, i, tile).distance_to(bg_rect) >= min_sep for i in range(nx)]
            for j in range(ny)
        ],
        dtype=bool,
    ).reshape(ny, nx)

    inner, _, _ = tile_grid(inner_mask, tile)
    ok = inner.all(axis=2) & far
    if ok.any():
        score = np.where(ok, med, -np.inf)
    else:
        logging.info("Range mask: no tile inside eroded FG, trying >80%% overlap")
        full, _, _ = tile_grid(full_mask, tile)
        ok = (full.mean(axis=2) >= FG_OVERLAP_FALLBACK) & far
        if not ok.any():
            return None
        score = np.where(ok, med - bg_median, -np.inf)
    j, i = np.unravel_index(int(np.argmax(score)), score.shape)
    return _tile_rect(j, i, tile)


# ────────────────────────────────────────────────
# Public API
# ────────────────────────────────────────────────
def detect_rangemask(
    image: np.ndarray, cfg: AnalysisConfig = AnalysisConfig()
) -> RoiPair | NeedsManualInput:
    """Detect BG/FG tiles from a robust-threshold foreground mask.

    The image should be the starless, linear full-depth reference. The
    foreground threshold is ``median + k * sigma`` for the ``k`` with the
    best contrast whose mask area passes the bounds in ``cfg``.
    """
    tile = int(cfg.tile_size)
    h, w = image.shape[:2]
    logging.info(
        "Range mask ROI: filter %s, tile %d px, image %dx%d", cfg.filter_name, tile, w, h
    )
    if w < tile * 3 or h < tile * 3:
        return NeedsManualInput(f"image too small for tile size {tile}", DETECTOR)

    data = np.asarray(image, dtype=np.float64)
    g_median = float(np.median(data))
    g_sigma = MAD_TO_SIGMA * float(np.median(np.abs(data - g_median)))
    logging.info("Range mask ROI: median %.6f, robust sigma %.6f", g_median, g_sigma)
    if g_sigma < FLAT_SIGMA:
        logging.warning("Range mask ROI: image has near-zero variation")
        return NeedsManualInput("image is flat (robust sigma ~ 0)", DETECTOR)

    margin = border_margin(data.shape)
    best = search_threshold(data, g_median, g_sigma, margin, cfg)
    if best is None:
        logging.warning("Range mask ROI: no valid threshold found")
        return NeedsManualInput("no valid foreground threshold", DETECTOR)
    logging.info(
        "Range mask ROI: k=%.1f T=%.6f FG area %.1f%% contrast %.2f sigma",
        best.k,
        best.threshold,
        best.fg_area * 100,
        best.score,
    )

    # BG candidates: safe zone minus the FG mask grown by the buffer
    buffer_px = max(32, int(round(min(h, w) * 0.02)))
    dist_to_fg = ndimage.distance_transform_edt(~best.mask)
    bg_mask = _safe_zone(data.shape, margin) & (dist_to_fg > buffer_px)
    bg_rect = _bg_tile(data, bg_mask, tile)
    if bg_rect is None:
        return NeedsManualInput("no tile fully inside background zone", DETECTOR)

    erode_px = max(2, int(round(tile * 0.05)))
    inner_mask = ndimage.distance_transform_edt(best.mask) > erode_px
    min_sep = float(np.hypot(w, h)) * MIN_SEPARATION_FRAC
    fg_rect = _fg_tile(data, inner_mask, best.mask, tile, best.bg_median, bg_rect, min_sep)
    if fg_rect is None:
        return NeedsManualInput("no foreground tile inside mask", DETECTOR)
    if fg_rect == bg_rect:
        return NeedsManualInput("BG and FG selected the same tile", DETECTOR)

    logging.info("Range mask ROI: BG %s, FG %s", bg_rect, fg_rect)
    return RoiPair(
        bg=bg_rect,
        fg=fg_rect,
        source=DETECTOR,
        meta={
            "k": best.k,
            "threshold": best.threshold,
            "fgArea": best.fg_area,
            "bgSigma": best.bg_sigma,
            "signalContrast": best.score,
            "tileSize": tile,
            "filterName": cfg.filter_name,
        },
        mask=best.mask,
    )
