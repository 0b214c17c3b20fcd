# core/roi_tiles.py – Tile-statistics BG/FG detector

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from core.models import NeedsManualInput, RoiPair, TileStats
from utils.config import AnalysisConfig
from utils.robust_stats import rank_percentile
from utils.roi import Rect

__all__ = ["tile_grid", "measure_tiles", "detect_tiles", "MIN_TILES"]

DETECTOR = "tiles"
MIN_TILES = 10
EXCLUDE_TOP_Q = 0.98
BG_ESTIMATE_Q = 0.25
BRIGHT_PENALTY = 0.8


# ────────────────────────────────────────────────
# Tiling
# ────────────────────────────────────────────────
def tile_grid(image: np.ndarray, tile: int) -> Tuple[np.ndarray, int, int]:
    """Split the top-left ``ny*tile x nx*tile`` region into tiles.

    Returns ``(blocks, ny, nx)`` with ``blocks`` shaped ``(ny, nx, tile*tile)``
    in raster order. Partial tiles at the right/bottom edges are dropped.
    """
    h, w = image.shape[:2]
    ny, nx = h // tile, w // tile
    region = np.asarray(image[: ny * tile, : nx * tile], dtype=np.float64)
    blocks = (
        region.reshape(ny, tile, nx, tile).transpose(0, 2, 1, 3).reshape(ny, nx, -1)
    )
    return blocks, ny, nx


def measure_tiles(image: np.ndarray, tile: int) -> List[TileStats]:
    """Median, std and max for every full tile, raster order."""
    blocks, ny, nx = tile_grid(image, tile)
    med = np.median(blocks, axis=2)
    sig = np.std(blocks, axis=2)
    mx = np.max(blocks, axis=2)
    out: List[TileStats] = []
    for j in range(ny):
        for i in range(nx):
            out.append(
                TileStats(
                    rect=Rect.from_xywh(i * tile, j * tile, tile, tile),
                    median=float(med[j, i]),
                    sigma=float(sig[j, i]),
                    max=float(mx[j, i]),
                )
            )
    return out


# ────────────────────────────────────────────────
# Selection
# ────────────────────────────────────────────────
def _pick_bg(
    tiles: List[TileStats], bg_est: float, noise: float, cfg: AnalysisConfig
) -> Optional[TileStats]:
    candidates = [
        t
        for t in tiles
        if t.sigma <= noise * cfg.tile_bg_sigma_mult and t.max <= cfg.tile_bg_max
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda t: abs(t.median - bg_est))


def _fg_candidates(
    tiles: List[TileStats],
    bg_est: float,
    noise: float,
    exclude_above: float,
    cfg: AnalysisConfig,
) -> Tuple[List[Tuple[float, TileStats]], Optional[Tuple[float, float]]]:
    scale = noise or 1e-6
    for min_sigma, max_sigma in cfg.tile_fg_ladder:
        threshold = bg_est + min_sigma * noise
        scored: List[Tuple[float, TileStats]] = []
        for t in tiles:
            if t.median < threshold or t.median > exclude_above:
                continue
            if t.max > cfg.tile_fg_saturation:
                continue
            if t.sigma > noise * max_sigma:
                continue
            score = (t.median - bg_est) / scale
            if t.max > cfg.tile_fg_bright_max:
                score *= BRIGHT_PENALTY
            scored.append((score, t))
        if scored:
            # stable sort keeps raster order among equal scores
            scored.sort(key=lambda st: st[0], reverse=True)
            return scored, (min_sigma, max_sigma)
    return [], None


def detect_tiles(
    image: np.ndarray, cfg: AnalysisConfig = AnalysisConfig()
) -> RoiPair | NeedsManualInput:
    """Pick a quiet background tile and a faint-signal foreground tile.

    The background estimate is the 25th rank-percentile of tile medians and
    the noise estimate the median tile sigma. Foreground criteria are relaxed
    step by step along ``cfg.tile_fg_ladder`` until a candidate qualifies.
    """
    tile = int(cfg.tile_size)
    h, w = image.shape[:2]
    if w < tile * 3 or h < tile * 3:
        logging.warning("Tile ROI: image %dx%d too small for tile size %d", w, h, tile)
        return NeedsManualInput(f"image too small for tile size {tile}", DETECTOR)

    tiles = measure_tiles(image, tile)
    logging.info("Tile ROI: analyzed %d tiles of %d px", len(tiles), tile)
    if len(tiles) < MIN_TILES:
        return NeedsManualInput(
            f"too few tiles ({len(tiles)}), need at least {MIN_TILES}", DETECTOR
        )

    medians = [t.median for t in tiles]
    bg_est = rank_percentile(medians, BG_ESTIMATE_Q)
    noise = rank_percentile([t.sigma for t in tiles], 0.5)
    exclude_above = rank_percentile(medians, EXCLUDE_TOP_Q)
    logging.debug("Tile ROI: bg estimate %.6f, noise %.6f", bg_est, noise)
    if noise <= 0:
        logging.warning("Tile ROI: tiles have no measurable noise")
        return NeedsManualInput("image is flat (tile sigma 0)", DETECTOR)

    bg = _pick_bg(tiles, bg_est, noise, cfg)
    if bg is None:
        logging.warning("Tile ROI: no suitable background tile")
        return NeedsManualInput("no suitable background tile", DETECTOR)

    fg_list, step = _fg_candidates(tiles, bg_est, noise, exclude_above, cfg)
    if not fg_list:
        logging.warning(
            "Tile ROI: no foreground tile even with relaxed criteria "
            "(bg %.6f, noise %.6f)",
            bg_est,
            noise,
        )
        return NeedsManualInput("no suitable foreground tile", DETECTOR)

    score, fg = fg_list[0]
    if fg.rect == bg.rect:
        if len(fg_list) < 2:
            return NeedsManualInput("BG and FG selected the same tile", DETECTOR)
        logging.warning("Tile ROI: BG and FG coincide, using next FG candidate")
        score, fg = fg_list[1]

    logging.info("Tile ROI: BG %s median %.6f", bg.rect, bg.median)
    logging.info(
        "Tile ROI: FG %s median %.6f (%.2f sigma above background)",
        fg.rect,
        fg.median,
        (fg.median - bg_est) / (noise or 1e-6),
    )
    return RoiPair(
        bg=bg.rect,
        fg=fg.rect,
        source=DETECTOR,
        meta={
            "bgEstimate": bg_est,
            "noiseEstimate": noise,
            "fgScore": score,
            "ladderStep": list(step) if step else None,
            "tileSize": tile,
            "filterName": cfg.filter_name,
        },
    )
