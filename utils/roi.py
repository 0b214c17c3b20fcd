# utils/roi.py – Rect type and ImageJ ROI loader for manual BG/FG regions

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, NamedTuple, Tuple

import numpy as np
import roifile  # type: ignore

__all__ = ["Rect", "validate_rect", "load_rois", "load_named_rois"]


class Rect(NamedTuple):
    """Pixel rectangle, half-open: columns ``x0..x1-1``, rows ``y0..y1-1``."""

    x0: int
    y0: int
    x1: int
    y1: int

    @classmethod
    def from_xywh(cls, x: int, y: int, w: int, h: int) -> "Rect":
        return cls(int(x), int(y), int(x) + int(w), int(y) + int(h))

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.x0 + self.x1) / 2.0, (self.y0 + self.y1) / 2.0)

    @property
    def slices(self) -> Tuple[slice, slice]:
        """``(rows, cols)`` slices for indexing a ``(H, W)`` array."""
        return slice(self.y0, self.y1), slice(self.x0, self.x1)

    def crop(self, image: np.ndarray) -> np.ndarray:
        rows, cols = self.slices
        return image[rows, cols]

    def distance_to(self, other: "Rect") -> float:
        """Center-to-center distance in pixels."""
        (cx, cy), (ox, oy) = self.center, other.center
        return float(np.hypot(cx - ox, cy - oy))

    def as_dict(self) -> Dict[str, int]:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}

    def __str__(self) -> str:
        return (
            f"({self.x0},{self.y0}) - ({self.x1},{self.y1}) "
            f"[{self.width}x{self.height}]"
        )


def validate_rect(rect: Rect, shape: Tuple[int, ...]) -> Rect:
    """Return ``rect`` if non-empty and fully inside an image of ``shape``."""
    height, width = int(shape[0]), int(shape[1])
    if rect.x1 <= rect.x0 or rect.y1 <= rect.y0:
        raise ValueError(f"Empty rectangle: {rect}")
    if rect.x0 < 0 or rect.y0 < 0 or rect.x1 > width or rect.y1 > height:
        raise ValueError(f"Rectangle {rect} outside image {width}x{height}")
    return rect


def _read(path: Path) -> List:
    if not path.exists():
        raise FileNotFoundError(f"ROI file not found: {path}")
    rz = roifile.roiread(str(path))
    if not isinstance(rz, list):
        rz = [rz]
    return rz


def _to_rect(r) -> Rect:
    l, t = int(r.left), int(r.top)
    width = getattr(r, "width", None)
    if width is None:
        width = getattr(r, "right", 0) - getattr(r, "left", 0)
    height = getattr(r, "height", None)
    if height is None:
        height = getattr(r, "bottom", 0) - getattr(r, "top", 0)
    return Rect.from_xywh(l, t, int(width), int(height))


def load_rois(zip_path: Path | str) -> List[Rect]:
    """ImageJ ROI zip (or .roi) → [Rect, ...]"""
    path = Path(zip_path)
    rects = [_to_rect(r) for r in _read(path)]
    if not rects:
        raise ValueError(f"Invalid ROI file: {path}")
    return rects


def load_named_rois(zip_path: Path | str) -> Dict[str, Rect]:
    """Return ``{"BG": Rect, "FG": Rect}`` from ROIs named BG and FG.

    Names are matched case-insensitively. When the file holds exactly two
    unnamed ROIs they are taken as BG then FG.
    """
    path = Path(zip_path)
    rois = _read(path)
    named: Dict[str, Rect] = {}
    for r in rois:
        name = str(getattr(r, "name", "") or "").strip().upper()
        if name in ("BG", "FG"):
            named[name] = _to_rect(r)
    if len(named) < 2 and len(rois) == 2:
        named = {"BG": _to_rect(rois[0]), "FG": _to_rect(rois[1])}
    if set(named) != {"BG", "FG"}:
        raise ValueError(f"ROI file must define BG and FG regions: {path}")
    return named
