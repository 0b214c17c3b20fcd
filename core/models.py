# core/models.py – Immutable records passed between analysis stages

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from utils.roi import Rect

__all__ = [
    "PlanningError",
    "IntegrationError",
    "MeasurementError",
    "Subframe",
    "DepthJob",
    "DepthJobBuilder",
    "TileStats",
    "MaskCandidate",
    "RoiPair",
    "NeedsManualInput",
    "Projection",
    "RecommendedRange",
    "InsightsReport",
    "GroupResult",
]


# ────────────────────────────────────────────────
# Errors
# ────────────────────────────────────────────────
class PlanningError(ValueError):
    """Depth schedule cannot be built; raised before any integration."""


class IntegrationError(RuntimeError):
    """Combining subframes into a stack failed."""


class MeasurementError(RuntimeError):
    """SNR cannot be measured on a stack (e.g. zero background noise)."""


# ────────────────────────────────────────────────
# Inputs
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class Subframe:
    path: Path
    exposure: float
    filter: str
    timestamp: datetime
    is_valid: bool = True


# ────────────────────────────────────────────────
# Depth jobs
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class DepthJob:
    """One integration depth and everything measured for it.

    Created by the planner with only ``label``/``depth`` filled in and
    extended stage by stage via :class:`DepthJobBuilder` or
    :func:`dataclasses.replace`.
    """

    label: str
    depth: int
    total_exposure: float = 0.0

    integration_time: float = 0.0
    star_removal_time: float = 0.0
    stretch_time: float = 0.0

    bg_mean: Optional[float] = None
    bg_median: Optional[float] = None
    bg_sigma: Optional[float] = None
    bg_sigma_mad: Optional[float] = None
    fg_mean: Optional[float] = None
    fg_median: Optional[float] = None
    fg_sigma: Optional[float] = None
    fg_sigma_mad: Optional[float] = None
    signal: Optional[float] = None
    snr: Optional[float] = None
    snr_fg: Optional[float] = None

    scale_factor: float = 1.0
    bg_median_raw: Optional[float] = None
    bg_median_scaled: Optional[float] = None

    global_median: Optional[float] = None
    global_noise: Optional[float] = None
    global_noise_samples: int = 0

    signal_ref: Optional[float] = None
    decision_snr: Optional[float] = None

    delta_snr_pct: Optional[float] = None
    delta_hours: Optional[float] = None
    gain_per_hour: Optional[float] = None
    t10_hours: Optional[float] = None

    @property
    def total_hours(self) -> float:
        return self.total_exposure / 3600.0

    @property
    def measured(self) -> bool:
        return self.snr is not None

    def metric_snr(self, metric: str = "decision") -> Optional[float]:
        """Decision SNR when requested and present, else measured SNR."""
        if metric == "decision" and self.decision_snr is not None:
            return self.decision_snr
        return self.snr

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DepthJobBuilder:
    """Accumulates stage outputs for one depth, then freezes a new DepthJob."""

    _FIELDS = None

    def __init__(self, job: DepthJob) -> None:
        self._base = job
        self._changes: Dict[str, Any] = {}

    @classmethod
    def _names(cls) -> set:
        if cls._FIELDS is None:
            cls._FIELDS = {f.name for f in fields(DepthJob)}
        return cls._FIELDS

    def set(self, **changes: Any) -> "DepthJobBuilder":
        unknown = set(changes) - self._names()
        if unknown:
            raise AttributeError(f"DepthJob has no field(s): {sorted(unknown)}")
        self._changes.update(changes)
        return self

    def build(self) -> DepthJob:
        return replace(self._base, **self._changes)


# ────────────────────────────────────────────────
# ROI detection
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class TileStats:
    rect: Rect
    median: float
    sigma: float
    max: float


@dataclass(frozen=True)
class MaskCandidate:
    k: float
    threshold: float
    mask: np.ndarray = field(repr=False, compare=False)
    fg_area: float
    bg_area: float
    fg_median: float
    bg_median: float
    bg_sigma: float
    score: float


@dataclass(frozen=True)
class RoiPair:
    bg: Rect
    fg: Rect
    source: str
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)
    mask: Optional[np.ndarray] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class NeedsManualInput:
    """Returned by a detector that cannot confirm a BG/FG pair."""

    reason: str
    detector: str = ""

    def __str__(self) -> str:
        return f"{self.detector or 'roi'}: {self.reason}"


# ────────────────────────────────────────────────
# Insights
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class Projection:
    label: str
    depth: int
    snr: float
    gain_pct: float
    total_time_s: float
    additional_time_s: float
    additional_subs: int


@dataclass(frozen=True)
class RecommendedRange:
    min_label: str
    min_depth: int
    min_exposure: float
    max_label: str
    max_depth: int
    max_exposure: float


@dataclass(frozen=True)
class InsightsReport:
    metric: str = "decision"
    insufficient_data: bool = False
    improvements: Tuple[Dict[str, Any], ...] = ()
    diminishing_returns_10pct: Optional[str] = None
    diminishing_returns_5pct: Optional[str] = None
    scaling_exponent: Optional[float] = None
    exponent_assessment: str = ""
    exponent_note: str = ""
    outlook: str = ""
    projected_gains: Tuple[Projection, ...] = ()
    recommended_range: Optional[RecommendedRange] = None
    gain_per_hour_stop: Optional[str] = None
    anomalies: Tuple[str, ...] = ()
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        exp = out.get("scaling_exponent")
        if exp is not None and not math.isfinite(exp):
            out["scaling_exponent"] = None
        return out


# ────────────────────────────────────────────────
# Pipeline output
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class GroupResult:
    filter_name: str
    jobs: Tuple[DepthJob, ...] = ()
    roi: Optional[RoiPair] = None
    needs_manual: Optional[NeedsManualInput] = None
    insights: Optional[InsightsReport] = None
    bg_ref: Optional[float] = None
    cancelled: bool = False
    dropped: Tuple[str, ...] = ()
    outputs: Dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def labels(self) -> List[str]:
        return [j.label for j in self.jobs]
