# utils/config.py – YAML config loading and the resolved AnalysisConfig

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

__all__ = [
    "load_config",
    "resolve_config",
    "AnalysisConfig",
    "DEFAULT_TILE_FG_LADDER",
    "DEFAULT_K_LADDER",
    "ROI_MODES",
]

# ────────────────────────────────────────────────
# Relaxation ladders
# ────────────────────────────────────────────────
# (min signal above background in sigma, max tile sigma multiplier)
DEFAULT_TILE_FG_LADDER: Tuple[Tuple[float, float], ...] = (
    (2.5, 4.0),
    (2.0, 5.0),
    (1.5, 6.0),
    (1.0, 8.0),
)
DEFAULT_K_LADDER: Tuple[float, ...] = (2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5.0, 6.0)

ROI_MODES = ("rangeMask", "auto", "manual")

# ────────────────────────────────────────────────
# Load & merge config
# ────────────────────────────────────────────────
_DEFAULT_CFG_PATH = Path(__file__).parent.parent / "config" / "default_config.yaml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise RuntimeError(f"Failed to parse YAML config: {path}\n{exc}") from exc


def _merge_dict(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge (src overwrites dst)."""
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            dst[k] = _merge_dict(dst[k], v)
        else:
            dst[k] = v
    return dst


def load_config(project_cfg_path: Path | str | None = None) -> Dict[str, Any]:
    """Return merged config dict (default <- project).

    ``project_cfg_path`` may be a YAML file or a directory holding
    ``config.yaml``. A missing project file leaves the defaults untouched.
    """
    cfg = _read_yaml(_DEFAULT_CFG_PATH)
    if project_cfg_path is None:
        return cfg
    project_yaml = Path(project_cfg_path)
    if project_yaml.is_dir():
        project_yaml = project_yaml / "config.yaml"
    if project_yaml.exists():
        cfg = _merge_dict(cfg, _read_yaml(project_yaml))
    cfg.setdefault("_paths", {})["config_file"] = str(project_yaml)
    return cfg


# ────────────────────────────────────────────────
# Resolved, immutable configuration
# ────────────────────────────────────────────────
@dataclass(frozen=True)
class AnalysisConfig:
    """Settings threaded through every analysis call.

    Built once from the YAML dict by :func:`resolve_config`; use
    :meth:`with_overrides` to derive a modified copy.
    """

    roi_mode: str = "rangeMask"
    tile_size: int = 96
    roi_file: Optional[str] = None
    depth_strategy: str = "preset"
    custom_depths: str = ""
    include_full_depth: bool = True
    lock_signal_scale: bool = True
    insights_metric: str = "decision"
    filter_name: str = "All"

    # tile detector
    tile_fg_ladder: Tuple[Tuple[float, float], ...] = DEFAULT_TILE_FG_LADDER
    tile_bg_sigma_mult: float = 2.5
    tile_bg_max: float = 0.5
    tile_fg_saturation: float = 0.98
    tile_fg_bright_max: float = 0.7

    # range-mask detector
    k_ladder: Tuple[float, ...] = DEFAULT_K_LADDER
    fg_area_bounds: Tuple[float, float] = (0.01, 0.40)
    fg_area_bounds_relaxed: Tuple[float, float] = (0.005, 0.60)
    min_bg_area: float = 0.10

    # SNR measurement
    scale_clamp: Tuple[float, float] = (0.25, 4.0)
    drift_warn_pct: float = 1.0
    noise_sample_fraction: float = 0.01

    # integration / collaborators
    rejection_algorithm: str = "Auto"
    percentile_low: float = 0.27
    percentile_high: float = 0.13
    sigma_low: float = 4.0
    sigma_high: float = 3.0
    star_removal: str = "none"
    stretch: str = "none"
    default_exposure_s: float = 0.0

    # execution
    depth_workers: int = 1
    group_workers: int = 1

    output: Mapping[str, Any] = field(default_factory=dict)

    def with_overrides(self, **changes: Any) -> "AnalysisConfig":
        return replace(self, **changes)


def _pairs(value: Any, default: Tuple[Tuple[float, float], ...]):
    if not value:
        return default
    return tuple((float(a), float(b)) for a, b in value)


def _floats(value: Any, default: Tuple[float, ...]) -> Tuple[float, ...]:
    if not value:
        return default
    return tuple(float(v) for v in value)


def _bounds(value: Any, default: Tuple[float, float]) -> Tuple[float, float]:
    if not value:
        return default
    lo, hi = value
    return (float(lo), float(hi))


def resolve_config(cfg: Mapping[str, Any]) -> AnalysisConfig:
    """Turn the nested YAML dict into an :class:`AnalysisConfig`."""
    roi = cfg.get("roi", {}) or {}
    depth = cfg.get("depth", {}) or {}
    meas = cfg.get("measurement", {}) or {}
    integ = cfg.get("integration", {}) or {}
    proc = cfg.get("processing", {}) or {}
    out = dict(cfg.get("output", {}) or {})

    roi_mode = str(roi.get("mode", "rangeMask"))
    if roi_mode not in ROI_MODES:
        raise ValueError(f"Unknown ROI mode: {roi_mode}")
    tile_size = int(roi.get("tile_size", 96))
    if tile_size <= 0:
        raise ValueError("roi.tile_size must be positive")

    custom = depth.get("custom", "")
    if isinstance(custom, (list, tuple)):
        custom = ",".join(str(v) for v in custom)

    return AnalysisConfig(
        roi_mode=roi_mode,
        tile_size=tile_size,
        roi_file=roi.get("roi_file"),
        depth_strategy=str(depth.get("strategy", "preset")),
        custom_depths=str(custom or ""),
        include_full_depth=bool(depth.get("include_full_depth", True)),
        lock_signal_scale=bool(meas.get("lock_signal_scale", True)),
        insights_metric=str(meas.get("insights_metric", "decision")),
        tile_fg_ladder=_pairs(roi.get("tile_fg_ladder"), DEFAULT_TILE_FG_LADDER),
        tile_bg_sigma_mult=float(roi.get("tile_bg_sigma_mult", 2.5)),
        tile_bg_max=float(roi.get("tile_bg_max", 0.5)),
        tile_fg_saturation=float(roi.get("tile_fg_saturation", 0.98)),
        tile_fg_bright_max=float(roi.get("tile_fg_bright_max", 0.7)),
        k_ladder=_floats(roi.get("k_ladder"), DEFAULT_K_LADDER),
        fg_area_bounds=_bounds(roi.get("fg_area_bounds"), (0.01, 0.40)),
        fg_area_bounds_relaxed=_bounds(
            roi.get("fg_area_bounds_relaxed"), (0.005, 0.60)
        ),
        min_bg_area=float(roi.get("min_bg_area", 0.10)),
        scale_clamp=_bounds(meas.get("scale_clamp"), (0.25, 4.0)),
        drift_warn_pct=float(meas.get("drift_warn_pct", 1.0)),
        noise_sample_fraction=float(meas.get("noise_sample_fraction", 0.01)),
        rejection_algorithm=str(integ.get("rejection", "Auto")),
        percentile_low=float(integ.get("percentile_low", 0.27)),
        percentile_high=float(integ.get("percentile_high", 0.13)),
        sigma_low=float(integ.get("sigma_low", 4.0)),
        sigma_high=float(integ.get("sigma_high", 3.0)),
        star_removal=str(integ.get("star_removal", "none")),
        stretch=str(integ.get("stretch", "none")),
        default_exposure_s=float(meas.get("default_exposure_s", 0.0)),
        depth_workers=max(1, int(proc.get("depth_workers", 1))),
        group_workers=max(1, int(proc.get("group_workers", 1))),
        output=out,
    )
