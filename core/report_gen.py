# core/report_gen.py – CSV / JSON / text summary writers for depth results

from __future__ import annotations

import csv
import json
import math
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import tifffile

from core.insights import format_duration
from core.models import DepthJob, GroupResult
from utils.config import AnalysisConfig

__all__ = [
    "CSV_COLUMNS",
    "filter_suffix",
    "output_dirs",
    "job_row",
    "report_csv",
    "save_results_json",
    "save_summary_txt",
    "save_preview_tiff",
]

# (column, DepthJob attribute, decimals)
CSV_COLUMNS = (
    ("label", "label", None),
    ("nSubs", "depth", None),
    ("totalExposure_s", "total_exposure", 1),
    ("intTime_s", "integration_time", 2),
    ("starRemovalTime_s", "star_removal_time", 2),
    ("stretchTime_s", "stretch_time", 2),
    ("bgMean", "bg_mean", 8),
    ("bgMedian", "bg_median", 8),
    ("bgSigma", "bg_sigma", 8),
    ("fgMean", "fg_mean", 8),
    ("fgMedian", "fg_median", 8),
    ("signalMeasured", "signal", 8),
    ("signalRef", "signal_ref", 8),
    ("snrMeasured", "snr", 4),
    ("snrStop", "decision_snr", 4),
    ("deltaSNRpct", "delta_snr_pct", 3),
    ("deltaHours", "delta_hours", 4),
    ("gainPerHour", "gain_per_hour", 3),
    ("t10Hours", "t10_hours", 3),
    ("scaleFactor", "scale_factor", 6),
    ("bgMedianRaw", "bg_median_raw", 8),
    ("bgMedianScaled", "bg_median_scaled", 8),
    ("globalMedian", "global_median", 8),
    ("globalNoise", "global_noise", 8),
)

# ──────────────────────────────────────────────── helpers


def filter_suffix(filter_name: Optional[str]) -> str:
    """``"Ha"`` -> ``"_Ha"``; empty for the ungrouped ``"All"`` case."""
    if not filter_name or filter_name == "All":
        return ""
    return "_" + re.sub(r"[^A-Za-z0-9]", "_", filter_name)


def output_dirs(out_root: Path | str) -> Dict[str, Path]:
    base = Path(out_root) / "SNRAnalysis"
    dirs = {"root": base, "data": base / "data", "graphs": base / "graphs", "previews": base / "previews"}
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def _fmt(value: Any, decimals: Optional[int]) -> Any:
    if value is None:
        return ""
    if decimals is None:
        return value
    value = float(value)
    if math.isinf(value):
        return "inf"
    if math.isnan(value):
        return ""
    return f"{value:.{decimals}f}"


def _json_safe(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_json_safe(v) for v in obj]
    if isinstance(obj, (np.floating, float)):
        f = float(obj)
        return f if math.isfinite(f) else None
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, Path):
        return str(obj)
    return obj


# ──────────────────────────────────────────────── public api


def job_row(job: DepthJob) -> Dict[str, Any]:
    return {col: _fmt(getattr(job, attr), dec) for col, attr, dec in CSV_COLUMNS}


def report_csv(jobs: Sequence[DepthJob], path: Path) -> Path:
    path = Path(path)
    with path.open("w", newline="", encoding="utf-8") as fh:
        w = csv.DictWriter(fh, fieldnames=[c for c, _, _ in CSV_COLUMNS])
        w.writeheader()
        for job in jobs:
            w.writerow(job_row(job))
    return path


def save_results_json(result: GroupResult, cfg: AnalysisConfig, path: Path) -> Path:
    roi: Dict[str, Any] = {}
    if result.roi is not None:
        roi = {
            "source": result.roi.source,
            "bg": result.roi.bg.as_dict(),
            "fg": result.roi.fg.as_dict(),
            "meta": result.roi.meta,
            "bgRef": result.bg_ref,
        }
    payload = {
        "generated": datetime.now().isoformat(timespec="seconds"),
        "filter": result.filter_name,
        "settings": {
            "roiMode": cfg.roi_mode,
            "tileSize": cfg.tile_size,
            "depthStrategy": cfg.depth_strategy,
            "lockSignalScale": cfg.lock_signal_scale,
            "insightsMetric": cfg.insights_metric,
            "starRemoval": cfg.star_removal,
            "stretch": cfg.stretch,
            "rejection": cfg.rejection_algorithm,
        },
        "roi": roi,
        "cancelled": result.cancelled,
        "dropped": list(result.dropped),
        "results": [j.to_dict() for j in result.jobs],
        "insights": result.insights.to_dict() if result.insights else None,
    }
    path = Path(path)
    path.write_text(json.dumps(_json_safe(payload), indent=2), encoding="utf-8")
    return path


def save_summary_txt(result: GroupResult, path: Path) -> Path:
    lines: List[str] = [
        f"Filter: {result.filter_name}",
        f"Date: {datetime.now().strftime('%Y-%m-%d')}",
    ]
    if result.roi is not None:
        lines.append(f"ROI source: {result.roi.source}")
        lines.append(f"  BG: {result.roi.bg}")
        lines.append(f"  FG: {result.roi.fg}")
    if result.bg_ref is not None:
        lines.append(f"BG_ref: {result.bg_ref:.8f}")
    if result.cancelled:
        lines.append("Run was cancelled; results are partial.")
    if result.dropped:
        lines.append("Dropped depths: " + ", ".join(result.dropped))
    lines.append("")

    header = ["Depth", "Subs", "Exposure", "SNR", "SNR(stop)", "dSNR%", "Gain/hr"]
    rows = [
        [
            j.label,
            str(j.depth),
            format_duration(j.total_exposure),
            _fmt(j.snr, 2),
            _fmt(j.decision_snr, 2),
            _fmt(j.delta_snr_pct, 1),
            _fmt(j.gain_per_hour, 2),
        ]
        for j in result.jobs
    ]
    table = [header] + rows
    widths = [max(len(str(r[i])) for r in table) for i in range(len(header))]

    def fmt(row: List[str]) -> str:
        return "  ".join(str(text).ljust(widths[i]) for i, text in enumerate(row))

    lines.append(fmt(header))
    lines.extend(fmt(r) for r in rows)
    lines.append("")
    if result.insights is not None:
        lines.append(result.insights.summary)
    path = Path(path)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def save_preview_tiff(image: np.ndarray, path: Path) -> Path:
    """Write a [0, 1] float image as 16-bit TIFF."""
    data = np.clip(np.nan_to_num(np.asarray(image, dtype=np.float64)), 0.0, 1.0)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tifffile.imwrite(str(path), (data * 65535.0 + 0.5).astype(np.uint16))
    return path
