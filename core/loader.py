# core/loader.py – TIFF subframe discovery, metadata and frame loading

from __future__ import annotations

import json
import logging
import re
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import tifffile

from core.models import Subframe

__all__ = [
    "scan_subframes",
    "read_metadata",
    "load_frame",
    "to_mono",
    "to_float01",
]

_EXTS = {".tiff", ".tif"}
_OUTPUT_DIR = "SNRAnalysis"
_EXPOSURE_KEYS = ("exptime", "exposure", "exposure_s", "exposure_time")
_FILTER_KEYS = ("filter",)
_DATE_KEYS = ("date-obs", "date_obs", "dateobs", "timestamp")
_KV_RE = re.compile(r"^\s*([A-Za-z_][\w\-]*)\s*[=:]\s*'?([^']*?)'?\s*$")

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _collect_frames(folder: Path) -> List[Path]:
    """Return sorted list of TIFF files (.tif/.tiff) below *folder*.

    Anything inside a previous ``SNRAnalysis`` output tree is ignored.
    """
    return sorted(
        p
        for p in folder.rglob("*")
        if p.is_file() and p.suffix.lower() in _EXTS and _OUTPUT_DIR not in p.relative_to(folder).parts
    )


def _parse_description(text: str) -> Dict[str, str]:
    """ImageDescription as JSON object or ``KEY=value`` lines, keys lower-cased."""
    text = (text or "").strip()
    if not text:
        return {}
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return {str(k).lower(): str(v) for k, v in data.items()}
    out: Dict[str, str] = {}
    for line in re.split(r"[\r\n;]+", text):
        m = _KV_RE.match(line)
        if m:
            out[m.group(1).lower()] = m.group(2).strip()
    return out


def _first(meta: Dict[str, str], keys: Tuple[str, ...]) -> Optional[str]:
    for k in keys:
        if meta.get(k):
            return meta[k]
    return None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    value = value.strip().replace("Z", "")
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f", "%Y-%m-%dT%H:%M:%S", "%Y:%m:%d %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def read_metadata(path: Path | str) -> Dict[str, str]:
    """Return lower-cased metadata keys from the first page of a TIFF."""
    with tifffile.TiffFile(str(path)) as tif:
        page = tif.pages[0]
        meta = _parse_description(getattr(page, "description", "") or "")
        dt = page.tags.get("DateTime")
        if dt is not None and "date-obs" not in meta:
            meta["date-obs"] = str(dt.value)
    return meta


def scan_subframes(
    root: Path | str, default_exposure: float = 0.0
) -> "OrderedDict[str, List[Subframe]]":
    """Scan *root* for TIFF subframes and group them by filter.

    The filter is the ``FILTER`` metadata value, else the name of the
    sub-directory holding the file (``"All"`` for files directly in *root*).
    Exposure comes from metadata or ``default_exposure``; frames with
    exposure <= 0 are skipped. Each group is ordered by timestamp, falling
    back to file mtime.
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Subframe directory not found: {root}")
    files = _collect_frames(root)
    logging.info("Found %d TIFF files under %s", len(files), root)

    subs: List[Subframe] = []
    for f in files:
        try:
            meta = read_metadata(f)
        except (OSError, ValueError, tifffile.TiffFileError) as exc:
            logging.warning("Skipping %s (failed to read metadata: %s)", f.name, exc)
            continue
        try:
            exposure = float(_first(meta, _EXPOSURE_KEYS) or default_exposure)
        except ValueError:
            exposure = float(default_exposure)
        if exposure <= 0:
            logging.warning("Skipping %s (no positive exposure)", f.name)
            continue
        rel_parent = f.parent.relative_to(root)
        filt = _first(meta, _FILTER_KEYS) or (rel_parent.parts[0] if rel_parent.parts else "All")
        ts = _parse_time(_first(meta, _DATE_KEYS)) or datetime.fromtimestamp(f.stat().st_mtime)
        subs.append(Subframe(path=f, exposure=exposure, filter=filt, timestamp=ts))

    subs.sort(key=lambda s: (s.timestamp, str(s.path)))
    groups: "OrderedDict[str, List[Subframe]]" = OrderedDict()
    for s in subs:
        groups.setdefault(s.filter, []).append(s)
    for name, group in groups.items():
        logging.info("Filter %s: %d subframes", name, len(group))
    return groups


def to_float01(arr: np.ndarray) -> np.ndarray:
    """Integer data scaled by its dtype max; float data returned as float64."""
    arr = np.asarray(arr)
    if np.issubdtype(arr.dtype, np.integer):
        return arr.astype(np.float64) / float(np.iinfo(arr.dtype).max)
    return arr.astype(np.float64, copy=False)


def to_mono(arr: np.ndarray) -> np.ndarray:
    """2-D view of mono data; RGB(A) reduced to luminance."""
    if arr.ndim == 2:
        return arr
    if arr.ndim == 3 and arr.shape[-1] in (3, 4):
        return 0.2126 * arr[..., 0] + 0.7152 * arr[..., 1] + 0.0722 * arr[..., 2]
    if arr.ndim == 3 and arr.shape[0] in (3, 4):
        return 0.2126 * arr[0] + 0.7152 * arr[1] + 0.0722 * arr[2]
    raise ValueError(f"Unsupported frame shape {arr.shape}")


def load_frame(path: Path | str) -> np.ndarray:
    """Load one TIFF frame as a 2-D float64 array in [0, 1] units."""
    return to_mono(to_float01(tifffile.imread(str(path))))
