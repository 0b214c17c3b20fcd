# core/transforms.py – Versioned star-removal / stretch adapters

from __future__ import annotations

import logging
from typing import Callable, Dict, FrozenSet, Optional, Tuple

import numpy as np
from scipy import ndimage

__all__ = [
    "TransformUnavailable",
    "TransformAdapter",
    "NoneAdapter",
    "MorphologicalStarRemoval",
    "AutoStfStretch",
    "UnavailableAdapter",
    "mtf",
    "auto_stf_params",
    "negotiate_adapter",
    "register_adapter",
    "STAR_REMOVAL",
    "STRETCH",
]

STAR_REMOVAL = "star_removal"
STRETCH = "stretch"


class TransformUnavailable(RuntimeError):
    """Adapter cannot run; callers continue with the untransformed image."""


class TransformAdapter:
    """Base class for an image transform negotiated once per run.

    Subclasses set ``name``, ``version`` and ``capabilities`` and implement
    :meth:`apply`. Adapters must not modify their input array.
    """

    name = "base"
    version = "0"
    capabilities: FrozenSet[str] = frozenset()

    def available(self) -> bool:
        return True

    def apply(self, image: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def describe(self) -> str:
        caps = ",".join(sorted(self.capabilities)) or "-"
        return f"{self.name} v{self.version} [{caps}]"


class NoneAdapter(TransformAdapter):
    name = "none"
    version = "1"
    capabilities = frozenset({STAR_REMOVAL, STRETCH, "identity"})

    def apply(self, image: np.ndarray) -> np.ndarray:
        return image


class MorphologicalStarRemoval(TransformAdapter):
    """Suppress point sources with a grey opening (erosion then dilation)."""

    name = "morphological"
    version = "1"
    capabilities = frozenset({STAR_REMOVAL, "linear"})

    def __init__(self, size: int = 7) -> None:
        self.size = int(size)

    def apply(self, image: np.ndarray) -> np.ndarray:
        return ndimage.grey_opening(np.asarray(image), size=(self.size, self.size))


def mtf(m: float, x):
    """Midtones transfer function; ``mtf(m, m) == 0.5``."""
    x = np.asarray(x, dtype=np.float64)
    out = ((m - 1.0) * x) / ((2.0 * m - 1.0) * x - m)
    out = np.where(x <= 0.0, 0.0, np.where(x >= 1.0, 1.0, out))
    return out if out.ndim else float(out)


def auto_stf_params(image: np.ndarray, target: float = 0.25, clip: float = 2.8) -> Tuple[float, float]:
    """Return ``(c0, m)``: shadow clip and midtones balance for an auto stretch."""
    data = np.asarray(image, dtype=np.float64)
    med = float(np.median(data))
    mad = float(np.median(np.abs(data - med)))
    c0 = min(max(med - clip * mad, 0.0), 1.0)
    m = float(mtf(target, med - c0))
    return c0, m


class AutoStfStretch(TransformAdapter):
    name = "auto_stf"
    version = "1"
    capabilities = frozenset({STRETCH, "nonlinear"})

    def apply(self, image: np.ndarray) -> np.ndarray:
        c0, m = auto_stf_params(image)
        if c0 >= 1.0:
            raise TransformUnavailable("auto_stf: shadow clip at 1.0, image saturated")
        x = np.clip((np.asarray(image, dtype=np.float64) - c0) / (1.0 - c0), 0.0, 1.0)
        return mtf(m, x)


class UnavailableAdapter(TransformAdapter):
    """Stands in for a requested adapter that could not be negotiated."""

    version = "0"

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason

    def available(self) -> bool:
        return False

    def apply(self, image: np.ndarray) -> np.ndarray:
        raise TransformUnavailable(f"{self.name}: {self.reason}")


_REGISTRY: Dict[str, Dict[str, Callable[[], TransformAdapter]]] = {
    STAR_REMOVAL: {"none": NoneAdapter, "morphological": MorphologicalStarRemoval},
    STRETCH: {"none": NoneAdapter, "auto_stf": AutoStfStretch},
}


def register_adapter(kind: str, name: str, factory: Callable[[], TransformAdapter]) -> None:
    _REGISTRY.setdefault(kind, {})[name] = factory


def negotiate_adapter(kind: str, name: Optional[str]) -> TransformAdapter:
    """Resolve ``name`` for ``kind`` once, before any depth is processed.

    Unknown or unavailable adapters resolve to :class:`UnavailableAdapter`,
    whose :meth:`apply` raises :class:`TransformUnavailable`.
    """
    name = name or "none"
    factory = _REGISTRY.get(kind, {}).get(name)
    if factory is None:
        logging.warning("No %s adapter named '%s'; images stay untransformed", kind, name)
        return UnavailableAdapter(name, "not installed")
    adapter = factory()
    if kind not in adapter.capabilities:
        logging.warning("Adapter %s does not provide %s", adapter.describe(), kind)
        return UnavailableAdapter(name, f"lacks capability {kind}")
    if not adapter.available():
        logging.warning("Adapter %s reports unavailable", adapter.describe())
        return UnavailableAdapter(name, "unavailable")
    logging.info("Using %s adapter %s", kind, adapter.describe())
    return adapter
