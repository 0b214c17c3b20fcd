# core/planner.py – Integration depth schedules

from __future__ import annotations

import logging
import math
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from core.models import DepthJob, PlanningError, Subframe

__all__ = [
    "PRESET_DEPTHS",
    "STRATEGIES",
    "plan_depths",
    "plan_jobs",
    "assign_exposures",
    "depth_label",
]

PRESET_DEPTHS = (12, 24, 48, 96, 192, 384, 720)
DOUBLING_BASE = 8
FIBONACCI_SEED = (8, 13)
LOG_MIN_DEPTH = 8
LOG_STEPS = 7


def depth_label(depth: int) -> str:
    return f"N{int(depth)}"


# ────────────────────────────────────────────────
# Strategies
# ────────────────────────────────────────────────
def _preset(n: int) -> List[int]:
    out = [d for d in PRESET_DEPTHS if d <= n]
    if not out and n >= 8:
        out.append(min(n, PRESET_DEPTHS[0]))
    return out


def _doubling(n: int) -> List[int]:
    out: List[int] = []
    depth = DOUBLING_BASE
    while depth <= n:
        out.append(depth)
        depth *= 2
    if not out and n >= 4:
        out.append(min(n, DOUBLING_BASE))
    return out


def _fibonacci(n: int) -> List[int]:
    a, b = FIBONACCI_SEED
    out: List[int] = [a] if n >= a else []
    while b <= n:
        out.append(b)
        a, b = b, a + b
    return out


def _logarithmic(n: int) -> List[int]:
    lo = min(LOG_MIN_DEPTH, n)
    step = (math.log(n) - math.log(lo)) / (LOG_STEPS - 1)
    out: List[int] = []
    for i in range(LOG_STEPS):
        depth = int(round(math.exp(math.log(lo) + i * step)))
        if depth <= n and (not out or depth > out[-1]):
            out.append(depth)
    return out


def _parse_custom(custom: Optional[str | Iterable], n: int) -> List[int]:
    if custom is None:
        raise PlanningError("Custom depth list is empty")
    if isinstance(custom, str):
        parts = custom.split(",")
    else:
        parts = [str(p) for p in custom]
    if not any(p.strip() for p in parts):
        raise PlanningError("Custom depth list is empty")

    out: List[int] = []
    for raw in parts:
        try:
            val = int(raw.strip())
        except ValueError:
            val = 0
        if val <= 0:
            logging.warning("Invalid custom depth value: %r", raw)
            continue
        if val > n:
            logging.warning(
                "Custom depth %d exceeds available subs (%d), clamping", val, n
            )
            val = n
        if val not in out:
            out.append(val)
    if not out:
        raise PlanningError("No valid custom depths found")
    return out


STRATEGIES: Dict[str, Callable[[int], List[int]]] = {
    "preset": _preset,
    "preset_osc": _preset,
    "doubling": _doubling,
    "fibonacci": _fibonacci,
    "logarithmic": _logarithmic,
}


# ────────────────────────────────────────────────
# Public API
# ────────────────────────────────────────────────
def plan_depths(
    strategy: str,
    n: int,
    custom: Optional[str | Iterable] = None,
    include_full_depth: bool = False,
) -> List[int]:
    """Return ascending, deduplicated depths ``<= n`` for ``strategy``.

    Raises :class:`PlanningError` for ``n == 0``, an unknown strategy, a bad
    custom list or an empty result.
    """
    n = int(n)
    if n <= 0:
        raise PlanningError("No subframes available for depth planning")

    if strategy == "custom":
        depths = _parse_custom(custom, n)
    else:
        try:
            fn = STRATEGIES[strategy]
        except KeyError:
            raise PlanningError(f"Unknown depth strategy: {strategy}") from None
        depths = fn(n)

    if include_full_depth and n not in depths:
        depths.append(n)

    depths = sorted(set(depths))
    if not depths:
        raise PlanningError(
            f"Depth strategy '{strategy}' produced no depths for {n} subframes"
        )
    logging.info("Depth plan (%s, N=%d): %s", strategy, n, depths)
    return depths


def plan_jobs(
    strategy: str,
    n: int,
    custom: Optional[str | Iterable] = None,
    include_full_depth: bool = False,
) -> List[DepthJob]:
    """Depth plan as fresh :class:`DepthJob` records labelled ``N<depth>``."""
    return [
        DepthJob(label=depth_label(d), depth=d)
        for d in plan_depths(strategy, n, custom, include_full_depth)
    ]


def assign_exposures(
    jobs: Sequence[DepthJob], subframes: Sequence[Subframe]
) -> List[DepthJob]:
    """Fill ``total_exposure`` with the summed exposure of the first ``depth`` subs."""
    exposures = [float(s.exposure) for s in subframes]
    cumulative = [0.0]
    for e in exposures:
        cumulative.append(cumulative[-1] + e)
    out: List[DepthJob] = []
    for job in jobs:
        if job.depth > len(exposures):
            raise PlanningError(
                f"{job.label} needs {job.depth} subframes, only {len(exposures)} available"
            )
        out.append(
            DepthJob(
                **{**job.to_dict(), "total_exposure": cumulative[job.depth]}
            )
        )
    return out
