# core/insights.py – Diminishing-returns analysis over measured depths

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.models import DepthJob, InsightsReport, Projection, RecommendedRange
from core.snr import annotate_gains

__all__ = [
    "compute_insights",
    "scaling_exponent",
    "assess_exponent",
    "gain_per_hour_stop",
    "format_duration",
    "GAIN_STOP_THRESHOLD",
    "GAIN_STOP_CONFIRM",
]

GAIN_STOP_THRESHOLD = 2.0  # % SNR per hour
GAIN_STOP_CONFIRM = 2  # consecutive steps below threshold
IDEAL_EXPONENT = (0.45, 0.55)
ANOMALY_DROP_PCT = -1.0


def format_duration(seconds: float) -> str:
    """``3725 -> '1h 02m'``, ``95 -> '1m 35s'``."""
    if seconds is None or not math.isfinite(seconds):
        return "n/a"
    total = int(round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m {secs:02d}s"


# ────────────────────────────────────────────────
# Building blocks
# ────────────────────────────────────────────────
def scaling_exponent(depths: Sequence[float], snrs: Sequence[float]) -> Optional[float]:
    """OLS slope of ``ln(snr)`` on ``ln(depth)``; None with < 3 positive points."""
    pts = [(d, s) for d, s in zip(depths, snrs) if d and d > 0 and s is not None and s > 0]
    if len(pts) < 3:
        return None
    x = np.log([p[0] for p in pts])
    y = np.log([p[1] for p in pts])
    n = float(len(pts))
    denom = n * np.sum(x * x) - np.sum(x) ** 2
    if denom == 0:
        return None
    slope = (n * np.sum(x * y) - np.sum(x) * np.sum(y)) / denom
    return float(slope) if np.isfinite(slope) else None


def assess_exponent(exp: Optional[float]) -> Tuple[str, str]:
    if exp is None:
        return "", ""
    lo, hi = IDEAL_EXPONENT
    if lo <= exp <= hi:
        return "ideal", "close to ideal sqrt(N) behavior"
    if exp < lo:
        return (
            "systematic_losses",
            "slower than sqrt(N); check background ROI, gradients or correlated noise",
        )
    return "anomalous", "faster than sqrt(N); unusual, verify ROI and calibration"


def gain_per_hour_stop(
    jobs: Sequence[DepthJob],
    threshold: float = GAIN_STOP_THRESHOLD,
    confirm: int = GAIN_STOP_CONFIRM,
) -> Optional[str]:
    """Label before gain/hr first stays below ``threshold`` for ``confirm`` steps.

    Falls back to the deepest label when the threshold is never crossed.
    """
    if len(jobs) < 2:
        return None
    below = 0
    for i in range(1, len(jobs)):
        gain = jobs[i].gain_per_hour
        if gain is None:
            continue
        if gain < threshold:
            below += 1
            if below >= confirm:
                return jobs[max(0, i - confirm)].label
        else:
            below = 0
    return jobs[-1].label


def _projections(last: DepthJob, snr: float, exp: float) -> Tuple[Projection, ...]:
    total = last.total_exposure
    per_sub = total / last.depth if last.depth else 0.0
    out = []
    for ratio in (2, 3):
        snr_x = snr * ratio**exp
        extra = total * (ratio - 1)
        out.append(
            Projection(
                label=f"{ratio}x",
                depth=last.depth * ratio,
                snr=snr_x,
                gain_pct=(snr_x - snr) / snr * 100.0,
                total_time_s=total * ratio,
                additional_time_s=extra,
                additional_subs=int(math.ceil(extra / per_sub)) if per_sub > 0 else 0,
            )
        )
    return tuple(out)


def _recommended_range(jobs: Sequence[DepthJob], snrs: Sequence[float]) -> Optional[RecommendedRange]:
    max_snr = max(snrs)
    if max_snr <= 0:
        return None
    j90 = next((j for j, s in zip(jobs, snrs) if s >= 0.90 * max_snr), None)
    j95 = next((j for j, s in zip(jobs, snrs) if s >= 0.95 * max_snr), None)
    if j90 is None or j95 is None:
        return None
    return RecommendedRange(
        min_label=j90.label,
        min_depth=j90.depth,
        min_exposure=j90.total_exposure,
        max_label=j95.label,
        max_depth=j95.depth,
        max_exposure=j95.total_exposure,
    )


# ────────────────────────────────────────────────
# Summary text
# ────────────────────────────────────────────────
def _summary(jobs: Sequence[DepthJob], rep: Dict, metric: str) -> str:
    lines: List[str] = ["SNR ANALYSIS INSIGHTS", "=====================", ""]
    lines.append(f"SNR metric: {metric}")
    exp = rep["scaling_exponent"]
    if exp is not None:
        lines.append(f"Scaling exponent: {exp:.2f} ({rep['exponent_note']})")
    lines.append("")

    last = jobs[-1]
    gain = last.gain_per_hour or 0.0
    lines.append("Last step efficiency:")
    lines.append(
        f"  +{(last.delta_snr_pct or 0.0):.1f}% over {(last.delta_hours or 0.0):.1f}h = {gain:.1f}%/hr"
    )
    t10 = last.t10_hours
    if t10 is not None and math.isfinite(t10):
        lines.append(f"  At this rate: ~T10 = {t10:.1f} hours for +10% more SNR")
    else:
        lines.append("  At this rate: ~T10 = infinite hours (gain too small)")
    lines.append("")

    stepped = [j for j in jobs[1:] if j.gain_per_hour is not None and j.gain_per_hour > 0]
    if stepped:
        best = max(stepped, key=lambda j: j.gain_per_hour)
        prev = jobs[jobs.index(best) - 1]
        lines.append("Best efficiency:")
        lines.append(
            f"  +{best.delta_snr_pct:.1f}% over {best.delta_hours:.1f}h = "
            f"{best.gain_per_hour:.1f}%/hr ({prev.label} -> {best.label})"
        )
        lines.append("")

    stop = rep["gain_per_hour_stop"]
    if stop:
        stop_job = next(j for j in jobs if j.label == stop)
        lines.append("Diminishing returns:")
        if stop == last.label:
            lines.append(f"  Not yet reached (threshold {GAIN_STOP_THRESHOLD:.1f}%/hr)")
            lines.append(f"  Current = {gain:.1f}%/hr")
            suffix = " (Deepest analyzed)"
        else:
            lines.append(
                f"  Reached at {stop} (Gain/hr < {GAIN_STOP_THRESHOLD:.1f}%/hr "
                f"for {GAIN_STOP_CONFIRM} consecutive steps)"
            )
            suffix = ""
        lines.append("")
        lines.append(f"Recommended stop depth: {stop}")
        lines.append(f"  ({format_duration(stop_job.total_exposure)}){suffix}")
        lines.append("")

    rng = rep["recommended_range"]
    if rng is not None:
        lines.append(
            f"Recommended range: {rng.min_label} ({format_duration(rng.min_exposure)}) "
            f"to {rng.max_label} ({format_duration(rng.max_exposure)})"
        )
        lines.append("")

    outlook = rep["outlook"]
    projections = rep["projected_gains"]
    if projections and outlook in ("strong", "modest"):
        lines.append(
            "ADDITIONAL INTEGRATION RECOMMENDED:" if outlook == "strong" else "MODEST GAINS POSSIBLE:"
        )
        for p in projections:
            lines.append(
                f"  {p.label} integration ({format_duration(p.total_time_s)} total): "
                f"SNR {p.snr:.2f} (+{p.gain_pct:.1f}%), "
                f"+{format_duration(p.additional_time_s)} ({p.additional_subs} more subs)"
            )
    else:
        lines.append("INTEGRATION STATUS:")
        lines.append(
            "  Diminishing returns reached - additional integration may not be cost-effective"
        )

    if rep["anomalies"]:
        lines.append("")
        lines.append("ANOMALIES DETECTED:")
        for a in rep["anomalies"]:
            lines.append(f"  - {a}")
    return "\n".join(lines)


# ────────────────────────────────────────────────
# Public API
# ────────────────────────────────────────────────
def compute_insights(jobs: Sequence[DepthJob], metric: str = "decision") -> InsightsReport:
    """Analyze SNR growth across depths.

    ``metric="decision"`` uses the fixed-signal decision SNR where present
    and falls back to the measured SNR per job; ``"measured"`` always uses
    the measured SNR. Fewer than two usable jobs yield a report with
    ``insufficient_data=True``.
    """
    usable = [j for j in sorted(jobs, key=lambda j: j.depth) if j.metric_snr(metric) is not None]
    if len(usable) < 2:
        return InsightsReport(
            metric=metric,
            insufficient_data=True,
            summary="Insufficient data for insights (need at least 2 depths)",
        )

    usable = annotate_gains(usable, metric)
    snrs = [float(j.metric_snr(metric)) for j in usable]

    improvements = []
    dr10: Optional[str] = None
    dr5: Optional[str] = None
    anomalies: List[str] = []
    for prev, cur, s0, s1 in zip(usable, usable[1:], snrs, snrs[1:]):
        pct = (s1 - s0) / s0 * 100.0 if s0 > 0 else 0.0
        improvements.append({"from_label": prev.label, "to_label": cur.label, "improvement_pct": pct})
        if dr10 is None and pct < 10.0:
            dr10 = cur.label
        if dr5 is None and pct < 5.0:
            dr5 = cur.label
        if pct < ANOMALY_DROP_PCT:
            anomalies.append(f"{cur.label}: SNR decreased by {abs(pct):.1f}% - possible bad subs")

    exp = scaling_exponent([j.depth for j in usable], snrs)
    assessment, note = assess_exponent(exp)
    if assessment == "anomalous":
        anomalies.append(f"scaling exponent {exp:.2f} exceeds sqrt(N); verify ROI selection")

    last_pct = improvements[-1]["improvement_pct"]
    outlook = "strong" if last_pct >= 10.0 else ("modest" if last_pct >= 2.0 else "weak")
    projections = _projections(usable[-1], snrs[-1], exp) if exp is not None else ()

    rep = {
        "scaling_exponent": exp,
        "exponent_note": note,
        "gain_per_hour_stop": gain_per_hour_stop(usable),
        "recommended_range": _recommended_range(usable, snrs),
        "projected_gains": projections,
        "outlook": outlook,
        "anomalies": anomalies,
    }
    summary = _summary(usable, rep, metric)
    for a in anomalies:
        logging.warning("Insights anomaly: %s", a)

    return InsightsReport(
        metric=metric,
        improvements=tuple(improvements),
        diminishing_returns_10pct=dr10,
        diminishing_returns_5pct=dr5,
        scaling_exponent=exp,
        exponent_assessment=assessment,
        exponent_note=note,
        outlook=outlook,
        projected_gains=projections,
        recommended_range=rep["recommended_range"],
        gain_per_hour_stop=rep["gain_per_hour_stop"],
        anomalies=tuple(anomalies),
        summary=summary,
    )
