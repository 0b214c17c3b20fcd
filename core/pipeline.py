# core/pipeline.py – Per-filter depth analysis pipeline

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.insights import compute_insights
from core.integrator import Integrator
from core.loader import scan_subframes
from core.models import (
    DepthJob,
    DepthJobBuilder,
    GroupResult,
    IntegrationError,
    MeasurementError,
    NeedsManualInput,
    RoiPair,
    Subframe,
)
from core.planner import assign_exposures, plan_jobs
from core.plotting import plot_gain_per_hour, plot_roi_overlay, plot_snr_vs_depth
from core.report_gen import (
    filter_suffix,
    output_dirs,
    report_csv,
    save_preview_tiff,
    save_results_json,
    save_summary_txt,
)
from core.roi_rangemask import detect_rangemask
from core.roi_tiles import detect_tiles
from core.snr import annotate_gains, apply_decision_snr, compute_bg_ref, measure_snr
from core.transforms import (
    STAR_REMOVAL,
    STRETCH,
    TransformAdapter,
    TransformUnavailable,
    negotiate_adapter,
)
from utils.config import AnalysisConfig, resolve_config
from utils.logger import apply_logging_config, log_elapsed, log_memory_usage
from utils.roi import load_named_rois, validate_rect

__all__ = ["run_pipeline", "analyze_group", "plan_group", "detect_roi", "pipeline_lock"]

pipeline_lock = threading.Lock()

StatusFn = Optional[Callable[[str], None]]
ProgressFn = Optional[Callable[[int], None]]


# ────────────────────────────────────────────────
# Stage helpers
# ────────────────────────────────────────────────
def _transform(
    adapter: TransformAdapter, image: np.ndarray, label: str
) -> Tuple[np.ndarray, float]:
    """Apply ``adapter``; on TransformUnavailable keep the input, elapsed 0."""
    if adapter.name == "none":
        return image, 0.0
    timings: Dict[str, float] = {}
    try:
        with log_elapsed(f"{adapter.name} on {label}", timings, "t"):
            out = adapter.apply(image)
    except TransformUnavailable as exc:
        logging.warning("%s: %s skipped (%s)", label, adapter.name, exc)
        return image, 0.0
    return out, timings["t"]


def _manual_roi(cfg: AnalysisConfig, shape, base_dir: Optional[Path]) -> RoiPair | NeedsManualInput:
    if not cfg.roi_file:
        return NeedsManualInput("no ROI file configured (roi.roi_file)", "manual")
    path = Path(cfg.roi_file)
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    try:
        rois = load_named_rois(path)
        bg = validate_rect(rois["BG"], shape)
        fg = validate_rect(rois["FG"], shape)
    except (OSError, ValueError) as exc:
        logging.warning("Manual ROI file unusable: %s", exc)
        return NeedsManualInput(str(exc), "manual")
    if bg == fg:
        return NeedsManualInput("BG and FG ROIs are identical", "manual")
    return RoiPair(bg=bg, fg=fg, source="manual", meta={"roiFile": str(path)})


def detect_roi(
    reference: np.ndarray,
    cfg: AnalysisConfig,
    starless: Optional[np.ndarray] = None,
    base_dir: Optional[Path] = None,
) -> RoiPair | NeedsManualInput:
    """Run the ROI fallback chain for ``cfg.roi_mode``.

    rangeMask (on the starless reference) → tiles → manual ROI file. The
    last failure is returned when nothing succeeds.
    """
    chain: List[Callable[[], RoiPair | NeedsManualInput]] = []
    if cfg.roi_mode == "rangeMask":
        chain.append(lambda: detect_rangemask(starless if starless is not None else reference, cfg))
    if cfg.roi_mode in ("rangeMask", "auto"):
        chain.append(lambda: detect_tiles(reference, cfg))
    chain.append(lambda: _manual_roi(cfg, reference.shape, base_dir))

    result: RoiPair | NeedsManualInput = NeedsManualInput("no ROI detector ran")
    for step in chain:
        result = step()
        if isinstance(result, RoiPair):
            logging.info("ROI (%s): BG %s, FG %s", result.source, result.bg, result.fg)
            return result
        logging.warning("ROI detection failed: %s", result)
    return result


def _measure_depth(
    job: DepthJob,
    subs: Sequence[Subframe],
    reference: np.ndarray,
    roi: RoiPair,
    bg_ref: Optional[float],
    cfg: AnalysisConfig,
    integrator: Integrator,
    star: TransformAdapter,
    stretch: TransformAdapter,
    cancel: threading.Event,
    previews_dir: Optional[Path],
) -> Optional[DepthJob]:
    if cancel.is_set():
        return None
    b = DepthJobBuilder(job)
    timings: Dict[str, float] = {}
    if job.depth == len(subs):
        image = reference
        timings["integration"] = 0.0
    else:
        with log_elapsed(f"integration {job.label}", timings, "integration"):
            image = integrator.integrate(subs[: job.depth])
    b.set(integration_time=timings["integration"])

    if cancel.is_set():
        return None
    image, t_star = _transform(star, image, job.label)
    b.set(star_removal_time=t_star)

    m = measure_snr(image, roi.bg, roi.fg, bg_ref, cfg)
    b.set(**m.as_job_fields())

    # stretch only feeds previews; SNR is measured on linear data
    stretched, t_stretch = _transform(stretch, image, job.label)
    b.set(stretch_time=t_stretch)
    if previews_dir is not None and t_stretch > 0:
        save_preview_tiff(stretched, previews_dir / f"{job.label}{filter_suffix(cfg.filter_name)}.tif")

    done = b.build()
    logging.info(
        "%s: %d subs, signal %.6f, bgSigmaMAD %.6f, SNR %.3f",
        done.label,
        done.depth,
        done.signal,
        done.bg_sigma_mad,
        done.snr,
    )
    return done


# ────────────────────────────────────────────────
# One filter group
# ────────────────────────────────────────────────
def plan_group(
    subframes: Sequence[Subframe], cfg: AnalysisConfig
) -> Tuple[List[Subframe], List[DepthJob]]:
    """Usable subframes of a group and their depth jobs with exposure totals.

    Raises :class:`PlanningError` when no valid plan exists.
    """
    subs = [s for s in subframes if s.is_valid and s.exposure > 0]
    jobs = plan_jobs(cfg.depth_strategy, len(subs), cfg.custom_depths, cfg.include_full_depth)
    return subs, assign_exposures(jobs, subs)


def analyze_group(
    filter_name: str,
    subframes: Sequence[Subframe],
    cfg: AnalysisConfig,
    *,
    integrator: Optional[Integrator] = None,
    star: Optional[TransformAdapter] = None,
    stretch: Optional[TransformAdapter] = None,
    cancel: Optional[threading.Event] = None,
    status: StatusFn = None,
    base_dir: Optional[Path] = None,
    previews_dir: Optional[Path] = None,
    overlay_path: Optional[Path] = None,
    jobs: Optional[Sequence[DepthJob]] = None,
) -> GroupResult:
    """Plan, integrate and measure every depth of one filter group.

    ``jobs`` is a plan already made by :func:`plan_group`; without it the
    group is planned here. Planning errors and a failed reference
    integration propagate. Failures of single depths are logged and the
    depth is dropped.
    """
    cfg = cfg.with_overrides(filter_name=filter_name)
    cancel = cancel or threading.Event()
    integrator = integrator or Integrator(cfg)
    star = star or negotiate_adapter(STAR_REMOVAL, cfg.star_removal)
    stretch = stretch or negotiate_adapter(STRETCH, cfg.stretch)
    if jobs is None:
        subs, jobs = plan_group(subframes, cfg)
    else:
        subs = [s for s in subframes if s.is_valid and s.exposure > 0]

    if status:
        status(f"[{filter_name}] Integrating reference ({len(subs)} subs)")
    reference = integrator.integrate(subs)
    if cancel.is_set():
        return GroupResult(filter_name=filter_name, cancelled=True)

    starless, _ = _transform(star, reference, "reference")
    if status:
        status(f"[{filter_name}] Detecting ROIs")
    roi = detect_roi(reference, cfg, starless=starless, base_dir=base_dir)
    if isinstance(roi, NeedsManualInput):
        logging.error("[%s] No usable ROI: %s", filter_name, roi)
        return GroupResult(filter_name=filter_name, needs_manual=roi)
    if overlay_path is not None:
        plot_roi_overlay(starless, roi, overlay_path)

    bg_ref = None
    if cfg.lock_signal_scale:
        bg_ref = compute_bg_ref(starless, roi.bg)
        if not bg_ref or bg_ref <= 0:
            logging.warning("[%s] BG_ref unusable, scale locking disabled", filter_name)
            bg_ref = None

    measured: List[DepthJob] = []
    dropped: List[str] = []
    args = (subs, reference, roi, bg_ref, cfg, integrator, star, stretch, cancel, previews_dir)

    def _collect(job: DepthJob, fn: Callable[[], Optional[DepthJob]]) -> None:
        try:
            done = fn()
        except (IntegrationError, MeasurementError, ValueError) as exc:
            logging.warning("[%s] %s dropped: %s", filter_name, job.label, exc)
            dropped.append(job.label)
            return
        if done is not None:
            measured.append(done)

    if cfg.depth_workers > 1:
        with ThreadPoolExecutor(max_workers=cfg.depth_workers) as pool:
            futures = {pool.submit(_measure_depth, job, *args): job for job in jobs}
            for fut in as_completed(futures):
                _collect(futures[fut], fut.result)
    else:
        for job in jobs:
            if cancel.is_set():
                break
            if status:
                status(f"[{filter_name}] {job.label}")
            _collect(job, lambda job=job: _measure_depth(job, *args))

    cancelled = cancel.is_set()
    if cancelled:
        logging.warning("[%s] Cancelled after %d depths", filter_name, len(measured))

    measured.sort(key=lambda j: j.depth)
    measured = apply_decision_snr(measured)
    measured = annotate_gains(measured, cfg.insights_metric)
    insights = compute_insights(measured, cfg.insights_metric)
    return GroupResult(
        filter_name=filter_name,
        jobs=tuple(measured),
        roi=roi,
        insights=insights,
        bg_ref=bg_ref,
        cancelled=cancelled,
        dropped=tuple(dropped),
    )


def _write_outputs(result: GroupResult, cfg: AnalysisConfig, out_root: Path) -> Dict[str, str]:
    dirs = output_dirs(out_root)
    suffix = filter_suffix(result.filter_name)
    out_cfg = cfg.output
    written: Dict[str, str] = {}
    if not result.jobs:
        return written
    if out_cfg.get("report_csv", True):
        written["csv"] = str(report_csv(result.jobs, dirs["data"] / f"snr_results{suffix}.csv"))
    if out_cfg.get("report_json", True):
        written["json"] = str(save_results_json(result, cfg, dirs["data"] / f"snr_results{suffix}.json"))
    if out_cfg.get("report_summary", True) and result.insights is not None:
        written["summary"] = str(save_summary_txt(result, dirs["data"] / f"summary{suffix}.txt"))
    if out_cfg.get("graphs", True):
        plot_snr_vs_depth(result.jobs, dirs["graphs"] / f"snr_vs_depth{suffix}.png", result.insights)
        plot_gain_per_hour(result.jobs, dirs["graphs"] / f"gain_per_hour{suffix}.png")
        written["graphs"] = str(dirs["graphs"])
    return written


# ────────────────────────────────────────────────
# Entry point
# ────────────────────────────────────────────────
def run_pipeline(
    input_dir: Path | str,
    cfg: Dict[str, Any],
    *,
    out_dir: Path | str | None = None,
    progress: ProgressFn = None,
    status: StatusFn = None,
    cancel: Optional[threading.Event] = None,
    integrator: Optional[Integrator] = None,
) -> Dict[str, GroupResult]:
    """Analyze every filter group found under ``input_dir``.

    Returns ``{filter_name: GroupResult}`` and writes reports and graphs
    below ``<out_dir>/SNRAnalysis``.
    """
    apply_logging_config(cfg)
    acfg = resolve_config(cfg)
    input_dir = Path(input_dir)
    out_root = Path(out_dir) if out_dir else input_dir / acfg.output.get("output_dir", "output")
    cancel = cancel or threading.Event()
    logging.info("Pipeline start: %s", input_dir)
    with pipeline_lock:
        try:
            log_memory_usage("start: ")
            if status:
                status("Scanning subframes...")
            if progress:
                progress(0)
            groups = scan_subframes(input_dir, acfg.default_exposure_s)
            if not groups:
                raise RuntimeError(f"No usable subframes found in {input_dir}")

            # every group is planned before the first integration
            plans: Dict[str, Tuple[List[Subframe], List[DepthJob]]] = {}
            for name, subs in groups.items():
                plans[name] = plan_group(subs, acfg.with_overrides(filter_name=name))

            star = negotiate_adapter(STAR_REMOVAL, acfg.star_removal)
            stretch = negotiate_adapter(STRETCH, acfg.stretch)
            previews = output_dirs(out_root)["previews"] if acfg.stretch != "none" else None

            results: Dict[str, GroupResult] = {}
            total = len(groups)

            def _one(name: str) -> GroupResult:
                subs, jobs = plans[name]
                res = analyze_group(
                    name,
                    subs,
                    acfg,
                    integrator=integrator,
                    star=star,
                    stretch=stretch,
                    cancel=cancel,
                    status=status,
                    base_dir=input_dir,
                    previews_dir=previews,
                    overlay_path=(
                        output_dirs(out_root)["previews"] / f"ROI{filter_suffix(name)}_reference.png"
                        if acfg.output.get("debug_overlay", False)
                        else None
                    ),
                    jobs=jobs,
                )
                res = replace(res, outputs=_write_outputs(res, acfg, out_root))
                log_memory_usage(f"after {name}: ")
                return res

            if acfg.group_workers > 1 and total > 1:
                with ThreadPoolExecutor(max_workers=acfg.group_workers) as pool:
                    futures = {pool.submit(_one, n): n for n in groups}
                    for done, fut in enumerate(as_completed(futures), 1):
                        results[futures[fut]] = fut.result()
                        if progress:
                            progress(int(100 * done / total))
            else:
                for done, name in enumerate(groups, 1):
                    if cancel.is_set():
                        break
                    results[name] = _one(name)
                    if progress:
                        progress(int(100 * done / total))

            logging.info("Pipeline completed")
            log_memory_usage("pipeline end: ")
            return dict(sorted(results.items()))
        except Exception as e:  # pragma: no cover - log path
            logging.exception("Pipeline error: %s", e)
            raise

