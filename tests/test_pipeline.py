import json
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import tifffile
import pytest

from core.integrator import Integrator
from core.models import IntegrationError, NeedsManualInput, PlanningError, RoiPair, Subframe
from core.pipeline import analyze_group, detect_roi, plan_group, run_pipeline
from core.transforms import NoneAdapter, UnavailableAdapter
from utils.config import AnalysisConfig, load_config

TILE = 16
SIZE = 160


def _frames(n: int, seed: int = 0):
    """Sky frames with a 3x3-tile patch of faint signal at rows/cols 32:80."""
    rng = np.random.default_rng(seed)
    out = []
    for _ in range(n):
        f = rng.normal(0.1, 0.01, size=(SIZE, SIZE)).astype(np.float32)
        f[32:80, 32:80] += 0.05
        out.append(f)
    return out


def _fake_group(n: int):
    frames = _frames(n)
    t0 = datetime(2024, 1, 1)
    subs = [
        Subframe(path=f"f{i}", exposure=300.0, filter="Ha", timestamp=t0 + timedelta(minutes=5 * i))
        for i in range(n)
    ]
    lookup = {f"f{i}": fr for i, fr in enumerate(frames)}
    return subs, lookup.__getitem__


def _cfg(**kw):
    base = dict(roi_mode="auto", tile_size=TILE, depth_strategy="custom", custom_depths="3,6,12")
    base.update(kw)
    return AnalysisConfig(**base)


def test_analyze_group_measures_every_depth():
    subs, loader = _fake_group(12)
    cfg = _cfg()
    res = analyze_group("Ha", subs, cfg, integrator=Integrator(cfg, loader=loader))

    assert isinstance(res.roi, RoiPair)
    assert res.labels == ["N3", "N6", "N12"]
    assert [j.total_exposure for j in res.jobs] == [900.0, 1800.0, 3600.0]
    assert res.bg_ref is not None and res.bg_ref > 0
    snrs = [j.snr for j in res.jobs]
    assert snrs[0] < snrs[-1]
    # decision SNR shares the signal of the deepest stack
    assert len({j.signal_ref for j in res.jobs}) == 1
    assert res.jobs[0].delta_snr_pct is None
    assert res.jobs[1].gain_per_hour is not None
    assert res.insights is not None and not res.insights.insufficient_data
    # the full-depth job reuses the reference stack
    assert res.jobs[-1].integration_time == 0.0


class _FailingIntegrator(Integrator):
    def integrate(self, subframes):
        if len(subframes) == 3:
            raise IntegrationError("corrupt frame")
        return super().integrate(subframes)


def test_failed_depth_is_dropped():
    subs, loader = _fake_group(12)
    cfg = _cfg()
    res = analyze_group("Ha", subs, cfg, integrator=_FailingIntegrator(cfg, loader=loader))
    assert res.dropped == ("N3",)
    assert res.labels == ["N6", "N12"]


def test_parallel_depths_match_sequential():
    subs, loader = _fake_group(12)
    seq = analyze_group("Ha", subs, _cfg(), integrator=Integrator(_cfg(), loader=loader))
    par_cfg = _cfg(depth_workers=3)
    par = analyze_group("Ha", subs, par_cfg, integrator=Integrator(par_cfg, loader=loader))
    assert par.labels == seq.labels
    assert [j.snr for j in par.jobs] == pytest.approx([j.snr for j in seq.jobs])


def test_cancel_before_depths():
    subs, loader = _fake_group(12)
    cancel = threading.Event()
    cancel.set()
    res = analyze_group("Ha", subs, _cfg(), integrator=Integrator(_cfg(), loader=loader), cancel=cancel)
    assert res.cancelled
    assert res.jobs == ()


def test_manual_mode_without_file_needs_input():
    subs, loader = _fake_group(6)
    cfg = _cfg(roi_mode="manual", custom_depths="3,6")
    res = analyze_group("Ha", subs, cfg, integrator=Integrator(cfg, loader=loader))
    assert isinstance(res.needs_manual, NeedsManualInput)
    assert res.jobs == ()


def test_detect_roi_falls_back_to_tiles(monkeypatch):
    monkeypatch.setattr(
        "core.pipeline.detect_rangemask", lambda img, cfg: NeedsManualInput("no threshold", "rangeMask")
    )
    ref = np.mean(_frames(4), axis=0)
    roi = detect_roi(ref, _cfg(roi_mode="rangeMask"))
    assert isinstance(roi, RoiPair)
    assert roi.source == "tiles"


def _write_project(root: Path, n: int = 12) -> None:
    t0 = datetime(2024, 1, 1, 22, 0, 0)
    for i, frame in enumerate(_frames(n, seed=7)):
        meta = {
            "EXPTIME": 300,
            "FILTER": "Ha",
            "DATE-OBS": (t0 + timedelta(minutes=5 * i)).strftime("%Y-%m-%dT%H:%M:%S"),
        }
        tifffile.imwrite(root / f"sub_{i:03d}.tif", frame, description=json.dumps(meta), metadata=None)


def test_run_pipeline_writes_reports(tmp_path):
    pytest.importorskip("matplotlib")
    _write_project(tmp_path)
    cfg = load_config()
    cfg["roi"].update({"mode": "auto", "tile_size": TILE})
    cfg["depth"].update({"strategy": "custom", "custom": "3,6,12"})
    cfg["output"]["debug_overlay"] = True

    progress = []
    results = run_pipeline(tmp_path, cfg, out_dir=tmp_path / "out", progress=progress.append)

    assert list(results) == ["Ha"]
    res = results["Ha"]
    assert res.labels == ["N3", "N6", "N12"]
    assert progress[-1] == 100
    assert res.outputs["csv"].endswith("snr_results_Ha.csv")
    assert res.outputs["summary"].endswith("summary_Ha.txt")

    base = tmp_path / "out" / "SNRAnalysis"
    csv_text = (base / "data" / "snr_results_Ha.csv").read_text(encoding="utf-8")
    assert csv_text.splitlines()[0].startswith("label,nSubs,totalExposure_s")
    assert len(csv_text.splitlines()) == 4

    payload = json.loads((base / "data" / "snr_results_Ha.json").read_text(encoding="utf-8"))
    assert payload["filter"] == "Ha"
    assert payload["roi"]["source"] == "tiles"
    assert [r["label"] for r in payload["results"]] == ["N3", "N6", "N12"]

    assert "SNR ANALYSIS INSIGHTS" in (base / "data" / "summary_Ha.txt").read_text(encoding="utf-8")
    assert (base / "graphs" / "snr_vs_depth_Ha.png").exists()
    assert (base / "graphs" / "gain_per_hour_Ha.png").exists()
    assert (base / "previews" / "ROI_Ha_reference.png").exists()


def test_run_pipeline_no_frames(tmp_path):
    with pytest.raises(RuntimeError):
        run_pipeline(tmp_path, load_config())


class _CancellingIntegrator(Integrator):
    def __init__(self, cfg, loader, cancel, at_depth):
        super().__init__(cfg, loader=loader)
        self.cancel = cancel
        self.at_depth = at_depth

    def integrate(self, subframes):
        out = super().integrate(subframes)
        if len(subframes) == self.at_depth:
            self.cancel.set()
        return out


def test_cancel_between_depths_keeps_finished_ones():
    subs, loader = _fake_group(12)
    cancel = threading.Event()
    integrator = _CancellingIntegrator(_cfg(), loader, cancel, at_depth=6)
    res = analyze_group("Ha", subs, _cfg(), integrator=integrator, cancel=cancel)
    assert res.cancelled
    assert res.labels == ["N3"]
    assert res.jobs[0].snr is not None


def test_unavailable_transforms_leave_image_untouched():
    subs, loader = _fake_group(12)
    plain = analyze_group(
        "Ha", subs, _cfg(), integrator=Integrator(_cfg(), loader=loader), star=NoneAdapter(), stretch=NoneAdapter()
    )
    res = analyze_group(
        "Ha",
        subs,
        _cfg(),
        integrator=Integrator(_cfg(), loader=loader),
        star=UnavailableAdapter("starnet", "not installed"),
        stretch=UnavailableAdapter("ghs", "not installed"),
    )
    assert res.labels == plain.labels
    assert [j.star_removal_time for j in res.jobs] == [0.0, 0.0, 0.0]
    assert [j.stretch_time for j in res.jobs] == [0.0, 0.0, 0.0]
    assert [j.snr for j in res.jobs] == pytest.approx([j.snr for j in plain.jobs])


def test_plan_group_skips_invalid_subframes():
    subs, _ = _fake_group(12)
    subs[4] = Subframe(path="bad", exposure=0.0, filter="Ha", timestamp=subs[4].timestamp)
    usable, jobs = plan_group(subs, _cfg(custom_depths="3,20"))
    assert len(usable) == 11
    assert [j.depth for j in jobs] == [3, 11]
    assert jobs[-1].total_exposure == 3300.0


def test_planning_error_aborts_before_any_integration(tmp_path, monkeypatch):
    t0 = datetime(2024, 1, 1)
    frames = _frames(16)
    groups = OrderedDict()
    for name, n in (("Ha", 16), ("OIII", 3)):
        groups[name] = [
            Subframe(path=f"{name}{i}", exposure=300.0, filter=name, timestamp=t0 + timedelta(minutes=5 * i))
            for i in range(n)
        ]
    loaded = []

    def _loader(path):
        loaded.append(path)
        return frames[int(path.lstrip("HaOI"))]

    monkeypatch.setattr("core.pipeline.scan_subframes", lambda root, default_exposure=0.0: groups)
    cfg = load_config()
    cfg["roi"].update({"mode": "auto", "tile_size": TILE})
    cfg["depth"].update({"strategy": "doubling"})

    with pytest.raises(PlanningError, match="3 subframes"):
        run_pipeline(
            tmp_path, cfg, out_dir=tmp_path / "out", integrator=Integrator(_cfg(), loader=_loader)
        )
    assert loaded == []
    assert not list((tmp_path / "out").rglob("*.csv"))
