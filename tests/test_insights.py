import math

import pytest

from core.insights import (
    assess_exponent,
    compute_insights,
    format_duration,
    gain_per_hour_stop,
    scaling_exponent,
)
from core.models import DepthJob

SUB_S = 300.0


def _jobs(depths, snrs):
    return [
        DepthJob(label=f"N{d}", depth=d, total_exposure=d * SUB_S, snr=s)
        for d, s in zip(depths, snrs)
    ]


def test_format_duration():
    assert format_duration(3725) == "1h 02m"
    assert format_duration(95) == "1m 35s"
    assert format_duration(float("inf")) == "n/a"


def test_scaling_exponent_sqrt_law():
    depths = [8, 16, 32, 64, 128]
    snrs = [3.0 * math.sqrt(d) for d in depths]
    assert scaling_exponent(depths, snrs) == pytest.approx(0.5, abs=0.02)


def test_scaling_exponent_needs_three_points():
    assert scaling_exponent([8, 16], [1.0, 1.4]) is None


def test_assess_exponent():
    assert assess_exponent(0.5)[0] == "ideal"
    assert assess_exponent(0.3)[0] == "systematic_losses"
    assert assess_exponent(0.7)[0] == "anomalous"
    assert assess_exponent(None) == ("", "")


def test_diminishing_return_labels():
    rep = compute_insights(_jobs([8, 16, 32, 64], [5.0, 7.0, 7.5, 7.6]), metric="measured")
    assert not rep.insufficient_data
    assert rep.diminishing_returns_10pct == "N32"
    assert rep.diminishing_returns_5pct == "N64"
    assert [round(i["improvement_pct"], 1) for i in rep.improvements] == [40.0, 7.1, 1.3]
    assert rep.outlook == "weak"
    assert "SNR ANALYSIS INSIGHTS" in rep.summary


def test_ideal_scaling_projects_gains():
    depths = [8, 16, 32, 64]
    rep = compute_insights(_jobs(depths, [2.0 * math.sqrt(d) for d in depths]))
    assert rep.exponent_assessment == "ideal"
    assert rep.outlook == "strong"
    two_x = rep.projected_gains[0]
    assert two_x.label == "2x"
    assert two_x.depth == 128
    assert two_x.gain_pct == pytest.approx(41.4, abs=0.5)
    assert two_x.additional_subs == 64
    assert rep.recommended_range is not None
    assert rep.recommended_range.max_label == "N64"


def test_snr_drop_reported_as_anomaly():
    rep = compute_insights(_jobs([8, 16, 32], [5.0, 7.0, 6.0]), metric="measured")
    assert any(a.startswith("N32: SNR decreased") for a in rep.anomalies)


def test_insufficient_data():
    rep = compute_insights(_jobs([8], [5.0]))
    assert rep.insufficient_data
    assert rep.improvements == ()


def test_decision_metric_preferred():
    jobs = [
        DepthJob(label="N8", depth=8, total_exposure=2400, snr=5.0, decision_snr=4.0),
        DepthJob(label="N16", depth=16, total_exposure=4800, snr=5.0, decision_snr=6.0),
    ]
    rep = compute_insights(jobs, metric="decision")
    assert rep.improvements[0]["improvement_pct"] == pytest.approx(50.0)
    rep = compute_insights(jobs, metric="measured")
    assert rep.improvements[0]["improvement_pct"] == pytest.approx(0.0)


def test_gain_per_hour_stop_needs_consecutive_steps():
    gains = [None, 10.0, 1.0, 1.5, 0.5]
    jobs = [
        DepthJob(label=f"N{i}", depth=i + 1, gain_per_hour=g) for i, g in enumerate(gains)
    ]
    assert gain_per_hour_stop(jobs) == "N1"

    recovering = [None, 10.0, 1.0, 5.0, 1.0]
    jobs = [
        DepthJob(label=f"N{i}", depth=i + 1, gain_per_hour=g) for i, g in enumerate(recovering)
    ]
    assert gain_per_hour_stop(jobs) == "N4"
