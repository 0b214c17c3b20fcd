from datetime import datetime
from pathlib import Path

import pytest

from core.models import PlanningError, Subframe
from core.planner import assign_exposures, depth_label, plan_depths, plan_jobs


def _subs(exposures):
    return [
        Subframe(path=Path(f"f{i}.tif"), exposure=e, filter="L", timestamp=datetime(2024, 1, 1))
        for i, e in enumerate(exposures)
    ]


def test_preset_strategy():
    assert plan_depths("preset", 100) == [12, 24, 48, 96]
    assert plan_depths("preset", 100, include_full_depth=True) == [12, 24, 48, 96, 100]


def test_preset_small_group_falls_back_to_available():
    assert plan_depths("preset", 10) == [10]
    assert plan_depths("preset", 5, include_full_depth=True) == [5]


def test_doubling_and_fibonacci():
    assert plan_depths("doubling", 40) == [8, 16, 32]
    assert plan_depths("fibonacci", 40) == [8, 13, 21, 34]


def test_logarithmic_spans_range():
    depths = plan_depths("logarithmic", 64)
    assert depths[0] == 8
    assert depths[-1] == 64
    assert depths == sorted(set(depths))


def test_custom_clamps_and_dedups():
    assert plan_depths("custom", 50, "10, 5, 5, 200, x") == [5, 10, 50]


@pytest.mark.parametrize(
    "strategy,n,custom",
    [
        ("preset", 0, None),
        ("bogus", 10, None),
        ("custom", 10, ""),
        ("custom", 10, "x, -3"),
        ("fibonacci", 5, None),
    ],
)
def test_plan_errors(strategy, n, custom):
    with pytest.raises(PlanningError):
        plan_depths(strategy, n, custom)


def test_plan_jobs_labels():
    jobs = plan_jobs("doubling", 20)
    assert [j.label for j in jobs] == ["N8", "N16"]
    assert depth_label(3) == "N3"


def test_assign_exposures_cumulative():
    jobs = plan_jobs("custom", 4, "1,3")
    out = assign_exposures(jobs, _subs([60, 60, 120, 300]))
    assert [j.total_exposure for j in out] == [60.0, 240.0]


def test_assign_exposures_too_deep():
    jobs = plan_jobs("custom", 4, "4")
    with pytest.raises(PlanningError):
        assign_exposures(jobs, _subs([60, 60]))


@pytest.mark.parametrize("strategy", ["preset", "preset_osc", "doubling", "fibonacci", "logarithmic"])
@pytest.mark.parametrize("include_full_depth", [False, True])
def test_every_plan_is_strictly_increasing_and_bounded(strategy, include_full_depth):
    planned = 0
    for n in range(1, 400):
        try:
            depths = plan_depths(strategy, n, include_full_depth=include_full_depth)
        except PlanningError:
            continue
        planned += 1
        assert depths, n
        assert all(a < b for a, b in zip(depths, depths[1:])), (n, depths)
        assert 1 <= depths[0] and depths[-1] <= n, (n, depths)
        if include_full_depth:
            assert depths[-1] == n
    assert planned > 300


@pytest.mark.parametrize("n", [1, 7, 13, 50, 333])
def test_custom_plan_is_strictly_increasing_and_bounded(n):
    depths = plan_depths("custom", n, "400, 3, 1, 3, 12, 7, 0, 50")
    assert all(a < b for a, b in zip(depths, depths[1:]))
    assert depths[0] >= 1 and depths[-1] <= n
