import pytest

np = pytest.importorskip("numpy")
pytest.importorskip("scipy")

from core.transforms import (
    STAR_REMOVAL,
    STRETCH,
    AutoStfStretch,
    MorphologicalStarRemoval,
    NoneAdapter,
    TransformAdapter,
    TransformUnavailable,
    UnavailableAdapter,
    auto_stf_params,
    mtf,
    negotiate_adapter,
    register_adapter,
)


def test_mtf_midpoint_and_bounds():
    assert mtf(0.25, 0.25) == pytest.approx(0.5)
    assert mtf(0.25, 0.0) == 0.0
    assert mtf(0.25, 1.0) == 1.0


def test_auto_stf_params():
    rng = np.random.default_rng(0)
    img = rng.normal(0.1, 0.01, size=(100, 100))
    c0, m = auto_stf_params(img)
    med = float(np.median(img))
    mad = float(np.median(np.abs(img - med)))
    assert c0 == pytest.approx(med - 2.8 * mad)
    assert 0.0 < m < 1.0


def test_auto_stf_stretch_output_range():
    rng = np.random.default_rng(1)
    img = rng.normal(0.1, 0.01, size=(64, 64))
    out = AutoStfStretch().apply(img)
    assert out.min() >= 0.0 and out.max() <= 1.0
    # background median maps near the 0.25 target
    assert float(np.median(out)) == pytest.approx(0.25, abs=0.05)


def test_auto_stf_saturated_is_unavailable():
    with pytest.raises(TransformUnavailable):
        AutoStfStretch().apply(np.ones((8, 8)))


def test_morphological_star_removal():
    img = np.full((32, 32), 0.1)
    img[16, 16] = 1.0
    out = MorphologicalStarRemoval(size=5).apply(img)
    assert out.max() == pytest.approx(0.1)
    assert img[16, 16] == 1.0


def test_negotiate_known_and_unknown():
    assert isinstance(negotiate_adapter(STAR_REMOVAL, None), NoneAdapter)
    assert isinstance(negotiate_adapter(STRETCH, "auto_stf"), AutoStfStretch)

    missing = negotiate_adapter(STAR_REMOVAL, "starnet")
    assert isinstance(missing, UnavailableAdapter)
    assert not missing.available()
    with pytest.raises(TransformUnavailable):
        missing.apply(np.zeros((2, 2)))


def test_negotiate_checks_capability():
    # a stretch adapter registered under star removal is refused
    register_adapter(STAR_REMOVAL, "stf_as_star", AutoStfStretch)
    assert isinstance(negotiate_adapter(STAR_REMOVAL, "stf_as_star"), UnavailableAdapter)


def test_register_custom_adapter():
    class Halve(TransformAdapter):
        name = "halve"
        version = "2"
        capabilities = frozenset({STRETCH})

        def apply(self, image):
            return image / 2.0

    register_adapter(STRETCH, "halve", Halve)
    adapter = negotiate_adapter(STRETCH, "halve")
    assert adapter.describe() == "halve v2 [stretch]"
    assert np.allclose(adapter.apply(np.ones(3)), 0.5)
