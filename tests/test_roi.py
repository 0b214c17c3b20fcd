import pytest

np = pytest.importorskip("numpy")

from utils.roi import Rect, load_named_rois, load_rois, validate_rect


def test_rect_geometry():
    r = Rect.from_xywh(10, 20, 30, 40)
    assert r == Rect(10, 20, 40, 60)
    assert (r.width, r.height) == (30, 40)
    assert r.center == (25.0, 40.0)
    assert r.distance_to(Rect(10, 20, 40, 60)) == 0.0
    assert str(r) == "(10,20) - (40,60) [30x40]"


def test_rect_crop_is_half_open():
    img = np.arange(100).reshape(10, 10)
    crop = Rect(2, 3, 5, 4).crop(img)
    assert crop.shape == (1, 3)
    assert crop[0, 0] == img[3, 2]


@pytest.mark.parametrize(
    "rect",
    [Rect(5, 5, 5, 10), Rect(-1, 0, 4, 4), Rect(0, 0, 11, 4), Rect(0, 8, 4, 11)],
)
def test_validate_rect_rejects(rect):
    with pytest.raises(ValueError):
        validate_rect(rect, (10, 10))


def test_validate_rect_accepts_full_image():
    assert validate_rect(Rect(0, 0, 10, 10), (10, 10)) == Rect(0, 0, 10, 10)


def test_load_named_rois(tmp_path):
    roifile = pytest.importorskip("roifile")
    bg = roifile.ImagejRoi(roitype=roifile.ROI_TYPE.RECT, left=1, top=2, right=11, bottom=12, name="BG")
    fg = roifile.ImagejRoi(roitype=roifile.ROI_TYPE.RECT, left=20, top=20, right=30, bottom=40, name="fg")
    path = tmp_path / "rois.zip"
    roifile.roiwrite(path, [fg, bg])

    named = load_named_rois(path)
    assert named["BG"] == Rect(1, 2, 11, 12)
    assert named["FG"] == Rect(20, 20, 30, 40)
    assert len(load_rois(path)) == 2


def test_load_rois_missing(tmp_path):
    pytest.importorskip("roifile")
    with pytest.raises(FileNotFoundError):
        load_rois(tmp_path / "missing.zip")
