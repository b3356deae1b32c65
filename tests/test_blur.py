from __future__ import annotations

import math

import numpy as np
import pytest

from bg_blur.blur import blur, premultiply, unpremultiply, validate_radius
from bg_blur.errors import InvalidParameter


def _checkerboard(size: int = 64, cell: int = 8) -> np.ndarray:
    yy, xx = np.mgrid[0:size, 0:size]
    on = ((yy // cell + xx // cell) % 2).astype(np.uint8) * 255
    rgba = np.empty((size, size, 4), dtype=np.uint8)
    rgba[..., 0] = on
    rgba[..., 1] = on
    rgba[..., 2] = on
    rgba[..., 3] = 255
    return rgba


@pytest.mark.parametrize("radius", [0, 0.0, -1, -0.5, math.nan, math.inf, -math.inf, True, None, "5"])
def test_invalid_radius(radius):
    with pytest.raises(InvalidParameter) as exc:
        blur(_checkerboard(8, 2), radius)
    assert exc.value.stage == "blur"


def test_validate_radius_accepts_ints_and_floats():
    assert validate_radius(10) == 10.0
    assert validate_radius(2.5) == 2.5
    assert validate_radius(np.int64(3)) == 3.0


def test_increasing_radius_reduces_variance():
    img = _checkerboard()
    variances = [float(blur(img, r)[..., 0].astype(np.float64).var()) for r in (0.5, 1, 2, 4)]

    assert float(img[..., 0].astype(np.float64).var()) > variances[0]
    for a, b in zip(variances, variances[1:]):
        assert b < a


def test_blur_preserves_shape_and_dtype():
    img = _checkerboard(32, 4)[:20]
    out = blur(img, 3)

    assert out.shape == img.shape
    assert out.dtype == np.uint8
    assert (out[..., 3] == 255).all()


def test_constant_image_is_unchanged():
    img = np.full((24, 40, 4), 255, dtype=np.uint8)
    np.testing.assert_array_equal(blur(img, 10), img)


def test_radius_larger_than_image():
    img = _checkerboard(32, 4)[:, :24]
    out = blur(img, 100)

    assert out.shape == img.shape
    assert float(out[..., 0].std()) < 0.25 * float(img[..., 0].std())


def test_transparent_pixels_do_not_bleed_colour():
    img = np.zeros((20, 40, 4), dtype=np.uint8)
    # left half: transparent, with garbage red under it
    img[:, :20, 0] = 255
    # right half: opaque blue
    img[:, 20:, 2] = 255
    img[:, 20:, 3] = 255

    out = blur(img, 2)

    assert (out[:, :5, 3] == 0).all()
    edge = out[:, 17:20]
    assert (edge[..., 3] > 0).all()
    assert (edge[..., 0] <= 1).all()
    assert (edge[..., 2] >= 254).all()


def test_premultiply_round_trip_is_exact_for_opaque():
    arr = np.random.default_rng(2).integers(0, 256, size=(9, 9, 4), dtype=np.uint8)
    arr[..., 3] = 255
    np.testing.assert_array_equal(unpremultiply(premultiply(arr)), arr)


def test_unpremultiply_zero_alpha_gives_zero_rgb():
    x = np.zeros((2, 2, 4), dtype=np.float32)
    x[..., 0] = 0.3
    out = unpremultiply(x)
    assert (out == 0).all()
