from __future__ import annotations

import threading
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from bg_blur.config import SCRATCH_PREFIX
from bg_blur.errors import Cancelled, DimensionMismatch, SegmentationFailed
from bg_blur.segmenter import SegmentationProvider, coerce_mask, extract_foreground_mask, scratch_png


def _raster(h: int = 24, w: int = 32) -> np.ndarray:
    arr = np.zeros((h, w, 4), dtype=np.uint8)
    arr[..., 1] = 180
    arr[..., 3] = 255
    return arr


def _center_mask(h: int = 24, w: int = 32) -> np.ndarray:
    m = np.zeros((h, w), dtype=np.uint8)
    m[h // 4 : 3 * h // 4, w // 4 : 3 * w // 4] = 255
    return m


class _FakeProvider(SegmentationProvider):
    """
    Scripted backend: `buffer` / `file` are either a mask to return or an exception to raise.
    Records which modes were used and whether the scratch file existed during the call.
    """

    name = "fake"

    def __init__(self, buffer, file):
        self.buffer = buffer
        self.file = file
        self.calls = []
        self.seen_paths = []

    def extract(self, source):
        if isinstance(source, np.ndarray):
            self.calls.append("buffer")
            outcome = self.buffer
        else:
            self.calls.append("file")
            p = Path(source)
            self.seen_paths.append(p)
            assert p.exists()
            with Image.open(p) as img:
                assert img.format == "PNG"
                assert img.mode == "RGBA"
            outcome = self.file
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _scratch_files(d: Path):
    return sorted(d.glob(f"{SCRATCH_PREFIX}*"))


def test_buffer_mode_success_touches_no_files(tmp_path: Path):
    provider = _FakeProvider(buffer=_center_mask(), file=AssertionError("file mode must not run"))

    result = extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path))

    assert result.path == "buffer"
    assert provider.calls == ["buffer"]
    np.testing.assert_array_equal(result.mask, _center_mask())
    assert _scratch_files(tmp_path) == []


def test_fallback_runs_and_removes_scratch_file(tmp_path: Path):
    provider = _FakeProvider(buffer=RuntimeError("buffer input not supported"), file=_center_mask())

    result = extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path))

    assert result.path == "file"
    assert provider.calls == ["buffer", "file"]
    assert len(provider.seen_paths) == 1
    assert provider.seen_paths[0].parent == tmp_path
    assert provider.seen_paths[0].name.startswith(SCRATCH_PREFIX)
    assert not provider.seen_paths[0].exists()
    assert _scratch_files(tmp_path) == []
    np.testing.assert_array_equal(result.mask, _center_mask())


def test_empty_buffer_result_triggers_fallback(tmp_path: Path):
    provider = _FakeProvider(buffer=None, file=_center_mask())

    result = extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path))

    assert result.path == "file"
    assert _scratch_files(tmp_path) == []


def test_double_failure_reports_primary_error_and_cleans_up(tmp_path: Path):
    primary = RuntimeError("buffer input not supported")
    secondary = OSError("model download failed")
    provider = _FakeProvider(buffer=primary, file=secondary)

    with pytest.raises(SegmentationFailed) as exc:
        extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path))

    err = exc.value
    assert "buffer input not supported" in str(err)
    assert "model download failed" not in str(err)
    assert err.cause is primary
    assert err.__cause__ is primary
    assert err.fallback_error is secondary
    assert err.stage == "segment"
    assert provider.calls == ["buffer", "file"]
    assert not provider.seen_paths[0].exists()
    assert _scratch_files(tmp_path) == []


def test_unwritable_scratch_dir_is_a_fallback_failure(tmp_path: Path):
    provider = _FakeProvider(buffer=RuntimeError("primary"), file=_center_mask())

    with pytest.raises(SegmentationFailed) as exc:
        extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path / "missing"))

    assert str(exc.value) == "Background removal failed: primary"
    assert provider.calls == ["buffer"]


def test_wrong_sized_mask_is_rejected_without_fallback(tmp_path: Path):
    provider = _FakeProvider(buffer=_center_mask(24, 30), file=_center_mask())

    with pytest.raises(DimensionMismatch) as exc:
        extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path))

    assert exc.value.stage == "segment"
    assert provider.calls == ["buffer"]


def test_cancel_before_segmentation(tmp_path: Path):
    cancel = threading.Event()
    cancel.set()
    provider = _FakeProvider(buffer=_center_mask(), file=_center_mask())

    with pytest.raises(Cancelled):
        extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path), cancel=cancel)
    assert provider.calls == []


def test_cancel_skips_fallback(tmp_path: Path):
    cancel = threading.Event()

    class _CancelOnFailure(_FakeProvider):
        def extract(self, source):
            cancel.set()
            return super().extract(source)

    provider = _CancelOnFailure(buffer=RuntimeError("primary"), file=_center_mask())

    with pytest.raises(Cancelled):
        extract_foreground_mask(_raster(), provider, scratch_dir=str(tmp_path), cancel=cancel)
    assert provider.calls == ["buffer"]
    assert _scratch_files(tmp_path) == []


def test_scratch_png_is_removed_when_the_body_raises(tmp_path: Path):
    seen = []
    with pytest.raises(KeyError):
        with scratch_png(_raster(), str(tmp_path)) as p:
            seen.append(p)
            assert p.exists()
            raise KeyError("boom")
    assert not seen[0].exists()


def test_scratch_png_tolerates_file_already_gone(tmp_path: Path):
    with scratch_png(_raster(), str(tmp_path)) as p:
        p.unlink()
    assert _scratch_files(tmp_path) == []


def test_scratch_names_are_unique(tmp_path: Path):
    with scratch_png(_raster(), str(tmp_path)) as a, scratch_png(_raster(), str(tmp_path)) as b:
        assert a != b
        assert len(_scratch_files(tmp_path)) == 2
    assert _scratch_files(tmp_path) == []


def test_coerce_mask_layouts():
    m = _center_mask(4, 4)

    rgba = np.zeros((4, 4, 4), dtype=np.uint8)
    rgba[..., 3] = m
    np.testing.assert_array_equal(coerce_mask(rgba), m)
    np.testing.assert_array_equal(coerce_mask(m[..., None]), m)
    np.testing.assert_array_equal(coerce_mask(m.astype(np.float32) / 255.0), m)

    flags = m > 0
    np.testing.assert_array_equal(coerce_mask(flags), m)
    assert coerce_mask(flags).dtype == np.uint8
    np.testing.assert_array_equal(coerce_mask(m.astype(np.int32)), m)

    with pytest.raises(RuntimeError):
        coerce_mask(None)
    with pytest.raises(RuntimeError):
        coerce_mask(np.zeros((4,), dtype=np.uint8))
    with pytest.raises(RuntimeError):
        coerce_mask(np.full((2, 2), np.nan, dtype=np.float32))
