import numpy as np
import pytest

from smartselect.core.contracts import ExistingMask, HitPrecision, MaskKind, ScreenRect
from smartselect.interaction.hit_testing import (
    MaskRasterCache,
    find_mask_under_cursor,
    is_point_over_mask,
)
from smartselect.raster.codec import mask_to_data_url


RECT = ScreenRect(left=100, top=50, width=200, height=200)


def _raster():
    alpha = np.zeros((100, 100), dtype=np.uint8)
    alpha[40:60, 40:60] = 255
    return alpha


class TestPointOverMask:
    def test_scaled_lookup(self):
        # screen (200, 150) -> raster (50, 50)
        assert is_point_over_mask(200, 150, RECT, _raster())
        assert not is_point_over_mask(110, 60, RECT, _raster())

    def test_floor_of_scaled_offset(self):
        # (100 + 79.9, ...) -> column 39, just outside the opaque block
        assert not is_point_over_mask(179.9, 150, RECT, _raster())
        assert is_point_over_mask(180.0, 150, RECT, _raster())

    def test_missing_raster_counts_as_hit(self):
        assert is_point_over_mask(0, 0, RECT, None)

    def test_outside_raster_is_miss(self):
        assert not is_point_over_mask(99, 150, RECT, _raster())
        assert not is_point_over_mask(300, 150, RECT, _raster())

    def test_alpha_threshold_is_exclusive(self):
        alpha = np.full((10, 10), 10, dtype=np.uint8)
        rect = ScreenRect(0, 0, 10, 10)
        assert not is_point_over_mask(5, 5, rect, alpha)
        alpha[5, 5] = 11
        assert is_point_over_mask(5, 5, rect, alpha)

    def test_degenerate_rect(self):
        assert not is_point_over_mask(0, 0, ScreenRect(0, 0, 0, 10), _raster())


class TestFindMaskUnderCursor:
    def _cache(self):
        cache = MaskRasterCache()
        cache.put("object", _raster())
        return cache

    def test_pixel_hit(self):
        masks = [ExistingMask("object", MaskKind.OBJECT, RECT)]
        hit = find_mask_under_cursor(200, 150, masks, self._cache())
        assert hit.mask_id == "object"
        assert hit.precision == HitPrecision.PIXEL

    def test_transparent_pixel_falls_through(self):
        below = ExistingMask("manual", MaskKind.MANUAL, ScreenRect(100, 50, 50, 50))
        masks = [ExistingMask("object", MaskKind.OBJECT, RECT), below]
        hit = find_mask_under_cursor(110, 60, masks, self._cache())
        # "manual" has no raster yet, so its rectangle decides
        assert hit.mask_id == "manual"
        assert hit.precision == HitPrecision.BBOX

    def test_text_masks_hit_by_rect(self):
        cache = self._cache()
        cache.put("text", np.zeros((10, 10), dtype=np.uint8))
        masks = [ExistingMask("text", MaskKind.TEXT, RECT)]
        hit = find_mask_under_cursor(110, 60, masks, cache)
        assert hit.kind == MaskKind.TEXT
        assert hit.precision == HitPrecision.BBOX

    def test_topmost_wins(self):
        masks = [
            ExistingMask("top", MaskKind.OBJECT, RECT),
            ExistingMask("object", MaskKind.OBJECT, RECT),
        ]
        hit = find_mask_under_cursor(200, 150, masks, self._cache())
        assert hit.mask_id == "top"

    def test_no_hit(self):
        masks = [ExistingMask("object", MaskKind.OBJECT, RECT)]
        assert find_mask_under_cursor(110, 60, masks, self._cache()) is None
        assert find_mask_under_cursor(5, 5, masks, self._cache()) is None


class TestRasterCache:
    def test_put_png_decodes_alpha(self):
        mask = np.zeros((20, 30), dtype=np.uint8)
        mask[5:10, 5:10] = 255
        cache = MaskRasterCache()
        alpha = cache.put_png("m", mask_to_data_url(mask))
        assert "m" in cache
        assert len(cache) == 1
        assert alpha.shape == (20, 30)
        assert cache.get("m")[7, 7] == 255

    def test_remove_and_clear(self):
        cache = MaskRasterCache()
        cache.put("a", _raster())
        cache.put("b", _raster())
        cache.remove("a")
        cache.remove("missing")
        assert "a" not in cache
        cache.clear()
        assert len(cache) == 0

    def test_rejects_color_raster(self):
        with pytest.raises(ValueError):
            MaskRasterCache().put("m", np.zeros((4, 4, 3), dtype=np.uint8))
