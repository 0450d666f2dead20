"""
Pixel-accurate hit testing against rendered masks.

Each rendered mask has an on-screen rectangle and, once loaded, a cached
alpha raster. A cursor is over the mask when the raster pixel under it
is opaque. Until the raster is loaded the mask's rectangle stands in for
it, so the UI does not flicker while rasters decode.
"""

from __future__ import annotations

import math
import threading
from typing import Dict, Iterable, Optional
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from smartselect.core.contracts import ExistingMask, HitPrecision, MaskHit, MaskKind, ScreenRect
from smartselect.raster.codec import data_url_to_alpha


DEFAULT_ALPHA_THRESHOLD = 10


class MaskRasterCache:
    """Alpha rasters of rendered masks, keyed by mask id."""

    def __init__(self):
        self._rasters: Dict[str, NDArray[np.uint8]] = {}
        self._lock = threading.Lock()

    def put(self, mask_id: str, alpha: NDArray[np.uint8]) -> None:
        if alpha.ndim != 2:
            raise ValueError(f"Alpha raster must be 2-D, got shape {alpha.shape}")
        with self._lock:
            self._rasters[mask_id] = alpha

    def put_png(self, mask_id: str, data_url: str) -> NDArray[np.uint8]:
        """Decode a wire-format PNG and cache its alpha channel."""
        alpha = data_url_to_alpha(data_url)
        self.put(mask_id, alpha)
        logger.debug(f"Cached {alpha.shape[1]}x{alpha.shape[0]} raster for mask {mask_id}")
        return alpha

    def get(self, mask_id: str) -> Optional[NDArray[np.uint8]]:
        with self._lock:
            return self._rasters.get(mask_id)

    def remove(self, mask_id: str) -> None:
        with self._lock:
            self._rasters.pop(mask_id, None)

    def clear(self) -> None:
        with self._lock:
            self._rasters.clear()

    def __contains__(self, mask_id: str) -> bool:
        with self._lock:
            return mask_id in self._rasters

    def __len__(self) -> int:
        with self._lock:
            return len(self._rasters)


def is_point_over_mask(
    x: float,
    y: float,
    rect: ScreenRect,
    raster: Optional[NDArray[np.uint8]],
    alpha_threshold: int = DEFAULT_ALPHA_THRESHOLD,
) -> bool:
    """
    Test whether a screen point lands on an opaque pixel of a mask.

    Args:
        x, y: Screen coordinates
        rect: The mask's on-screen rectangle
        raster: Cached alpha raster, or None if not loaded yet
        alpha_threshold: Alpha must exceed this to count as a hit

    Returns:
        True on an opaque pixel, or when no raster is cached yet
    """
    if raster is None:
        return True
    if rect.width <= 0 or rect.height <= 0:
        return False

    raster_h, raster_w = raster.shape[:2]
    scale_x = raster_w / rect.width
    scale_y = raster_h / rect.height
    data_x = math.floor((x - rect.left) * scale_x)
    data_y = math.floor((y - rect.top) * scale_y)

    if data_x < 0 or data_x >= raster_w or data_y < 0 or data_y >= raster_h:
        return False

    return int(raster[data_y, data_x]) > alpha_threshold


def find_mask_under_cursor(
    x: float,
    y: float,
    masks: Iterable[ExistingMask],
    cache: MaskRasterCache,
    alpha_threshold: int = DEFAULT_ALPHA_THRESHOLD,
) -> Optional[MaskHit]:
    """
    Resolve the cursor against existing masks, topmost first.

    Text masks are hit by rectangle only. Object and manual masks with a
    cached raster need an opaque pixel; a transparent pixel lets the
    search continue to masks underneath. Masks without a cached raster
    are hit by rectangle.
    """
    for mask in masks:
        if not mask.screen_rect.contains(x, y):
            continue

        if mask.kind == MaskKind.TEXT:
            return MaskHit(mask.mask_id, mask.kind, HitPrecision.BBOX)

        raster = cache.get(mask.mask_id)
        if raster is None:
            return MaskHit(mask.mask_id, mask.kind, HitPrecision.BBOX)

        if is_point_over_mask(x, y, mask.screen_rect, raster, alpha_threshold):
            return MaskHit(mask.mask_id, mask.kind, HitPrecision.PIXEL)

    return None
