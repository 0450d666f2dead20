"""
Binary mask raster operations.

Handles:
- Dilation / erosion / opening / closing with square windows
- 4-connected component analysis
- Speck removal and hole filling
- Point-driven component selection
- Snapping frame-spanning masks to the image border

Masks are H x W uint8 arrays holding 0 or 255. Every function returns a
new array and leaves its input untouched.
"""

from __future__ import annotations

import math
from typing import Dict, Optional, Sequence, Set, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from scipy import ndimage

from smartselect.core.contracts import BoundingBox, EMPTY_BBOX


Point = Tuple[float, float]


def as_binary(mask: NDArray) -> NDArray[np.uint8]:
    """Normalize any array to a 0/255 uint8 mask."""
    return np.where(np.asarray(mask) > 0, 255, 0).astype(np.uint8)


def invert_mask(mask: NDArray[np.uint8]) -> NDArray[np.uint8]:
    return np.where(mask > 0, 0, 255).astype(np.uint8)


def combine_masks(masks: Sequence[NDArray[np.uint8]]) -> NDArray[np.uint8]:
    """Union of several same-sized masks."""
    if not masks:
        raise ValueError("combine_masks needs at least one mask")
    combined = np.zeros(masks[0].shape, dtype=bool)
    for mask in masks:
        combined |= mask > 0
    return combined.astype(np.uint8) * 255


def mask_area(mask: NDArray[np.uint8]) -> int:
    """Number of foreground pixels."""
    return int(np.count_nonzero(mask))


def mask_bbox(mask: NDArray[np.uint8]) -> BoundingBox:
    """Tight bounding box; (0, 0, 0, 0) for an empty mask."""
    rows = np.any(mask > 0, axis=1)
    cols = np.any(mask > 0, axis=0)
    if not rows.any():
        return EMPTY_BBOX

    y_min, y_max = np.flatnonzero(rows)[[0, -1]]
    x_min, x_max = np.flatnonzero(cols)[[0, -1]]
    return BoundingBox(
        x=int(x_min),
        y=int(y_min),
        w=int(x_max - x_min + 1),
        h=int(y_max - y_min + 1),
    )


# ============================================================
# MORPHOLOGY
# ============================================================

def _line_kernels(radius: int) -> Tuple[NDArray[np.uint8], NDArray[np.uint8]]:
    size = 2 * radius + 1
    return np.ones((1, size), np.uint8), np.ones((size, 1), np.uint8)


def dilate(mask: NDArray[np.uint8], radius: int) -> NDArray[np.uint8]:
    """
    Grow the mask by a (2r+1) square window.

    Runs as a horizontal pass then a vertical pass. Pixels outside the
    image count as background.
    """
    binary = as_binary(mask)
    if radius <= 0:
        return binary
    horizontal, vertical = _line_kernels(radius)
    out = cv2.dilate(binary, horizontal)
    return cv2.dilate(out, vertical)


def erode(mask: NDArray[np.uint8], radius: int = 1) -> NDArray[np.uint8]:
    """
    Shrink the mask by a (2r+1) square window.

    The window is clamped to the image, so foreground touching the border
    is not eaten away by the border itself.
    """
    binary = as_binary(mask)
    if radius <= 0:
        return binary
    horizontal, vertical = _line_kernels(radius)
    out = cv2.erode(binary, horizontal)
    return cv2.erode(out, vertical)


def close_mask(mask: NDArray[np.uint8], radius: int = 2) -> NDArray[np.uint8]:
    """Dilate then erode: seals gaps and small holes."""
    return erode(dilate(mask, radius), radius)


def open_mask(mask: NDArray[np.uint8], radius: int = 2) -> NDArray[np.uint8]:
    """Erode then dilate: removes specks and thin protrusions."""
    return dilate(erode(mask, radius), radius)


# ============================================================
# CONNECTED COMPONENTS
# ============================================================

def connected_components(mask: NDArray[np.uint8]) -> Tuple[NDArray[np.int32], int]:
    """
    Label 4-connected foreground components.

    Returns:
        (labels, count) where labels is 0 for background and 1..count
        for components.
    """
    # scipy's default 2-D structuring element is the 4-neighbour cross
    labels, count = ndimage.label(mask > 0)
    return labels.astype(np.int32), int(count)


def component_areas(labels: NDArray[np.int32], count: int) -> NDArray[np.int64]:
    """Pixel count per label, index 0 being the background."""
    return np.bincount(labels.ravel(), minlength=count + 1)


def remove_small_components(mask: NDArray[np.uint8], min_area: int = 50) -> NDArray[np.uint8]:
    """Delete components smaller than min_area pixels."""
    labels, count = connected_components(mask)
    if count == 0:
        return as_binary(mask)

    keep = component_areas(labels, count) >= min_area
    keep[0] = False
    return keep[labels].astype(np.uint8) * 255


def fill_holes(mask: NDArray[np.uint8], min_hole_area: int = 30) -> NDArray[np.uint8]:
    """Fill background regions smaller than min_hole_area."""
    inverted = invert_mask(mask)
    inverted = remove_small_components(inverted, min_hole_area)
    return invert_mask(inverted)


def keep_components_containing_points(
    mask: NDArray[np.uint8],
    points: Sequence[Point],
) -> NDArray[np.uint8]:
    """
    Keep only the components that contain at least one of the points.

    Points are rounded to the nearest pixel. If no point lands on a
    component the single largest component is kept instead, so the
    output is never empty for a non-empty mask.
    """
    labels, count = connected_components(mask)
    if count <= 1:
        return as_binary(mask)

    height, width = labels.shape
    keep_ids = set()
    for x, y in points:
        px, py = int(round(x)), int(round(y))
        if 0 <= px < width and 0 <= py < height and labels[py, px] > 0:
            keep_ids.add(int(labels[py, px]))

    if not keep_ids:
        areas = component_areas(labels, count)
        areas[0] = -1
        keep_ids.add(int(np.argmax(areas)))

    return np.isin(labels, list(keep_ids)).astype(np.uint8) * 255


def largest_component_share(mask: NDArray[np.uint8]) -> float:
    """
    Fraction of the foreground held by the largest component.

    A share near 1.0 indicates a single solid object; low values flag
    fragmented output.
    """
    labels, count = connected_components(mask)
    if count == 0:
        return 0.0
    areas = component_areas(labels, count)[1:]
    return float(areas.max() / areas.sum())


def smooth_mask(
    mask: NDArray[np.uint8],
    min_component_area: Optional[int] = None,
    min_hole_area: Optional[int] = None,
    closing_radius: int = 3,
    erode_after_close: int = 1,
) -> NDArray[np.uint8]:
    """
    Cleanup pipeline producing a solid mask.

    Operations:
    1. Remove small exterior components (specks)
    2. Fill small interior holes
    3. Morphological closing
    4. Light erosion to undo growth from the closing

    Area thresholds default to values scaled by the image size.
    """
    height, width = mask.shape[:2]
    scale = math.sqrt(width * height) / 1000
    if min_component_area is None:
        min_component_area = max(50, math.floor(200 * scale))
    if min_hole_area is None:
        min_hole_area = max(30, math.floor(100 * scale))

    result = remove_small_components(mask, min_component_area)
    result = fill_holes(result, min_hole_area)
    if closing_radius > 0:
        result = close_mask(result, closing_radius)
    if erode_after_close > 0:
        result = erode(result, erode_after_close)
    return result


# ============================================================
# EDGE SNAPPING
# ============================================================

def _eligible_bands(
    binary: NDArray[np.uint8],
    bands: Dict[str, Tuple[slice, slice]],
    edge_margin: int,
    coverage_threshold: float,
) -> Tuple[Set[str], Dict[str, float]]:
    height, width = binary.shape
    area_ratio = mask_area(binary) / float(width * height)

    bbox = mask_bbox(binary)
    touches = {
        "top": bbox.y <= edge_margin,
        "bottom": bbox.y + bbox.h >= height - edge_margin,
        "left": bbox.x <= edge_margin,
        "right": bbox.x + bbox.w >= width - edge_margin,
    }

    coverage = {
        name: float(np.count_nonzero(binary[region])) / binary[region].size
        for name, region in bands.items()
    }

    eligible = {
        name for name in bands
        if coverage[name] >= coverage_threshold
        or (area_ratio >= 0.7 and coverage[name] >= coverage_threshold * 0.75)
        or (touches[name] and coverage[name] >= 0.4)
    }
    return eligible, coverage


def snap_to_image_edges(
    mask: NDArray[np.uint8],
    edge_margin: Optional[int] = None,
    coverage_threshold: float = 0.65,
    min_area_ratio: float = 0.45,
) -> NDArray[np.uint8]:
    """
    Force the border bands of a frame-spanning mask fully opaque.

    Large background-like masks tend to have ragged edges along the image
    border. When enough border bands are already mostly covered, those
    bands are filled and the result is closed with radius 1. Small masks
    are returned unchanged.

    Filling one band raises the corner coverage of its neighbours, so
    eligibility is re-evaluated on the filled result until the set of
    snapped bands stops growing. Snapping an already snapped mask is a no-op.

    Args:
        mask: Binary mask (H x W)
        edge_margin: Band thickness; defaults to 2% of the shorter side, at least 3px
        coverage_threshold: Band coverage needed to count as eligible
        min_area_ratio: Masks covering less of the image are never snapped

    Returns:
        Snapped mask, or a copy of the input if no snapping applies
    """
    binary = as_binary(mask)
    height, width = binary.shape
    area_ratio = mask_area(binary) / float(width * height)
    if area_ratio < min_area_ratio:
        return binary

    if edge_margin is None:
        edge_margin = max(3, int(round(min(width, height) * 0.02)))
    margin_y = min(edge_margin, height)
    margin_x = min(edge_margin, width)

    bands = {
        "top": (slice(0, margin_y), slice(0, width)),
        "bottom": (slice(height - margin_y, height), slice(0, width)),
        "left": (slice(0, height), slice(0, margin_x)),
        "right": (slice(0, height), slice(width - margin_x, width)),
    }

    eligible, coverage = _eligible_bands(binary, bands, edge_margin, coverage_threshold)
    average_coverage = sum(coverage.values()) / len(coverage)
    should_snap = (
        len(eligible) >= 3
        or (len(eligible) >= 2 and area_ratio >= 0.65)
        or (average_coverage >= coverage_threshold and area_ratio >= min_area_ratio)
    )
    if not should_snap:
        return binary

    # Each pass either adds a band or stops
    while True:
        snapped = binary.copy()
        for name in eligible:
            snapped[bands[name]] = 255
        snapped = close_mask(snapped, 1)

        grown, _ = _eligible_bands(snapped, bands, edge_margin, coverage_threshold)
        if grown <= eligible:
            break
        eligible |= grown

    return snapped
