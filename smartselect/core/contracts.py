"""
Core data contracts for the smartselect segmentation engine.

All components exchange these types so that:
- Masks stay immutable once produced
- Coordinates are unambiguous (image pixels vs. screen pixels)
- Scores travel with the raster they describe
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional, List, Dict, Any, Tuple
import numpy as np
from numpy.typing import NDArray


# ============================================================
# ENUMERATIONS
# ============================================================

class PointLabel(IntEnum):
    """Point prompt label, encoded the way the decoder expects it."""
    NEGATIVE = 0
    POSITIVE = 1


class MaskKind(Enum):
    """Kind of an existing rendered mask on the host surface."""
    TEXT = "text"
    OBJECT = "object"
    MANUAL = "manual"


class HitPrecision(Enum):
    """How precisely a cursor hit on an existing mask was resolved."""
    PIXEL = "pixel"
    BBOX = "bbox"


# ============================================================
# CORE DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class ImageSize:
    """Source image dimensions in pixels."""
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in source-image pixels, inclusive extent (w = maxX - minX + 1)."""
    x: int
    y: int
    w: int
    h: int

    @property
    def area(self) -> int:
        return self.w * self.h

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.w / 2, self.y + self.h / 2)

    @property
    def is_empty(self) -> bool:
        return self.w <= 0 or self.h <= 0

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x < self.x + self.w and self.y <= y < self.y + self.h

    def iou(self, other: BoundingBox) -> float:
        """Calculate Intersection over Union with another box."""
        x_left = max(self.x, other.x)
        y_top = max(self.y, other.y)
        x_right = min(self.x + self.w, other.x + other.w)
        y_bottom = min(self.y + self.h, other.y + other.h)

        if x_right <= x_left or y_bottom <= y_top:
            return 0.0

        intersection = (x_right - x_left) * (y_bottom - y_top)
        union = self.area + other.area - intersection

        return intersection / union if union > 0 else 0.0

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BoundingBox:
        return cls(int(data["x"]), int(data["y"]), int(data["w"]), int(data["h"]))


EMPTY_BBOX = BoundingBox(0, 0, 0, 0)


@dataclass(frozen=True)
class PointPrompt:
    """A point in source-image pixel coordinates guiding the decoder."""
    x: float
    y: float
    label: PointLabel = PointLabel.POSITIVE

    @property
    def is_positive(self) -> bool:
        return self.label == PointLabel.POSITIVE

    def to_dict(self) -> Dict[str, Any]:
        return {"x": self.x, "y": self.y, "label": int(self.label)}


@dataclass
class MaskCandidate:
    """
    One raw decoder output at model resolution.

    Candidates live only inside a single decode call; the logits are the
    valid (unpadded) crop of the model's low-resolution mask.
    """
    index: int
    logits: NDArray[np.float32]  # h x w, model resolution
    iou_score: float  # Model-reported
    stability_score: float = 0.0
    compactness: float = 0.0
    coverage: float = 0.0
    quality_score: float = 0.0


@dataclass(frozen=True)
class ScreenRect:
    """On-screen rectangle of a rendered mask, in screen pixels."""
    left: float
    top: float
    width: float
    height: float

    def contains(self, x: float, y: float) -> bool:
        return (
            self.left <= x <= self.left + self.width
            and self.top <= y <= self.top + self.height
        )


@dataclass(frozen=True)
class ExistingMask:
    """An already-rendered mask the cursor can land on."""
    mask_id: str
    kind: MaskKind
    screen_rect: ScreenRect


@dataclass(frozen=True)
class Modifiers:
    """Modifier-key state accompanying cursor and click input."""
    negative_point: bool = False

    @property
    def point_label(self) -> PointLabel:
        return PointLabel.NEGATIVE if self.negative_point else PointLabel.POSITIVE


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class MaskPayload:
    """
    Wire representation of a mask: PNG data URL plus bbox.

    The PNG has R=G=B=mask value and A=255 where the value is non-zero.
    """
    mask_png: str
    bbox: BoundingBox

    def to_dict(self) -> Dict[str, Any]:
        return {"mask_png": self.mask_png, "bbox": self.bbox.to_dict()}


@dataclass(frozen=True)
class SegmentResult:
    """Final mask chosen for a point prompt."""
    mask: NDArray[np.uint8]  # H x W, 0/255
    bbox: BoundingBox
    score: float
    stability_score: float
    area: int

    def __post_init__(self):
        # Results are shared between stages and threads; nobody writes to them.
        self.mask.flags.writeable = False

    @property
    def image_size(self) -> ImageSize:
        return ImageSize(width=self.mask.shape[1], height=self.mask.shape[0])


@dataclass(eq=False)
class AutoSegmentMask:
    """An accepted automatic mask with the grid prompt that produced it."""
    result: SegmentResult
    point: PointPrompt
    centroid: Tuple[float, float] = (0.0, 0.0)

    @property
    def bbox(self) -> BoundingBox:
        return self.result.bbox

    @property
    def score(self) -> float:
        return self.result.score


@dataclass
class AutoSegmentBatch:
    """Masks from one batch of grid points that survived suppression."""
    masks: List[AutoSegmentMask]
    batch_index: int
    total_batches: int
    processed_points: int
    total_points: int
    progress: float = 0.0  # processed / total points

    def __post_init__(self):
        if self.total_points > 0 and not self.progress:
            self.progress = self.processed_points / self.total_points


@dataclass(frozen=True)
class MaskHit:
    """Result of resolving the cursor against existing masks."""
    mask_id: str
    kind: MaskKind
    precision: HitPrecision
