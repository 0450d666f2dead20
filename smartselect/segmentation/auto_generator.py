"""
Automatic segment generation.

Samples an evenly spaced grid of single positive points over the image,
segments each one, keeps only very confident masks and removes duplicates
with box-IoU non-maximal suppression.

Results stream out batch by batch:
- Sparse grid (8 x 8 by default) keeps the total cost to a few seconds
- Thresholds are stricter than interactive mode (nobody reviews the output)
- A batch only reports its own masks that survived suppression so far
"""

from __future__ import annotations

import math
import time
from typing import Callable, Iterator, List, Optional, Sequence
from loguru import logger

from smartselect.config import AutoSegmentConfig
from smartselect.core.contracts import (
    AutoSegmentBatch,
    AutoSegmentMask,
    ImageSize,
    PointLabel,
    PointPrompt,
    SegmentResult,
)
from smartselect.core.errors import SegmentationError
from .model_session import Embeddings
from .point_segmenter import PointPromptSegmenter


ProgressCallback = Callable[[float], None]


def generate_point_grid(image_size: ImageSize, points_per_side: int) -> List[PointPrompt]:
    """
    Row-major grid of positive prompts.

    Points sit at col * W / (n + 1) and row * H / (n + 1) for 1..n, so no
    point lies on the image border.
    """
    x_spacing = image_size.width / (points_per_side + 1)
    y_spacing = image_size.height / (points_per_side + 1)
    return [
        PointPrompt(x=col * x_spacing, y=row * y_spacing, label=PointLabel.POSITIVE)
        for row in range(1, points_per_side + 1)
        for col in range(1, points_per_side + 1)
    ]


def box_nms(masks: Sequence[AutoSegmentMask], iou_threshold: float) -> List[AutoSegmentMask]:
    """
    Greedy non-maximal suppression on bounding boxes.

    Masks are visited by descending score; one is kept only if its box IoU
    with every already-kept mask is at most iou_threshold.
    """
    keep: List[AutoSegmentMask] = []
    for mask in sorted(masks, key=lambda m: m.score, reverse=True):
        if all(mask.bbox.iou(kept.bbox) <= iou_threshold for kept in keep):
            keep.append(mask)
    return keep


class AutoSegmentGenerator:
    """
    Grid-sampling driver over PointPromptSegmenter.

    Usage:
        generator = AutoSegmentGenerator(segmenter, config)
        for batch in generator.generate(embeddings):
            show(batch.masks)
    """

    def __init__(
        self,
        segmenter: PointPromptSegmenter,
        config: Optional[AutoSegmentConfig] = None,
    ):
        self.segmenter = segmenter
        self.config = config or AutoSegmentConfig()

    def accepts(self, result: SegmentResult, image_area: int) -> bool:
        """Quality and size filter for a single point's result."""
        config = self.config
        if result.score < config.pred_iou_thresh:
            return False
        if result.stability_score < config.stability_score_thresh:
            return False

        area_ratio = result.area / image_area
        return config.min_mask_area_ratio <= area_ratio <= config.max_mask_area_ratio

    def generate(
        self,
        embeddings: Embeddings,
        image_size: Optional[ImageSize] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Iterator[AutoSegmentBatch]:
        """
        Lazily segment the grid, yielding one batch per group of points.

        Args:
            embeddings: Cached embeddings of the image
            image_size: Defaults to the embeddings' image size
            on_progress: Called with processed/total after every point

        Yields:
            AutoSegmentBatch holding this batch's surviving masks; batches
            with no surviving masks are skipped
        """
        config = self.config
        image_size = image_size or embeddings.image_size
        image_area = image_size.area

        grid = generate_point_grid(image_size, config.points_per_side)
        total_points = len(grid)
        batch_size = max(1, config.points_per_batch)
        total_batches = math.ceil(total_points / batch_size)

        logger.info(f"Starting auto-segmentation with {total_points} grid points")
        start_time = time.perf_counter()

        running: List[AutoSegmentMask] = []
        processed = 0
        failures = 0

        for batch_index in range(total_batches):
            batch_points = grid[batch_index * batch_size:(batch_index + 1) * batch_size]
            batch_masks: List[AutoSegmentMask] = []

            for point in batch_points:
                try:
                    result = self.segmenter.segment_at_points(embeddings, [point])
                except SegmentationError as e:
                    logger.warning(f"Auto-segment failed at ({point.x:.1f}, {point.y:.1f}): {e}")
                    failures += 1
                    result = None

                processed += 1
                if on_progress is not None:
                    on_progress(processed / total_points)

                if result is None or not self.accepts(result, image_area):
                    continue

                auto_mask = AutoSegmentMask(result=result, point=point, centroid=result.bbox.center)
                batch_masks.append(auto_mask)
                running.append(auto_mask)

            running = box_nms(running, config.box_nms_thresh)
            survivors = [m for m in batch_masks if any(m is kept for kept in running)]

            if survivors:
                yield AutoSegmentBatch(
                    masks=survivors,
                    batch_index=batch_index,
                    total_batches=total_batches,
                    processed_points=processed,
                    total_points=total_points,
                )

        elapsed = time.perf_counter() - start_time
        logger.info(
            f"Auto-segmentation complete: {len(running)} masks from {total_points} points "
            f"({failures} failed) in {elapsed:.1f}s"
        )

    def run(
        self,
        embeddings: Embeddings,
        image_size: Optional[ImageSize] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[AutoSegmentMask]:
        """Consume generate() fully and return every yielded mask."""
        masks: List[AutoSegmentMask] = []
        for batch in self.generate(embeddings, image_size, on_progress):
            masks.extend(batch.masks)
        return masks


def generate_auto_segments(
    segmenter: PointPromptSegmenter,
    embeddings: Embeddings,
    image_size: Optional[ImageSize] = None,
    config: Optional[AutoSegmentConfig] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> Iterator[AutoSegmentBatch]:
    """Functional form of AutoSegmentGenerator.generate."""
    return AutoSegmentGenerator(segmenter, config).generate(embeddings, image_size, on_progress)
