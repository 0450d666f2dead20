"""
Point-prompt segmentation service.

Turns cached embeddings plus a handful of positive/negative points into a
single clean full-resolution mask.
"""

from __future__ import annotations

import time
from typing import Optional, Sequence
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from smartselect.config import PostprocessConfig
from smartselect.core.contracts import PointPrompt, SegmentResult
from smartselect.core.errors import EmptyPointSet
from smartselect.raster.guided_filter import gaussian_blur_logits, refine_mask_edges
from smartselect.raster.morphology import (
    close_mask,
    keep_components_containing_points,
    mask_area,
    mask_bbox,
    snap_to_image_edges,
)
from .model_session import Embeddings, SegmentationModel


class PointPromptSegmenter:
    """
    Decode + post-processing pipeline.

    Pipeline order (each stage returns a new raster):
    1. Decode and pick the best candidate
    2. Gaussian-blur the candidate's logits at model resolution
    3. Bilinear upsample to image size and binarize
    4. Keep components under the positive points
    5. Close small gaps (optionally refine edges against the image)
    6. Snap frame-spanning masks to the image border
    7. Recompute bbox and area
    """

    def __init__(
        self,
        model: SegmentationModel,
        config: Optional[PostprocessConfig] = None,
    ):
        self.model = model
        self.config = config or PostprocessConfig()

    def segment_at_points(
        self,
        embeddings: Embeddings,
        points: Sequence[PointPrompt],
    ) -> SegmentResult:
        """
        Segment the object indicated by the points.

        Args:
            embeddings: Embeddings of the image being segmented
            points: One or more prompts in image pixels

        Returns:
            SegmentResult with a full-resolution 0/255 mask

        Raises:
            EmptyPointSet: If points is empty
            DecodeFailure: If the decoder fails or returns bad tensors
        """
        if not points:
            raise EmptyPointSet("segment_at_points needs at least one point")

        start_time = time.perf_counter()
        candidates = self.model.decode(embeddings, points)
        best = self.model.select(candidates)

        mask = self.postprocess(best.logits, embeddings, points)
        bbox = mask_bbox(mask)
        area = mask_area(mask)

        elapsed = (time.perf_counter() - start_time) * 1000
        logger.debug(
            f"Segmented {len(points)} point(s): candidate {best.index} "
            f"iou={best.iou_score:.3f} stability={best.stability_score:.3f} "
            f"area={area} in {elapsed:.1f}ms"
        )
        return SegmentResult(
            mask=mask,
            bbox=bbox,
            score=best.iou_score,
            stability_score=best.stability_score,
            area=area,
        )

    def postprocess(
        self,
        logits: NDArray[np.float32],
        embeddings: Embeddings,
        points: Sequence[PointPrompt],
    ) -> NDArray[np.uint8]:
        """Stages 2-6 of the pipeline on one candidate's cropped logits."""
        config = self.config
        size = embeddings.image_size

        blurred = gaussian_blur_logits(logits, config.logit_blur_sigma)
        upsampled = cv2.resize(blurred, (size.width, size.height), interpolation=cv2.INTER_LINEAR)
        mask = np.where(upsampled > config.mask_threshold, 255, 0).astype(np.uint8)

        # Negative points steer the decoder but never select components
        positive = [(p.x, p.y) for p in points if p.is_positive]
        mask = keep_components_containing_points(mask, positive)

        mask = close_mask(mask, config.close_radius)

        if config.refine_edges and embeddings.guide is not None:
            mask = refine_mask_edges(
                mask,
                embeddings.guide,
                radius=config.guided_radius,
                eps=config.guided_eps,
            )

        if config.snap_to_edges:
            mask = snap_to_image_edges(mask)

        return mask
