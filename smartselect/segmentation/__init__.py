"""
Segmentation module.

Responsibilities:
- Encode/decode model session with candidate quality scoring
- Point-prompt mask pipeline
- Automatic grid segmentation with box NMS
- Per-document embedding cache
"""

from .model_session import (
    SegmentationModel,
    ModelBackend,
    OnnxModelBackend,
    Embeddings,
    ResizeInfo,
    preprocess_image,
    select_best_candidate,
    validate_environment,
)
from .point_segmenter import PointPromptSegmenter
from .auto_generator import AutoSegmentGenerator, generate_auto_segments, generate_point_grid, box_nms
from .context import SegmentationContext
