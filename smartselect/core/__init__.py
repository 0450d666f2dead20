"""
Core contracts shared by every smartselect component.

- Data model (masks, prompts, candidates, results, batches)
- Error taxonomy and failure reporting
"""

from .contracts import (
    BoundingBox,
    ImageSize,
    PointPrompt,
    PointLabel,
    MaskCandidate,
    SegmentResult,
    MaskPayload,
    AutoSegmentMask,
    AutoSegmentBatch,
    ExistingMask,
    MaskKind,
    ScreenRect,
    HitPrecision,
    MaskHit,
    Modifiers,
)
from .errors import (
    SegmentationError,
    EmbeddingComputeFailure,
    EmbeddingsMissing,
    DecodeFailure,
    RequestTimeout,
    InvalidModelOutput,
    EmptyPointSet,
    ErrorReporter,
    ErrorSeverity,
    MLError,
)
