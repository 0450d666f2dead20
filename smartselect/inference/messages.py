"""
Request/response messages exchanged with the inference worker.

Every request carries a correlation id and every response echoes the id
of the request it answers. Masks inside responses use the PNG wire
format so a response can cross a process boundary unchanged.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional
import numpy as np
from numpy.typing import NDArray

from smartselect.config import AutoSegmentConfig
from smartselect.core.contracts import BoundingBox, MaskPayload, PointPrompt


_counter = itertools.count(1)
_counter_lock = threading.Lock()


def next_correlation_id() -> str:
    """Unique id of the form msg_{n}_{milliseconds}."""
    with _counter_lock:
        n = next(_counter)
    return f"msg_{n}_{int(time.time() * 1000)}"


# ============================================================
# REQUESTS
# ============================================================

@dataclass
class InitRequest:
    """Load model weights ahead of the first encode."""
    correlation_id: str = field(default_factory=next_correlation_id)


@dataclass
class ComputeEmbeddingsRequest:
    document_id: str
    image: NDArray[np.uint8]  # RGB, H x W x 3
    correlation_id: str = field(default_factory=next_correlation_id)


@dataclass
class SegmentAtPointsRequest:
    document_id: str
    points: List[PointPrompt]
    correlation_id: str = field(default_factory=next_correlation_id)


@dataclass
class AutoSegmentRequest:
    document_id: str
    config: Optional[AutoSegmentConfig] = None
    correlation_id: str = field(default_factory=next_correlation_id)


@dataclass
class ClearEmbeddingsRequest:
    document_id: str
    correlation_id: str = field(default_factory=next_correlation_id)


@dataclass
class ShutdownRequest:
    correlation_id: str = field(default_factory=next_correlation_id)


# ============================================================
# RESPONSES
# ============================================================

@dataclass
class ReadyResponse:
    correlation_id: str
    backend: str


@dataclass
class EmbeddingsReadyResponse:
    correlation_id: str
    document_id: str
    width: int
    height: int
    encode_time_ms: float = 0.0


@dataclass
class SegmentResponse:
    """A point-prompt result ready for preview or persistence."""
    correlation_id: str
    document_id: str
    payload: MaskPayload
    score: float
    stability_score: float
    area: int

    @property
    def bbox(self) -> BoundingBox:
        return self.payload.bbox


@dataclass
class AutoMaskPayload:
    payload: MaskPayload
    score: float
    stability_score: float
    area: int
    centroid: tuple
    point: PointPrompt


@dataclass
class AutoSegmentBatchResponse:
    correlation_id: str
    document_id: str
    masks: List[AutoMaskPayload]
    progress: float
    batch_index: int
    total_batches: int


@dataclass
class AutoSegmentProgressResponse:
    correlation_id: str
    progress: float


@dataclass
class AutoSegmentCompleteResponse:
    correlation_id: str
    document_id: str
    total_masks: int


@dataclass
class EmbeddingsClearedResponse:
    correlation_id: str
    document_id: str
    released: bool


@dataclass
class ErrorResponse:
    correlation_id: str
    kind: str  # SegmentationError.kind of the failure
    message: str
