"""
Explicit segmentation context.

Owns the model session and the per-document embedding cache. Create one
per process (or per worker), pass it to whoever needs segmentation, and
close it when done. Each open document holds at most one set of
embeddings, replaced when the document's image changes and released when
the document closes.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterator, List, Optional, Sequence
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from smartselect.config import AutoSegmentConfig, Config, PostprocessConfig
from smartselect.core.contracts import AutoSegmentBatch, PointPrompt, SegmentResult
from smartselect.core.errors import EmbeddingsMissing
from .auto_generator import AutoSegmentGenerator, ProgressCallback
from .model_session import Embeddings, SegmentationModel
from .point_segmenter import PointPromptSegmenter


class SegmentationContext:
    """Model session plus embedding cache keyed by document id."""

    def __init__(
        self,
        model: SegmentationModel,
        postprocess: Optional[PostprocessConfig] = None,
        auto: Optional[AutoSegmentConfig] = None,
    ):
        self.model = model
        self.segmenter = PointPromptSegmenter(model, postprocess)
        self.auto_config = auto or AutoSegmentConfig()

        self._embeddings: Dict[str, Embeddings] = {}
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, config: Config) -> SegmentationContext:
        return cls(
            SegmentationModel.from_config(config),
            postprocess=config.postprocess,
            auto=config.auto,
        )

    def __enter__(self) -> SegmentationContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------------------------------------------------
    # Embedding cache
    # --------------------------------------------------------

    def compute_embeddings(self, document_id: str, image: NDArray[np.uint8]) -> Embeddings:
        """Encode the document's image, replacing any embeddings it already had."""
        self._ensure_open()
        embeddings = self.model.encode(image)
        with self._lock:
            replaced = self._embeddings.pop(document_id, None) is not None
            self._embeddings[document_id] = embeddings
        if replaced:
            logger.info(f"Replaced embeddings for document {document_id}")
        return embeddings

    def has_embeddings(self, document_id: str) -> bool:
        with self._lock:
            return document_id in self._embeddings

    def get_embeddings(self, document_id: str) -> Embeddings:
        """
        Raises:
            EmbeddingsMissing: If encode was never run for the document or
                its embeddings were released
        """
        with self._lock:
            embeddings = self._embeddings.get(document_id)
        if embeddings is None:
            raise EmbeddingsMissing(f"No embeddings for document {document_id}")
        return embeddings

    def release(self, document_id: str) -> bool:
        """Drop a document's embeddings. Returns False if there were none."""
        with self._lock:
            released = self._embeddings.pop(document_id, None) is not None
        if released:
            logger.info(f"Released embeddings for document {document_id}")
        return released

    @property
    def document_ids(self) -> List[str]:
        with self._lock:
            return list(self._embeddings)

    # --------------------------------------------------------
    # Segmentation
    # --------------------------------------------------------

    def segment_at_points(self, document_id: str, points: Sequence[PointPrompt]) -> SegmentResult:
        self._ensure_open()
        return self.segmenter.segment_at_points(self.get_embeddings(document_id), points)

    def generate_auto_segments(
        self,
        document_id: str,
        config: Optional[AutoSegmentConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Iterator[AutoSegmentBatch]:
        self._ensure_open()
        embeddings = self.get_embeddings(document_id)
        generator = AutoSegmentGenerator(self.segmenter, config or self.auto_config)
        return generator.generate(embeddings, on_progress=on_progress)

    def close(self) -> None:
        """Release every document's embeddings and the model runtime."""
        if self._closed:
            return
        with self._lock:
            count = len(self._embeddings)
            self._embeddings.clear()
        self.model.close()
        self._closed = True
        logger.info(f"Segmentation context closed ({count} document(s) released)")

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("SegmentationContext is closed")
