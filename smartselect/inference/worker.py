"""
Background inference worker.

Runs all encode/decode work on a dedicated thread so the interaction loop
never blocks on the model. Requests arrive through a queue; responses go
out through a callback, tagged with the request's correlation id.

A single worker is a single decode slot: interactive segmentation and
automatic generation for the same process are serialized here.
"""

from __future__ import annotations

import threading
import time
from queue import Queue
from typing import Callable, Optional
from loguru import logger

from smartselect.core.errors import (
    EmbeddingComputeFailure,
    SegmentationError,
)
from smartselect.raster.codec import mask_to_payload
from smartselect.segmentation.context import SegmentationContext
from .messages import (
    AutoMaskPayload,
    AutoSegmentBatchResponse,
    AutoSegmentCompleteResponse,
    AutoSegmentProgressResponse,
    AutoSegmentRequest,
    ClearEmbeddingsRequest,
    ComputeEmbeddingsRequest,
    EmbeddingsClearedResponse,
    EmbeddingsReadyResponse,
    ErrorResponse,
    InitRequest,
    ReadyResponse,
    SegmentAtPointsRequest,
    SegmentResponse,
    ShutdownRequest,
)


ResponseCallback = Callable[[object], None]


class InferenceWorker:
    """Thread draining a request queue against a SegmentationContext.

    Usage:
        worker = InferenceWorker(context, on_response=handle)
        worker.start()
        worker.submit(ComputeEmbeddingsRequest("doc-1", image))
        ...
        worker.stop()
    """

    def __init__(self, context: SegmentationContext, on_response: ResponseCallback):
        """Initialize the worker.

        Args:
            context: Model session and embedding cache used by the thread
            on_response: Called from the worker thread with every response
        """
        self.context = context
        self.on_response = on_response

        # Threading
        self.requests: Queue = Queue()
        self.running = False
        self.thread: Optional[threading.Thread] = None

        self._handlers = {
            InitRequest: self._handle_init,
            ComputeEmbeddingsRequest: self._handle_compute_embeddings,
            SegmentAtPointsRequest: self._handle_segment,
            AutoSegmentRequest: self._handle_auto_segment,
            ClearEmbeddingsRequest: self._handle_clear,
        }

    def start(self) -> None:
        """Start the processing thread."""
        if self.running:
            return
        self.running = True
        self.thread = threading.Thread(target=self._worker, name="smartselect-inference", daemon=True)
        self.thread.start()
        logger.info("Inference worker started")

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the processing thread after the current request."""
        if not self.running:
            return
        self.running = False
        self.requests.put(ShutdownRequest())
        if self.thread:
            self.thread.join(timeout=timeout)
        logger.info("Inference worker stopped")

    def submit(self, request) -> str:
        """Queue a request and return its correlation id."""
        if not self.running:
            raise RuntimeError("Inference worker is not running")
        self.requests.put(request)
        return request.correlation_id

    def _worker(self) -> None:
        while True:
            request = self.requests.get()
            if isinstance(request, ShutdownRequest):
                break
            self.handle(request)

    def handle(self, request) -> None:
        """Process one request on the calling thread, emitting its responses."""
        handler = self._handlers.get(type(request))
        if handler is None:
            self._emit(ErrorResponse(
                request.correlation_id,
                SegmentationError.kind,
                f"Unknown request type {type(request).__name__}",
            ))
            return

        try:
            handler(request)
        except SegmentationError as e:
            logger.warning(f"{type(request).__name__} {request.correlation_id} failed: {e}")
            self._emit(ErrorResponse(request.correlation_id, e.kind, str(e)))
        except Exception as e:
            logger.exception(f"Unexpected error handling {type(request).__name__}")
            kind = (
                EmbeddingComputeFailure.kind
                if isinstance(request, (InitRequest, ComputeEmbeddingsRequest))
                else SegmentationError.kind
            )
            self._emit(ErrorResponse(request.correlation_id, kind, str(e)))

    def _emit(self, response) -> None:
        self.on_response(response)

    # --------------------------------------------------------
    # Handlers
    # --------------------------------------------------------

    def _handle_init(self, request: InitRequest) -> None:
        self.context.model.backend.load()
        self._emit(ReadyResponse(request.correlation_id, self.context.model.backend.name))

    def _handle_compute_embeddings(self, request: ComputeEmbeddingsRequest) -> None:
        embeddings = self.context.compute_embeddings(request.document_id, request.image)
        self._emit(EmbeddingsReadyResponse(
            correlation_id=request.correlation_id,
            document_id=request.document_id,
            width=embeddings.image_size.width,
            height=embeddings.image_size.height,
            encode_time_ms=embeddings.encode_time_ms,
        ))

    def _handle_segment(self, request: SegmentAtPointsRequest) -> None:
        result = self.context.segment_at_points(request.document_id, request.points)
        self._emit(SegmentResponse(
            correlation_id=request.correlation_id,
            document_id=request.document_id,
            payload=mask_to_payload(result.mask),
            score=result.score,
            stability_score=result.stability_score,
            area=result.area,
        ))

    def _handle_auto_segment(self, request: AutoSegmentRequest) -> None:
        start_time = time.perf_counter()
        total = 0

        def report_progress(progress: float) -> None:
            self._emit(AutoSegmentProgressResponse(request.correlation_id, progress))

        batches = self.context.generate_auto_segments(
            request.document_id,
            request.config,
            on_progress=report_progress,
        )
        for batch in batches:
            masks = [
                AutoMaskPayload(
                    payload=mask_to_payload(m.result.mask),
                    score=m.score,
                    stability_score=m.result.stability_score,
                    area=m.result.area,
                    centroid=m.centroid,
                    point=m.point,
                )
                for m in batch.masks
            ]
            total += len(masks)
            self._emit(AutoSegmentBatchResponse(
                correlation_id=request.correlation_id,
                document_id=request.document_id,
                masks=masks,
                progress=batch.progress,
                batch_index=batch.batch_index,
                total_batches=batch.total_batches,
            ))

        self._emit(AutoSegmentCompleteResponse(request.correlation_id, request.document_id, total))
        logger.info(
            f"Auto-segment for {request.document_id}: {total} masks in "
            f"{time.perf_counter() - start_time:.1f}s"
        )

    def _handle_clear(self, request: ClearEmbeddingsRequest) -> None:
        released = self.context.release(request.document_id)
        self._emit(EmbeddingsClearedResponse(request.correlation_id, request.document_id, released))
