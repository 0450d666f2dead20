"""
Asyncio client for the inference worker.

Turns the worker's callback-style responses into awaitables on the
caller's event loop. Each request gets a future keyed by its correlation
id; a response resolves the matching future. Requests that outlive their
time budget raise RequestTimeout, and a response arriving later for such
a request is dropped.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Dict, Optional, Sequence, Set, Union
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from smartselect.config import AutoSegmentConfig, SelectionConfig
from smartselect.core.contracts import PointPrompt
from smartselect.core.errors import EmptyPointSet, RequestTimeout, error_from_kind
from smartselect.segmentation.context import SegmentationContext
from .messages import (
    AutoSegmentBatchResponse,
    AutoSegmentCompleteResponse,
    AutoSegmentProgressResponse,
    AutoSegmentRequest,
    ClearEmbeddingsRequest,
    ComputeEmbeddingsRequest,
    EmbeddingsReadyResponse,
    ErrorResponse,
    InitRequest,
    ReadyResponse,
    SegmentAtPointsRequest,
    SegmentResponse,
)
from .worker import InferenceWorker


class InferenceClient:
    """
    Request/response bridge between an event loop and an InferenceWorker.

    Usage:
        client = InferenceClient(context)
        client.start()                      # inside a running event loop
        await client.compute_embeddings("doc-1", image)
        response = await client.segment_at_points("doc-1", points)
        await client.close()
    """

    def __init__(
        self,
        context: SegmentationContext,
        config: Optional[SelectionConfig] = None,
    ):
        self.context = context
        self.config = config or SelectionConfig()

        self._worker = InferenceWorker(context, on_response=self._on_worker_response)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[str, Union[asyncio.Future, asyncio.Queue]] = {}
        self._ready_documents: Set[str] = set()
        self._embedding_tasks: Dict[str, asyncio.Future] = {}

    def start(self) -> None:
        """Bind to the running event loop and start the worker thread."""
        self._loop = asyncio.get_running_loop()
        self._worker.start()

    async def close(self) -> None:
        """Stop the worker and fail any request still waiting."""
        await asyncio.get_running_loop().run_in_executor(None, self._worker.stop)
        for correlation_id, waiter in list(self._pending.items()):
            if isinstance(waiter, asyncio.Future) and not waiter.done():
                waiter.cancel()
        self._pending.clear()
        self._ready_documents.clear()
        logger.info("Inference client closed")

    # --------------------------------------------------------
    # Public API
    # --------------------------------------------------------

    async def initialize(self) -> ReadyResponse:
        return await self._request(InitRequest(), self.config.embeddings_timeout_s)

    def is_ready(self, document_id: str) -> bool:
        """True once embeddings for the document are cached by the worker."""
        return document_id in self._ready_documents

    async def compute_embeddings(
        self,
        document_id: str,
        image: NDArray[np.uint8],
        force: bool = False,
    ) -> None:
        """
        Make sure the document has embeddings.

        Concurrent calls for the same document share one encode; an
        already-ready document is not re-encoded unless force is set.
        """
        if self.is_ready(document_id) and not force:
            return

        task = self._embedding_tasks.get(document_id)
        if task is None or task.done():
            request = ComputeEmbeddingsRequest(document_id, image)
            task = asyncio.ensure_future(self._request(request, self.config.embeddings_timeout_s))
            self._embedding_tasks[document_id] = task

        try:
            response: EmbeddingsReadyResponse = await asyncio.shield(task)
        finally:
            if task.done() and self._embedding_tasks.get(document_id) is task:
                del self._embedding_tasks[document_id]

        self._ready_documents.add(document_id)
        logger.info(
            f"Embeddings ready for {document_id} ({response.width}x{response.height}, "
            f"{response.encode_time_ms:.0f}ms)"
        )

    async def segment_at_points(
        self,
        document_id: str,
        points: Sequence[PointPrompt],
    ) -> SegmentResponse:
        """
        Raises:
            EmptyPointSet: Before anything is sent, if points is empty
            RequestTimeout: If the worker does not answer in time
            DecodeFailure / InvalidModelOutput / EmbeddingsMissing: As reported by the worker
        """
        if not points:
            raise EmptyPointSet("segment_at_points needs at least one point")
        request = SegmentAtPointsRequest(document_id, list(points))
        return await self._request(request, self.config.segment_timeout_s)

    async def clear_embeddings(self, document_id: str) -> bool:
        self._ready_documents.discard(document_id)
        response = await self._request(
            ClearEmbeddingsRequest(document_id), self.config.segment_timeout_s
        )
        return response.released

    async def auto_segment(
        self,
        document_id: str,
        config: Optional[AutoSegmentConfig] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> AsyncIterator[AutoSegmentBatchResponse]:
        """Stream automatic segmentation batches as the worker produces them."""
        request = AutoSegmentRequest(document_id, config)
        responses: asyncio.Queue = asyncio.Queue()
        self._pending[request.correlation_id] = responses
        try:
            self._worker.submit(request)
            while True:
                try:
                    response = await asyncio.wait_for(
                        responses.get(), self.config.auto_segment_timeout_s
                    )
                except asyncio.TimeoutError:
                    raise RequestTimeout(
                        f"Auto-segment {request.correlation_id} stalled"
                    ) from None

                if isinstance(response, ErrorResponse):
                    raise error_from_kind(response.kind, response.message)
                if isinstance(response, AutoSegmentProgressResponse):
                    if on_progress is not None:
                        on_progress(response.progress)
                    continue
                if isinstance(response, AutoSegmentCompleteResponse):
                    break
                yield response
        finally:
            self._pending.pop(request.correlation_id, None)

    # --------------------------------------------------------
    # Plumbing
    # --------------------------------------------------------

    async def _request(self, request, timeout: float):
        if self._loop is None:
            raise RuntimeError("InferenceClient.start() was not called")

        future = self._loop.create_future()
        self._pending[request.correlation_id] = future
        try:
            self._worker.submit(request)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{type(request).__name__} {request.correlation_id} timed out after {timeout}s"
            )
            raise RequestTimeout(f"No response within {timeout}s") from None
        finally:
            self._pending.pop(request.correlation_id, None)

    def _on_worker_response(self, response) -> None:
        """Called on the worker thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning(f"Dropping {type(response).__name__}: event loop is gone")
            return
        loop.call_soon_threadsafe(self._dispatch, response)

    def _dispatch(self, response) -> None:
        waiter = self._pending.get(response.correlation_id)
        if waiter is None:
            logger.warning(
                f"Late {type(response).__name__} for {response.correlation_id}, ignoring"
            )
            return

        if isinstance(waiter, asyncio.Queue):
            waiter.put_nowait(response)
            return

        if waiter.done():
            return
        if isinstance(response, ErrorResponse):
            waiter.set_exception(error_from_kind(response.kind, response.message))
        else:
            waiter.set_result(response)
