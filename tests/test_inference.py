import asyncio
import re
import time

import numpy as np
import pytest

from smartselect.config import AutoSegmentConfig, PostprocessConfig, SelectionConfig
from smartselect.core.contracts import BoundingBox, PointPrompt
from smartselect.core.errors import EmbeddingsMissing, EmptyPointSet, RequestTimeout
from smartselect.inference.client import InferenceClient
from smartselect.inference.messages import (
    ClearEmbeddingsRequest,
    ComputeEmbeddingsRequest,
    EmbeddingsClearedResponse,
    EmbeddingsReadyResponse,
    ErrorResponse,
    SegmentAtPointsRequest,
    SegmentResponse,
    ShutdownRequest,
    next_correlation_id,
)
from smartselect.inference.worker import InferenceWorker
from smartselect.interaction.selection import SelectionController, SelectionHost
from smartselect.raster.codec import payload_to_mask
from smartselect.segmentation.context import SegmentationContext

from conftest import FakeBackend, make_model


OBJECTS = [(40, 40, 116, 116), (140, 140, 220, 220)]
FIRST_OBJECT = BoundingBox(40, 40, 76, 76)


def _context(backend=None):
    backend = backend or FakeBackend(objects=OBJECTS)
    return SegmentationContext(
        make_model(backend),
        postprocess=PostprocessConfig(logit_blur_sigma=0.0),
        auto=AutoSegmentConfig(points_per_side=4, points_per_batch=4),
    )


def test_correlation_ids_are_unique():
    ids = {next_correlation_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(re.fullmatch(r"msg_\d+_\d+", i) for i in ids)


class TestWorker:
    def _worker(self, context):
        responses = []
        return InferenceWorker(context, on_response=responses.append), responses

    def test_embeddings_then_segment(self, rgb_image):
        worker, responses = self._worker(_context())
        worker.handle(ComputeEmbeddingsRequest("doc", rgb_image))
        request = SegmentAtPointsRequest("doc", [PointPrompt(60, 60)])
        worker.handle(request)

        ready, segmented = responses
        assert isinstance(ready, EmbeddingsReadyResponse)
        assert (ready.width, ready.height) == (256, 256)
        assert isinstance(segmented, SegmentResponse)
        assert segmented.correlation_id == request.correlation_id
        assert segmented.bbox == FIRST_OBJECT
        assert segmented.area == 76 * 76
        assert np.count_nonzero(payload_to_mask(segmented.payload)) == 76 * 76

    def test_missing_embeddings_become_error_response(self):
        worker, responses = self._worker(_context())
        worker.handle(SegmentAtPointsRequest("nope", [PointPrompt(1, 1)]))
        assert isinstance(responses[0], ErrorResponse)
        assert responses[0].kind == "embeddings_missing"

    def test_unexpected_errors_are_classified(self, rgb_image):
        context = _context()
        context.close()
        worker, responses = self._worker(context)
        worker.handle(ComputeEmbeddingsRequest("doc", rgb_image))
        worker.handle(SegmentAtPointsRequest("doc", [PointPrompt(1, 1)]))
        assert [r.kind for r in responses] == ["embedding_compute_failure", "segmentation_error"]

    def test_unknown_request_type(self):
        worker, responses = self._worker(_context())
        worker.handle(ShutdownRequest())
        assert responses[0].kind == "segmentation_error"

    def test_clear_reports_whether_anything_was_released(self, rgb_image):
        worker, responses = self._worker(_context())
        worker.handle(ComputeEmbeddingsRequest("doc", rgb_image))
        worker.handle(ClearEmbeddingsRequest("doc"))
        worker.handle(ClearEmbeddingsRequest("doc"))
        cleared = [r for r in responses if isinstance(r, EmbeddingsClearedResponse)]
        assert [r.released for r in cleared] == [True, False]

    def test_submit_requires_running_worker(self):
        worker, _ = self._worker(_context())
        with pytest.raises(RuntimeError):
            worker.submit(ClearEmbeddingsRequest("doc"))


class TestClient:
    def test_round_trip(self, rgb_image):
        backend = FakeBackend(objects=OBJECTS)

        async def scenario():
            client = InferenceClient(_context(backend))
            client.start()
            try:
                ready = await client.initialize()
                assert ready.backend == "fake"
                assert backend.loaded

                assert not client.is_ready("doc")
                await client.compute_embeddings("doc", rgb_image)
                assert client.is_ready("doc")
                await client.compute_embeddings("doc", rgb_image)
                assert backend.encode_calls == 1

                response = await client.segment_at_points("doc", [PointPrompt(60, 60)])
                assert response.bbox == FIRST_OBJECT
                assert response.score == pytest.approx(0.95)

                assert await client.clear_embeddings("doc")
                assert not client.is_ready("doc")
                with pytest.raises(EmbeddingsMissing):
                    await client.segment_at_points("doc", [PointPrompt(60, 60)])
            finally:
                await client.close()

        asyncio.run(scenario())

    def test_concurrent_embedding_requests_share_one_encode(self, rgb_image):
        backend = FakeBackend(objects=OBJECTS)

        async def scenario():
            client = InferenceClient(_context(backend))
            client.start()
            try:
                await asyncio.gather(
                    client.compute_embeddings("doc", rgb_image),
                    client.compute_embeddings("doc", rgb_image),
                    client.compute_embeddings("doc", rgb_image),
                )
                assert backend.encode_calls == 1
                await client.compute_embeddings("doc", rgb_image, force=True)
                assert backend.encode_calls == 2
            finally:
                await client.close()

        asyncio.run(scenario())

    def test_empty_points_rejected_before_sending(self):
        async def scenario():
            client = InferenceClient(_context())
            client.start()
            try:
                with pytest.raises(EmptyPointSet):
                    await client.segment_at_points("doc", [])
            finally:
                await client.close()

        asyncio.run(scenario())

    def test_request_timeout(self, rgb_image):
        class SlowBackend(FakeBackend):
            def decode(self, embeddings, point_coords, point_labels):
                time.sleep(0.3)
                return super().decode(embeddings, point_coords, point_labels)

        async def scenario():
            client = InferenceClient(_context(SlowBackend(objects=OBJECTS)), SelectionConfig(segment_timeout_s=0.05))
            client.start()
            try:
                await client.compute_embeddings("doc", rgb_image)
                with pytest.raises(RequestTimeout):
                    await client.segment_at_points("doc", [PointPrompt(60, 60)])
                # the late response is dropped without disturbing the client
                await asyncio.sleep(0.4)
                assert client._pending == {}
            finally:
                await client.close()

        asyncio.run(scenario())

    def test_auto_segment_stream(self, rgb_image):
        async def scenario():
            client = InferenceClient(_context())
            client.start()
            progress = []
            try:
                await client.compute_embeddings("doc", rgb_image)
                batches = [
                    batch async for batch in client.auto_segment("doc", on_progress=progress.append)
                ]
            finally:
                await client.close()

            assert [b.batch_index for b in batches] == [0, 2]
            assert [m.payload.bbox for b in batches for m in b.masks][0] == FIRST_OBJECT
            assert len(progress) == 16
            assert progress[-1] == 1.0

        asyncio.run(scenario())

    def test_auto_segment_error_is_raised(self):
        async def scenario():
            client = InferenceClient(_context())
            client.start()
            try:
                with pytest.raises(EmbeddingsMissing):
                    async for _ in client.auto_segment("unknown"):
                        pass
            finally:
                await client.close()

        asyncio.run(scenario())

    def test_request_before_start(self):
        async def scenario():
            client = InferenceClient(_context())
            with pytest.raises(RuntimeError):
                await client.initialize()

        asyncio.run(scenario())

    def test_request_after_close_leaves_nothing_pending(self):
        async def scenario():
            client = InferenceClient(_context())
            client.start()
            await client.close()

            with pytest.raises(RuntimeError):
                await client.initialize()
            with pytest.raises(RuntimeError):
                async for _ in client.auto_segment("doc"):
                    pass
            assert client._pending == {}

        asyncio.run(scenario())


class RecordingHost(SelectionHost):
    def __init__(self):
        self.previews = []
        self.confirmed = []

    def masks_at(self, x, y):
        return []

    def to_image_coords(self, x, y):
        return (x, y)

    def on_preview(self, preview):
        self.previews.append(preview)

    def on_confirm(self, payload):
        self.confirmed.append(payload)


def test_hover_to_confirm_through_worker(rgb_image):
    async def scenario():
        client = InferenceClient(_context())
        client.start()
        host = RecordingHost()
        controller = SelectionController(
            host, client, "doc", lambda: rgb_image, config=SelectionConfig(tick_interval_s=0.01)
        )
        try:
            controller.enter_selection()
            controller.update_cursor(60, 60)
            for _ in range(200):
                if any(p is not None for p in host.previews):
                    break
                await asyncio.sleep(0.01)

            assert host.previews[-1].bbox == FIRST_OBJECT
            assert controller.confirm_pending()
            assert host.confirmed[0].bbox == FIRST_OBJECT
            await controller.wait_idle()
        finally:
            await client.close()

    asyncio.run(scenario())
