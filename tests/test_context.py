import numpy as np
import pytest

from smartselect.core.contracts import PointPrompt
from smartselect.core.errors import EmbeddingsMissing
from smartselect.segmentation.context import SegmentationContext

from conftest import FakeBackend, make_model


def test_embedding_cache_lifecycle(rgb_image):
    backend = FakeBackend(objects=[(40, 40, 116, 116)])
    context = SegmentationContext(make_model(backend))

    with pytest.raises(EmbeddingsMissing):
        context.segment_at_points("doc", [PointPrompt(60, 60)])

    first = context.compute_embeddings("doc", rgb_image)
    assert context.has_embeddings("doc")
    assert context.get_embeddings("doc") is first

    # a new image for the same document replaces its embeddings
    second = context.compute_embeddings("doc", np.zeros((64, 128, 3), dtype=np.uint8))
    assert context.get_embeddings("doc") is second
    assert context.document_ids == ["doc"]

    assert context.release("doc")
    assert not context.release("doc")
    with pytest.raises(EmbeddingsMissing):
        context.get_embeddings("doc")


def test_documents_are_independent(rgb_image):
    context = SegmentationContext(make_model(FakeBackend(objects=[(40, 40, 116, 116)])))
    context.compute_embeddings("a", rgb_image)
    context.compute_embeddings("b", rgb_image)
    context.release("a")
    assert context.segment_at_points("b", [PointPrompt(60, 60)]).area > 0


def test_close_releases_everything(rgb_image):
    backend = FakeBackend()
    with SegmentationContext(make_model(backend)) as context:
        context.compute_embeddings("doc", rgb_image)
    assert backend.closed
    assert context.document_ids == []
    with pytest.raises(RuntimeError):
        context.compute_embeddings("doc", rgb_image)
