import numpy as np
import pytest

from smartselect.config import PostprocessConfig
from smartselect.core.contracts import BoundingBox, PointLabel, PointPrompt
from smartselect.core.errors import EmptyPointSet
from smartselect.segmentation.point_segmenter import PointPromptSegmenter

from conftest import FakeBackend, make_model


def _two_blob_logits():
    logits = np.full((3, 256, 256), -8.0, dtype=np.float32)
    logits[:, 20:60, 20:60] = 8.0
    logits[:, 150:200, 150:200] = 8.0
    return logits


def _segmenter(backend, **postprocess):
    return PointPromptSegmenter(make_model(backend), PostprocessConfig(**postprocess))


def test_full_frame_mask_end_to_end():
    image = np.full((100, 100, 3), 255, dtype=np.uint8)
    backend = FakeBackend(fixed_logits=np.full((3, 256, 256), 10.0, dtype=np.float32))
    segmenter = _segmenter(backend)
    embeddings = segmenter.model.encode(image)

    result = segmenter.segment_at_points(embeddings, [PointPrompt(50, 50)])

    assert result.bbox == BoundingBox(0, 0, 100, 100)
    assert result.area == 10000
    assert result.mask.shape == (100, 100)
    assert result.score == pytest.approx(0.95)
    assert result.stability_score == 1.0


def test_negative_points_do_not_select_components(rgb_image):
    segmenter = _segmenter(FakeBackend(fixed_logits=_two_blob_logits()), logit_blur_sigma=0.0)
    embeddings = segmenter.model.encode(rgb_image)
    points = [PointPrompt(30, 30), PointPrompt(170, 170, PointLabel.NEGATIVE)]

    result = segmenter.segment_at_points(embeddings, points)

    assert result.bbox == BoundingBox(20, 20, 40, 40)
    assert result.area == 1600
    assert result.mask[170, 170] == 0


def test_every_positive_point_keeps_its_component(rgb_image):
    segmenter = _segmenter(FakeBackend(fixed_logits=_two_blob_logits()), logit_blur_sigma=0.0)
    embeddings = segmenter.model.encode(rgb_image)

    result = segmenter.segment_at_points(embeddings, [PointPrompt(30, 30), PointPrompt(170, 170)])

    assert result.area == 1600 + 2500
    assert result.bbox == BoundingBox(20, 20, 180, 180)


def test_result_mask_is_read_only(sharp_segmenter, rgb_image):
    embeddings = sharp_segmenter.model.encode(rgb_image)
    result = sharp_segmenter.segment_at_points(embeddings, [PointPrompt(60, 60)])
    assert result.area == 76 * 76
    with pytest.raises(ValueError):
        result.mask[0, 0] = 255


def test_threshold_controls_binarization(rgb_image):
    backend = FakeBackend(fixed_logits=np.full((3, 256, 256), 1.5, dtype=np.float32))
    loose = _segmenter(backend, mask_threshold=0.0)
    strict = _segmenter(backend, mask_threshold=2.0)
    embeddings = loose.model.encode(rgb_image)

    assert loose.segment_at_points(embeddings, [PointPrompt(5, 5)]).area == 256 * 256
    empty = strict.segment_at_points(embeddings, [PointPrompt(5, 5)])
    assert empty.area == 0
    assert empty.bbox.is_empty


def test_edge_refinement_keeps_object(object_backend, rgb_image):
    segmenter = _segmenter(object_backend, logit_blur_sigma=0.0, refine_edges=True)
    embeddings = segmenter.model.encode(rgb_image)

    result = segmenter.segment_at_points(embeddings, [PointPrompt(60, 60)])

    assert result.mask[78, 78] == 255
    assert result.mask[5, 5] == 0
    assert result.mask[180, 180] == 0


def test_empty_point_set(sharp_segmenter, rgb_image):
    embeddings = sharp_segmenter.model.encode(rgb_image)
    with pytest.raises(EmptyPointSet):
        sharp_segmenter.segment_at_points(embeddings, [])
