import numpy as np
import pytest

from smartselect.config import AutoSegmentConfig, PostprocessConfig
from smartselect.core.contracts import (
    AutoSegmentMask,
    BoundingBox,
    ImageSize,
    PointPrompt,
    SegmentResult,
)
from smartselect.core.errors import DecodeFailure
from smartselect.segmentation.auto_generator import (
    AutoSegmentGenerator,
    box_nms,
    generate_auto_segments,
    generate_point_grid,
)
from smartselect.segmentation.point_segmenter import PointPromptSegmenter

from conftest import FakeBackend, make_model


def _auto_mask(bbox, score):
    result = SegmentResult(
        mask=np.zeros((1, 1), dtype=np.uint8),
        bbox=bbox,
        score=score,
        stability_score=1.0,
        area=bbox.area,
    )
    return AutoSegmentMask(result=result, point=PointPrompt(0, 0), centroid=bbox.center)


def _generator(backend, points_per_side=4, points_per_batch=4):
    segmenter = PointPromptSegmenter(make_model(backend), PostprocessConfig())
    config = AutoSegmentConfig(points_per_side=points_per_side, points_per_batch=points_per_batch)
    return AutoSegmentGenerator(segmenter, config)


class TestGrid:
    def test_grid_is_row_major_and_avoids_border(self):
        grid = generate_point_grid(ImageSize(90, 90), 2)
        assert [(p.x, p.y) for p in grid] == [(30, 30), (60, 30), (30, 60), (60, 60)]
        assert all(p.is_positive for p in grid)

    def test_grid_size(self):
        assert len(generate_point_grid(ImageSize(640, 480), 8)) == 64


class TestBoxNms:
    def test_overlapping_boxes_keep_higher_score(self):
        low = _auto_mask(BoundingBox(0, 0, 100, 100), 0.8)
        high = _auto_mask(BoundingBox(0, 0, 100, 90), 0.9)
        # IoU 0.9 > 0.7
        kept = box_nms([low, high], 0.7)
        assert kept == [high]

    def test_higher_score_wins_regardless_of_order(self):
        a = _auto_mask(BoundingBox(0, 0, 100, 100), 0.8)
        b = _auto_mask(BoundingBox(0, 0, 100, 90), 0.7)
        assert box_nms([b, a], 0.7) == [a]

    def test_partially_overlapping_boxes_both_kept(self):
        a = _auto_mask(BoundingBox(0, 0, 100, 100), 0.9)
        b = _auto_mask(BoundingBox(54, 0, 100, 100), 0.8)
        assert a.bbox.iou(b.bbox) == pytest.approx(0.2987, abs=1e-3)
        assert box_nms([a, b], 0.7) == [a, b]

    def test_iou_equal_to_threshold_is_kept(self):
        a = _auto_mask(BoundingBox(0, 0, 10, 10), 0.9)
        b = _auto_mask(BoundingBox(0, 0, 10, 5), 0.8)
        assert box_nms([a, b], 0.5) == [a, b]


class TestGenerator:
    def test_streams_deduplicated_batches(self, rgb_image, object_backend):
        generator = _generator(object_backend)
        embeddings = generator.segmenter.model.encode(rgb_image)
        progress = []

        batches = list(generator.generate(embeddings, on_progress=progress.append))

        # Rows 1 and 3 repeat the objects found by rows 0 and 2
        assert [b.batch_index for b in batches] == [0, 2]
        assert all(len(b.masks) == 1 for b in batches)
        assert all(b.total_batches == 4 and b.total_points == 16 for b in batches)
        assert batches[0].processed_points == 4
        assert batches[1].progress == pytest.approx(12 / 16)

        first, second = batches[0].masks[0], batches[1].masks[0]
        assert first.bbox.contains(78, 78)
        assert second.bbox.contains(180, 180)
        assert first.point.x == pytest.approx(51.2)
        assert first.centroid == first.bbox.center

        assert len(progress) == 16
        assert progress[-1] == 1.0
        assert progress == sorted(progress)

    def test_yielded_masks_pass_filters(self, rgb_image, object_backend):
        generator = _generator(object_backend)
        embeddings = generator.segmenter.model.encode(rgb_image)
        image_area = 256 * 256
        for auto_mask in generator.run(embeddings):
            assert auto_mask.score >= 0.85
            assert auto_mask.result.stability_score >= 0.92
            assert 0.005 <= auto_mask.result.area / image_area <= 0.60

    def test_low_iou_results_rejected(self, rgb_image, two_objects):
        backend = FakeBackend(objects=two_objects, scores=(0.7, 0.6, 0.5))
        generator = _generator(backend)
        embeddings = generator.segmenter.model.encode(rgb_image)
        assert generator.run(embeddings) == []

    def test_oversized_masks_rejected(self, rgb_image):
        backend = FakeBackend(objects=[(0, 0, 256, 200)])
        generator = _generator(backend, points_per_side=2)
        embeddings = generator.segmenter.model.encode(rgb_image)
        assert generator.run(embeddings) == []

    def test_failed_points_are_skipped(self, rgb_image, two_objects):
        class Flaky(FakeBackend):
            def decode(self, embeddings, point_coords, point_labels):
                # fail every point on the first grid row
                if point_coords[0, 0, 1] < 60 * 4:
                    raise DecodeFailure("decoder hiccup")
                return super().decode(embeddings, point_coords, point_labels)

        generator = _generator(Flaky(objects=two_objects))
        embeddings = generator.segmenter.model.encode(rgb_image)
        progress = []

        masks = generator.run(embeddings, on_progress=progress.append)

        # The second row still finds the first object
        assert len(masks) == 2
        assert progress[-1] == 1.0

    def test_functional_form_matches_generator(self, rgb_image, object_backend):
        generator = _generator(object_backend)
        embeddings = generator.segmenter.model.encode(rgb_image)
        batches = list(generate_auto_segments(generator.segmenter, embeddings, config=generator.config))
        assert sum(len(b.masks) for b in batches) == len(generator.run(embeddings))

    def test_generation_is_lazy(self, rgb_image, object_backend):
        generator = _generator(object_backend)
        embeddings = generator.segmenter.model.encode(rgb_image)
        stream = generator.generate(embeddings)
        assert object_backend.decode_calls == []
        next(stream)
        assert len(object_backend.decode_calls) == 4
