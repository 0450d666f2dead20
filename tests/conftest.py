import numpy as np
import pytest

from smartselect.config import ModelConfig, PostprocessConfig, QualityConfig
from smartselect.segmentation.model_session import ModelBackend, SegmentationModel
from smartselect.segmentation.point_segmenter import PointPromptSegmenter


MASK_SIZE = 256


class FakeBackend(ModelBackend):
    """Deterministic stand-in for the ONNX encoder/decoder.

    For a 256 x 256 image the decoder's low-resolution mask grid lines up
    1:1 with image pixels, so `objects` are given in image coordinates as
    (x0, y0, x1, y1) half-open rectangles. The first positive point picks
    the object whose rectangle contains it; every candidate is +8 logits
    inside that object and -8 elsewhere. `fixed_logits` overrides this
    with the same [K, h, w] array for every call.
    """

    name = "fake"

    def __init__(self, objects=None, fixed_logits=None, scores=(0.95, 0.9, 0.8),
                 decode_error=None, masks_shape=None):
        self.objects = objects or []
        self.fixed_logits = fixed_logits
        self.scores = np.array([scores], dtype=np.float32)
        self.decode_error = decode_error
        self.masks_shape = masks_shape
        self.encode_calls = 0
        self.decode_calls = []
        self.loaded = False
        self.closed = False

    def load(self):
        self.loaded = True

    def encode(self, image_tensor):
        self.encode_calls += 1
        return np.zeros((1, 256, 64, 64), dtype=np.float32)

    def decode(self, embeddings, point_coords, point_labels):
        self.decode_calls.append((point_coords.copy(), point_labels.copy()))
        if self.decode_error is not None:
            raise self.decode_error

        count = self.scores.shape[1]
        if self.fixed_logits is not None:
            return self.fixed_logits[None].astype(np.float32), self.scores

        logits = np.full((MASK_SIZE, MASK_SIZE), -8.0, dtype=np.float32)
        positive = [c for c, l in zip(point_coords[0], point_labels[0]) if l == 1]
        if positive:
            # 1024 model space -> 256 mask grid
            x, y = positive[0][0] / 4.0, positive[0][1] / 4.0
            for x0, y0, x1, y1 in self.objects:
                if x0 <= x < x1 and y0 <= y < y1:
                    logits[y0:y1, x0:x1] = 8.0
                    break

        masks = np.repeat(logits[None, None], count, axis=1)
        if self.masks_shape is not None:
            masks = np.zeros(self.masks_shape, dtype=np.float32)
        return masks, self.scores

    def close(self):
        self.closed = True


def make_model(backend, mask_threshold=0.0):
    return SegmentationModel(
        backend,
        model_config=ModelConfig(),
        quality_config=QualityConfig(),
        mask_threshold=mask_threshold,
    )


@pytest.fixture
def rgb_image():
    """256 x 256 RGB test image with two bright squares."""
    image = np.zeros((256, 256, 3), dtype=np.uint8)
    image[40:116, 40:116] = 200
    image[140:220, 140:220] = 120
    return image


@pytest.fixture
def two_objects():
    return [(40, 40, 116, 116), (140, 140, 220, 220)]


@pytest.fixture
def object_backend(two_objects):
    return FakeBackend(objects=two_objects)


@pytest.fixture
def sharp_segmenter(object_backend):
    """Segmenter without logit blur so masks match object rectangles exactly."""
    return PointPromptSegmenter(make_model(object_backend), PostprocessConfig(logit_blur_sigma=0.0))


def blank_mask(height=100, width=100):
    return np.zeros((height, width), dtype=np.uint8)
