import base64

import cv2
import numpy as np
import pytest

from smartselect.core.contracts import BoundingBox
from smartselect.raster.codec import (
    DATA_URL_PREFIX,
    data_url_to_alpha,
    decode_mask_alpha,
    encode_mask_png,
    mask_to_payload,
    payload_to_mask,
)


def _mask():
    mask = np.zeros((40, 60), dtype=np.uint8)
    mask[5:15, 10:30] = 255
    return mask


def test_png_channels():
    png = encode_mask_png(_mask())
    image = cv2.imdecode(np.frombuffer(png, np.uint8), cv2.IMREAD_UNCHANGED)
    assert image.shape == (40, 60, 4)
    assert np.all(image[7, 12] == 255)
    assert np.all(image[0, 0] == 0)
    # alpha marks every non-zero pixel
    np.testing.assert_array_equal(image[..., 3] > 0, _mask() > 0)


def test_payload_carries_bbox_and_data_url():
    payload = mask_to_payload(_mask())
    assert payload.bbox == BoundingBox(10, 5, 20, 10)
    assert payload.mask_png.startswith(DATA_URL_PREFIX)
    assert payload.to_dict()["bbox"] == {"x": 10, "y": 5, "w": 20, "h": 10}
    np.testing.assert_array_equal(payload_to_mask(payload), _mask())


def test_alpha_accepts_bare_base64():
    encoded = base64.b64encode(encode_mask_png(_mask())).decode("ascii")
    np.testing.assert_array_equal(data_url_to_alpha(encoded) > 0, _mask() > 0)


def test_grayscale_png_falls_back_to_luminance():
    ok, buffer = cv2.imencode(".png", _mask())
    assert ok
    np.testing.assert_array_equal(decode_mask_alpha(buffer.tobytes()), _mask())


def test_garbage_bytes_raise():
    with pytest.raises(ValueError):
        decode_mask_alpha(b"not a png")
