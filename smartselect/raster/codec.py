"""
PNG wire format for masks.

A mask crossing a process or storage boundary is a PNG whose colour
channels repeat the mask value and whose alpha is 255 wherever the value
is non-zero. Alongside travels the {x, y, w, h} bbox.
"""

from __future__ import annotations

import base64
import numpy as np
from numpy.typing import NDArray
import cv2

from smartselect.core.contracts import MaskPayload
from .morphology import mask_bbox


DATA_URL_PREFIX = "data:image/png;base64,"


def encode_mask_png(mask: NDArray[np.uint8]) -> bytes:
    """Encode a mask as RGBA PNG bytes."""
    value = np.asarray(mask, dtype=np.uint8)
    alpha = np.where(value > 0, 255, 0).astype(np.uint8)
    # R = G = B, so OpenCV's BGRA ordering does not matter
    rgba = np.dstack([value, value, value, alpha])
    ok, buffer = cv2.imencode(".png", rgba)
    if not ok:
        raise ValueError(f"PNG encoding failed for mask of shape {value.shape}")
    return buffer.tobytes()


def mask_to_data_url(mask: NDArray[np.uint8]) -> str:
    return DATA_URL_PREFIX + base64.b64encode(encode_mask_png(mask)).decode("ascii")


def mask_to_payload(mask: NDArray[np.uint8]) -> MaskPayload:
    """PNG data URL plus bbox recomputed from the raster."""
    return MaskPayload(mask_png=mask_to_data_url(mask), bbox=mask_bbox(mask))


def decode_mask_alpha(data: bytes) -> NDArray[np.uint8]:
    """
    Decode PNG bytes to the alpha raster used for hit testing.

    Images without an alpha channel fall back to their luminance so
    plain grayscale masks still decode.
    """
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise ValueError("Could not decode mask PNG")
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return np.ascontiguousarray(image[..., 3])
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def data_url_to_alpha(data_url: str) -> NDArray[np.uint8]:
    if data_url.startswith("data:"):
        _, _, encoded = data_url.partition(",")
    else:
        encoded = data_url
    return decode_mask_alpha(base64.b64decode(encoded))


def payload_to_mask(payload: MaskPayload) -> NDArray[np.uint8]:
    """Rebuild a 0/255 mask from its wire payload."""
    alpha = data_url_to_alpha(payload.mask_png)
    return np.where(alpha > 0, 255, 0).astype(np.uint8)
