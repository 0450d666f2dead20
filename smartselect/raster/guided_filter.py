"""
Edge-aware refinement primitives.

- Guided image filter (He et al., "Guided Image Filtering", ECCV 2010)
- Gaussian smoothing of decoder logits before thresholding
- Grayscale guide extraction
"""

from __future__ import annotations

import math
from typing import Optional
import numpy as np
from numpy.typing import NDArray
import cv2

from .morphology import fill_holes


LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def to_grayscale_guide(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """
    Luminance guide from an RGB(A) or grayscale image.

    Args:
        image: H x W, H x W x 3 (RGB) or H x W x 4 (RGBA)

    Returns:
        H x W uint8 guide
    """
    if image.ndim == 2:
        return image.astype(np.uint8, copy=True)
    rgb = image[..., :3].astype(np.float64)
    luma = rgb @ LUMA_WEIGHTS
    return np.clip(np.round(luma), 0, 255).astype(np.uint8)


def box_filter(src: NDArray, radius: int) -> NDArray[np.float64]:
    """
    Mean over a (2r+1) square window clamped to the image.

    Window sums are taken with zero padding and divided by the number of
    in-bounds pixels, so borders are not darkened.
    """
    out = np.asarray(src, dtype=np.float64)
    if radius <= 0:
        return out.copy()
    ksize = (2 * radius + 1, 2 * radius + 1)
    sums = cv2.boxFilter(out, -1, ksize, normalize=False, borderType=cv2.BORDER_CONSTANT)
    counts = cv2.boxFilter(
        np.ones_like(out), -1, ksize, normalize=False, borderType=cv2.BORDER_CONSTANT
    )
    return sums / counts


def guided_filter(
    mask: NDArray[np.uint8],
    guide: NDArray[np.uint8],
    radius: int = 8,
    eps: float = 0.01,
) -> NDArray[np.uint8]:
    """
    Edge-aware smoothing of a mask against a grayscale guide.

    Fits a local linear model q = a * I + b in every window, so the output
    follows the guide's edges where the guide has structure and is a
    plain blur of the mask where it is flat.

    Args:
        mask: Binary mask (H x W, 0/255)
        guide: Grayscale guide image (H x W)
        radius: Window radius
        eps: Regularization; higher means smoother and less guide-driven

    Returns:
        Soft mask (H x W, uint8 0-255)
    """
    if mask.shape != guide.shape:
        raise ValueError(f"Mask shape {mask.shape} does not match guide shape {guide.shape}")

    p = mask.astype(np.float64) / 255.0
    I = guide.astype(np.float64) / 255.0

    mean_i = box_filter(I, radius)
    mean_p = box_filter(p, radius)
    corr_i = box_filter(I * I, radius)
    corr_ip = box_filter(I * p, radius)

    var_i = corr_i - mean_i * mean_i
    cov_ip = corr_ip - mean_i * mean_p

    a = cov_ip / (var_i + eps)
    b = mean_p - a * mean_i

    mean_a = box_filter(a, radius)
    mean_b = box_filter(b, radius)

    q = mean_a * I + mean_b
    return np.round(np.clip(q * 255.0, 0, 255)).astype(np.uint8)


def refine_mask_edges(
    mask: NDArray[np.uint8],
    guide: NDArray[np.uint8],
    radius: int = 8,
    eps: float = 0.01,
    threshold: int = 128,
    min_hole_area: Optional[int] = None,
) -> NDArray[np.uint8]:
    """Guided-filter a binary mask and re-binarize it, filling small holes left behind."""
    soft = guided_filter(mask, guide, radius=radius, eps=eps)
    binary = np.where(soft >= threshold, 255, 0).astype(np.uint8)
    if min_hole_area is None:
        height, width = mask.shape
        min_hole_area = max(30, math.floor(100 * math.sqrt(width * height) / 1000))
    return fill_holes(binary, min_hole_area)


def gaussian_blur_logits(logits: NDArray[np.float32], sigma: float = 1.0) -> NDArray[np.float32]:
    """
    Separable Gaussian blur of raw logits with edge replication.

    Smoothing before binarization removes the staircase pattern that
    upsampling a low-resolution mask otherwise leaves behind.
    """
    logits = np.asarray(logits, dtype=np.float32)
    if sigma <= 0:
        return logits.copy()
    ksize = 2 * int(math.ceil(3 * sigma)) + 1
    return cv2.GaussianBlur(
        logits,
        (ksize, ksize),
        sigmaX=sigma,
        sigmaY=sigma,
        borderType=cv2.BORDER_REPLICATE,
    )
