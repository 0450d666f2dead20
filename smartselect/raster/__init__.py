"""
Mask raster module.

Responsibilities:
- Morphological primitives and component analysis
- Guided edge refinement and logit smoothing
- PNG wire encoding
"""

from .morphology import (
    dilate,
    erode,
    close_mask,
    open_mask,
    connected_components,
    remove_small_components,
    fill_holes,
    keep_components_containing_points,
    largest_component_share,
    smooth_mask,
    snap_to_image_edges,
    mask_bbox,
    mask_area,
    invert_mask,
    combine_masks,
)
from .guided_filter import (
    box_filter,
    guided_filter,
    refine_mask_edges,
    gaussian_blur_logits,
    to_grayscale_guide,
)
from .codec import (
    encode_mask_png,
    mask_to_data_url,
    mask_to_payload,
    decode_mask_alpha,
    data_url_to_alpha,
    payload_to_mask,
)
