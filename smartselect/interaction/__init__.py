"""
Interaction module.

Responsibilities:
- Pixel-accurate hit testing against rendered masks
- Cursor/click driven selection session with single-flight segmentation
"""

from .hit_testing import MaskRasterCache, is_point_over_mask, find_mask_under_cursor
from .selection import SelectionController, SelectionHost, SelectionSession, SelectionState
