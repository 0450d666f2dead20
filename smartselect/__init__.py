"""
smartselect: interactive point-prompt segmentation engine.

Click or hover on an image region and get a precise, stable mask, refined
with extra positive/negative points; or pre-compute a batch of
high-confidence object masks automatically.

Components (leaf first):
1. Mask raster and morphology
2. Guided edge refinement
3. Segmentation model session (encode/decode, candidate scoring)
4. Point-prompt segmentation service
5. Automatic segment generator
6. Pixel-accurate hit testing
7. Interactive selection state machine
"""

__version__ = "0.1.0"
