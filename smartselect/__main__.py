#!/usr/bin/env python3
"""
smartselect command-line entry point.

Segments an image from point prompts, or generates automatic masks, and
writes each mask as a wire-format PNG next to a masks.json summary.

Usage:
    python -m smartselect IMAGE --encoder ENC.onnx --decoder DEC.onnx --point 120,80
    python -m smartselect IMAGE --encoder ENC.onnx --decoder DEC.onnx --point 120,80 --point 40,40,neg
    python -m smartselect IMAGE --encoder ENC.onnx --decoder DEC.onnx --auto --preset PRECISE
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import cv2
import yaml
from loguru import logger

from smartselect.config import PRESETS, Config, load_config
from smartselect.core.contracts import PointLabel, PointPrompt
from smartselect.core.errors import SegmentationError
from smartselect.raster.codec import encode_mask_png
from smartselect.segmentation.context import SegmentationContext


DOCUMENT_ID = "cli"


# ============================================================
# LOGGING CONFIGURATION
# ============================================================

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure logging."""
    logger.remove()  # Remove default handler

    # Console output with colors
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>",
        colorize=True,
    )

    # File output
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {message}",
            rotation="10 MB",
            retention="7 days",
        )


# ============================================================
# ARGUMENTS
# ============================================================

def parse_point(text: str) -> PointPrompt:
    """Parse "x,y" or "x,y,neg" into a prompt."""
    parts = [p.strip() for p in text.split(",")]
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"Expected x,y[,neg], got '{text}'")
    try:
        x, y = float(parts[0]), float(parts[1])
    except ValueError:
        raise argparse.ArgumentTypeError(f"Point coordinates must be numbers: '{text}'")

    label = PointLabel.POSITIVE
    if len(parts) == 3:
        if parts[2].lower() not in ("neg", "pos"):
            raise argparse.ArgumentTypeError(f"Point label must be 'pos' or 'neg': '{text}'")
        if parts[2].lower() == "neg":
            label = PointLabel.NEGATIVE
    return PointPrompt(x=x, y=y, label=label)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="smartselect",
        description="Point-prompt and automatic image segmentation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m smartselect photo.jpg --encoder enc.onnx --decoder dec.onnx --point 320,240
  python -m smartselect photo.jpg --encoder enc.onnx --decoder dec.onnx --auto
        """,
    )
    parser.add_argument("image", help="Image file to segment")

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--point", "-p",
        action="append",
        type=parse_point,
        dest="points",
        help="Point prompt x,y[,neg]; repeat for multiple points",
    )
    mode.add_argument("--auto", action="store_true", help="Generate masks automatically")

    parser.add_argument("--encoder", help="Encoder ONNX model (overrides config)")
    parser.add_argument("--decoder", help="Decoder ONNX model (overrides config)")
    parser.add_argument("--config", "-c", help="Path to YAML configuration file")
    parser.add_argument(
        "--preset",
        choices=list(PRESETS.keys()),
        default=None,
        help="Configuration preset",
    )
    parser.add_argument("--output-dir", "-o", default="masks", help="Where to write masks (default: masks)")
    parser.add_argument("--log-level", default=None, help="Console log level (default: from config)")
    parser.add_argument("--log-file", default=None, help="Optional log file")
    return parser.parse_args(argv)


# ============================================================
# COMMANDS
# ============================================================

def _write_mask(output_dir: Path, name: str, mask) -> str:
    path = output_dir / f"{name}.png"
    path.write_bytes(encode_mask_png(mask))
    return path.name


def run_points(context: SegmentationContext, points: List[PointPrompt], output_dir: Path) -> List[dict]:
    result = context.segment_at_points(DOCUMENT_ID, points)
    logger.info(f"Mask area {result.area}px, bbox {result.bbox.to_dict()}, score {result.score:.3f}")
    return [{
        "file": _write_mask(output_dir, "mask_0", result.mask),
        "bbox": result.bbox.to_dict(),
        "score": result.score,
        "stability_score": result.stability_score,
        "area": result.area,
        "points": [p.to_dict() for p in points],
    }]


def run_auto(context: SegmentationContext, config: Config, output_dir: Path) -> List[dict]:
    entries = []
    for batch in context.generate_auto_segments(DOCUMENT_ID, config.auto):
        logger.info(
            f"Batch {batch.batch_index + 1}/{batch.total_batches}: "
            f"{len(batch.masks)} new mask(s), {batch.progress:.0%} done"
        )
        for auto_mask in batch.masks:
            index = len(entries)
            entries.append({
                "file": _write_mask(output_dir, f"mask_{index}", auto_mask.result.mask),
                "bbox": auto_mask.bbox.to_dict(),
                "score": auto_mask.score,
                "stability_score": auto_mask.result.stability_score,
                "area": auto_mask.result.area,
                "centroid": list(auto_mask.centroid),
                "point": auto_mask.point.to_dict(),
            })
    return entries


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config, preset=args.preset)
    except (ValueError, yaml.YAMLError) as e:
        setup_logging(args.log_level or "INFO", args.log_file)
        logger.error(f"Invalid configuration: {e}")
        return 2
    if args.encoder:
        config.model.encoder_path = args.encoder
    if args.decoder:
        config.model.decoder_path = args.decoder
    setup_logging(args.log_level or config.log_level, args.log_file or config.log_file)

    image = cv2.imread(args.image, cv2.IMREAD_COLOR)
    if image is None:
        logger.error(f"Could not read image {args.image}")
        return 1
    image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        with SegmentationContext.from_config(config) as context:
            context.compute_embeddings(DOCUMENT_ID, image)
            if args.auto:
                entries = run_auto(context, config, output_dir)
            else:
                entries = run_points(context, args.points, output_dir)
    except SegmentationError as e:
        logger.error(f"Segmentation failed: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    summary_path = output_dir / "masks.json"
    summary_path.write_text(json.dumps({"image": args.image, "masks": entries}, indent=2))
    logger.info(f"Wrote {len(entries)} mask(s) to {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
