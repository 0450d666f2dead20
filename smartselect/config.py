"""
Configuration for the smartselect engine.

Settings are grouped in dataclass sections with their defaults inline.
A named preset adjusts automatic-segmentation density and mask tightness;
values from a YAML file are applied on top of the preset.

To add a new preset:
1. Add an entry to PRESETS keyed by section name
2. Pass its name with --preset or a top-level `preset:` YAML key
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from loguru import logger


# === PRESETS ===
# Each preset trades auto-segmentation coverage against latency
PRESETS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "INTERACTIVE": {
        "auto": {"points_per_side": 8, "points_per_batch": 8},
        "postprocess": {"mask_threshold": 0.0},
    },
    "PRECISE": {
        "auto": {"points_per_side": 16, "points_per_batch": 16},
        "postprocess": {"mask_threshold": 2.0, "refine_edges": True},
    },
    "FAST": {
        "auto": {"points_per_side": 4, "points_per_batch": 4},
        "postprocess": {"mask_threshold": 0.0, "logit_blur_sigma": 0.0},
    },
}


@dataclass
class ModelConfig:
    """Encoder/decoder model files and input preprocessing."""
    encoder_path: Optional[str] = None
    decoder_path: Optional[str] = None
    input_size: int = 1024  # Longest side after letterbox resize
    pixel_mean: List[float] = field(default_factory=lambda: [123.675, 116.28, 103.53])
    pixel_std: List[float] = field(default_factory=lambda: [58.395, 57.12, 57.375])
    # Tried in order; CPU is always appended as the last resort
    providers: List[str] = field(
        default_factory=lambda: ["CUDAExecutionProvider", "CPUExecutionProvider"]
    )


@dataclass
class QualityConfig:
    """Candidate scoring and selection."""
    min_iou: float = 0.65
    min_stability: float = 0.88
    min_compactness: float = 0.85
    stability_offset: float = 1.0  # Logit units
    stability_weight: float = 0.4
    compactness_weight: float = 0.4
    coverage_epsilon: float = 0.001
    low_coverage_penalty: float = 0.5


@dataclass
class PostprocessConfig:
    """Point-prompt mask pipeline."""
    logit_blur_sigma: float = 1.0
    mask_threshold: float = 0.0  # Logit binarization threshold
    close_radius: int = 2
    snap_to_edges: bool = True
    # Optional guided-filter pass against the image luminance
    refine_edges: bool = False
    guided_radius: int = 8
    guided_eps: float = 0.01


@dataclass
class AutoSegmentConfig:
    """Automatic grid segmentation (stricter than interactive mode)."""
    points_per_side: int = 8
    points_per_batch: int = 8
    pred_iou_thresh: float = 0.85
    stability_score_thresh: float = 0.92
    min_mask_area_ratio: float = 0.005
    max_mask_area_ratio: float = 0.60
    box_nms_thresh: float = 0.7


@dataclass
class SelectionConfig:
    """Interactive selection session timing."""
    tick_interval_s: float = 0.1
    segment_timeout_s: float = 5.0
    embeddings_timeout_s: float = 30.0
    auto_segment_timeout_s: float = 300.0


SECTIONS = {
    "model": ModelConfig,
    "quality": QualityConfig,
    "postprocess": PostprocessConfig,
    "auto": AutoSegmentConfig,
    "selection": SelectionConfig,
}


@dataclass
class Config:
    """Main configuration.

    Attributes:
        model: Model files and preprocessing
        quality: Candidate selection thresholds
        postprocess: Mask pipeline parameters
        auto: Automatic segmentation parameters
        selection: Interactive session timing
        preset: Optional preset name applied before explicit values
        log_level: Console log level
        log_file: Optional rotating log file
    """
    model: ModelConfig = field(default_factory=ModelConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    postprocess: PostprocessConfig = field(default_factory=PostprocessConfig)
    auto: AutoSegmentConfig = field(default_factory=AutoSegmentConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)

    preset: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        """Apply preset settings."""
        if self.preset is None:
            return
        if self.preset not in PRESETS:
            available = ", ".join(PRESETS.keys())
            raise ValueError(f"Unknown preset '{self.preset}'. Available: {available}")
        for section_name, values in PRESETS[self.preset].items():
            setattr(self, section_name, _update_section(getattr(self, section_name), values))


def _update_section(section: Any, values: Dict[str, Any]) -> Any:
    known = {f.name for f in fields(section)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(
            f"Unknown {type(section).__name__} keys: {', '.join(sorted(unknown))}"
        )
    return replace(section, **values)


def load_config(
    path: Optional[Union[str, Path]] = None,
    preset: Optional[str] = None,
) -> Config:
    """Load configuration from a YAML file.

    Args:
        path: YAML file whose top-level keys are section names
        preset: Preset name; overrides a `preset:` key in the file

    Returns:
        Config with preset then file values applied

    Raises:
        ValueError: On unknown sections, keys or preset names
    """
    data: Dict[str, Any] = {}
    if path is not None:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {path}")

    file_preset = data.pop("preset", None)
    config = Config(preset=preset or file_preset)

    for key, value in data.items():
        if key in SECTIONS:
            setattr(config, key, _update_section(getattr(config, key), value or {}))
        elif key in ("log_level", "log_file"):
            setattr(config, key, value)
        else:
            raise ValueError(f"Unknown configuration section '{key}'")

    return config
