"""
Two-stage segmentation model session.

encode: image -> embeddings (one expensive call per image)
decode: embeddings + point prompts -> scored mask candidates

Candidates are ranked with the model-reported IoU plus two local
heuristics (boundary stability and compactness) so that a confident but
speckled or threshold-sensitive mask does not win over a clean one.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Sequence, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from smartselect.config import ModelConfig, QualityConfig
from smartselect.core.contracts import ImageSize, MaskCandidate, PointPrompt
from smartselect.core.errors import (
    DecodeFailure,
    EmbeddingComputeFailure,
    EmptyPointSet,
    InvalidModelOutput,
    SegmentationError,
)
from smartselect.raster.guided_filter import to_grayscale_guide


# ============================================================
# PREPROCESSING
# ============================================================

@dataclass(frozen=True)
class ResizeInfo:
    """Letterbox geometry between the source image and the model input."""
    original_width: int
    original_height: int
    resized_width: int
    resized_height: int
    scale: float  # input_size / max(original_width, original_height)


def get_preprocess_shape(height: int, width: int, long_side: int) -> Tuple[int, int]:
    """Target (height, width) so the longest side equals long_side."""
    scale = long_side / max(height, width)
    return int(round(height * scale)), int(round(width * scale))


def _to_rgb(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        return np.ascontiguousarray(image[..., :3])
    return image


def preprocess_image(
    image: NDArray[np.uint8],
    input_size: int = 1024,
    pixel_mean: Sequence[float] = (123.675, 116.28, 103.53),
    pixel_std: Sequence[float] = (58.395, 57.12, 57.375),
) -> Tuple[NDArray[np.float32], ResizeInfo]:
    """
    Resize, normalize and pad an RGB image for the encoder.

    Args:
        image: RGB image (H x W x 3); grayscale and RGBA are converted
        input_size: Square model input size
        pixel_mean: Per-channel mean
        pixel_std: Per-channel std

    Returns:
        (tensor [1, 3, input_size, input_size] float32, ResizeInfo)
    """
    if image is None or image.size == 0:
        raise ValueError("Cannot preprocess an empty image")

    rgb = _to_rgb(image)
    height, width = rgb.shape[:2]
    new_h, new_w = get_preprocess_shape(height, width, input_size)

    resized = cv2.resize(rgb, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    normalized = (resized.astype(np.float32) - np.asarray(pixel_mean, np.float32)) / np.asarray(
        pixel_std, np.float32
    )

    # Pad right and bottom
    padded = np.zeros((input_size, input_size, 3), dtype=np.float32)
    padded[:new_h, :new_w] = normalized
    tensor = np.ascontiguousarray(padded.transpose(2, 0, 1)[None])

    info = ResizeInfo(
        original_width=width,
        original_height=height,
        resized_width=new_w,
        resized_height=new_h,
        scale=input_size / max(height, width),
    )
    return tensor, info


@dataclass
class Embeddings:
    """Encoder output for one image plus what decode needs to map back."""
    tensor: NDArray[np.float32]
    resize_info: ResizeInfo
    image_size: ImageSize
    guide: Optional[NDArray[np.uint8]] = None  # Grayscale guide for edge refinement
    encode_time_ms: float = 0.0


# ============================================================
# CANDIDATE SCORING
# ============================================================

def stability_score(logits: NDArray[np.float32], offset: float = 1.0) -> float:
    """
    Jaccard overlap of the masks thresholded at +offset and -offset.

    Low values mean the boundary moves a lot under small threshold changes.
    """
    high = np.count_nonzero(logits > offset)
    low = np.count_nonzero(logits > -offset)
    if low == 0:
        return 0.0
    # The +offset set is contained in the -offset set
    return float(high / low)


def compactness_score(binary: NDArray[np.bool_]) -> float:
    """
    1 - min(1, transitions / (positive_pixels * 4)).

    Transitions count foreground/background flips between 4-neighbours,
    scanned row-wise and column-wise. Speckled masks score low.
    """
    binary = np.asarray(binary, dtype=bool)
    positive = np.count_nonzero(binary)
    if positive == 0:
        return 0.0
    transitions = np.count_nonzero(binary[:, 1:] != binary[:, :-1])
    transitions += np.count_nonzero(binary[1:, :] != binary[:-1, :])
    return 1.0 - min(1.0, transitions / (positive * 4.0))


def quality_score(
    iou: float,
    stability: float,
    compactness: float,
    coverage: float,
    config: Optional[QualityConfig] = None,
) -> float:
    """iou * (1 + w_s * stability + w_c * compactness), halved for near-empty masks."""
    config = config or QualityConfig()
    score = iou * (1.0 + config.stability_weight * stability + config.compactness_weight * compactness)
    if coverage <= config.coverage_epsilon:
        score *= config.low_coverage_penalty
    return float(score)


def score_candidate(
    index: int,
    logits: NDArray[np.float32],
    iou: float,
    config: Optional[QualityConfig] = None,
    mask_threshold: float = 0.0,
) -> MaskCandidate:
    """Compute heuristics and quality for one cropped candidate."""
    config = config or QualityConfig()
    binary = logits > mask_threshold
    coverage = float(np.count_nonzero(binary)) / binary.size if binary.size else 0.0
    stability = stability_score(logits, config.stability_offset)
    compactness = compactness_score(binary)
    return MaskCandidate(
        index=index,
        logits=logits,
        iou_score=float(iou),
        stability_score=stability,
        compactness=compactness,
        coverage=coverage,
        quality_score=quality_score(iou, stability, compactness, coverage, config),
    )


def meets_thresholds(candidate: MaskCandidate, config: QualityConfig) -> bool:
    return (
        candidate.iou_score >= config.min_iou
        and candidate.stability_score >= config.min_stability
        and candidate.compactness >= config.min_compactness
    )


def select_best_candidate(
    candidates: Sequence[MaskCandidate],
    config: Optional[QualityConfig] = None,
) -> MaskCandidate:
    """
    Pick the best candidate.

    The highest-quality candidate passing every threshold wins; if none
    passes, the highest-quality candidate overall is returned so a call
    never fails just because the model was unsure.
    """
    if not candidates:
        raise InvalidModelOutput("Decoder produced no mask candidates")
    config = config or QualityConfig()

    qualified = [c for c in candidates if meets_thresholds(c, config)]
    pool = qualified or list(candidates)
    return max(pool, key=lambda c: c.quality_score)


# ============================================================
# BACKENDS
# ============================================================

class ModelBackend(ABC):
    """Runs the encoder and decoder networks.

    Implementations receive preprocessed tensors and return raw outputs;
    all geometry and scoring stays in SegmentationModel.
    """

    name = "backend"

    def load(self) -> None:
        """Load model weights (optional)."""
        pass

    @abstractmethod
    def encode(self, image_tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the encoder on a [1, 3, S, S] tensor."""
        pass

    @abstractmethod
    def decode(
        self,
        embeddings: NDArray[np.float32],
        point_coords: NDArray[np.float32],
        point_labels: NDArray[np.float32],
    ) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
        """Run the decoder.

        Returns:
            (mask logits [1, K, h, w], iou predictions [1, K])
        """
        pass

    def close(self) -> None:
        """Release runtime resources (optional)."""
        pass


class OnnxModelBackend(ModelBackend):
    """Encoder/decoder pair exported to ONNX, run through onnxruntime.

    Execution providers are tried in the configured order; the CPU
    provider is always kept as the final fallback.
    """

    name = "onnxruntime"

    def __init__(
        self,
        encoder_path: str,
        decoder_path: str,
        providers: Optional[List[str]] = None,
    ):
        self.encoder_path = encoder_path
        self.decoder_path = decoder_path
        self.requested_providers = providers or ["CPUExecutionProvider"]
        self.providers: List[str] = []
        self._encoder = None
        self._decoder = None

    def load(self) -> None:
        if self._encoder is not None:
            return
        import onnxruntime as ort

        report = validate_environment()
        for issue in report.issues:
            logger.warning(issue)
        if not report.can_run:
            raise EmbeddingComputeFailure(
                f"onnxruntime cannot run here (providers: {report.available_providers})"
            )

        providers = [p for p in self.requested_providers if p in report.available_providers]
        if "CPUExecutionProvider" not in providers:
            providers.append("CPUExecutionProvider")

        try:
            logger.info(f"Loading encoder {self.encoder_path} with providers {providers}")
            self._encoder = ort.InferenceSession(self.encoder_path, providers=providers)
            logger.info(f"Loading decoder {self.decoder_path}")
            self._decoder = ort.InferenceSession(self.decoder_path, providers=providers)
        except Exception as e:
            self._encoder = None
            self._decoder = None
            raise EmbeddingComputeFailure(f"Failed to load ONNX models: {e}") from e

        self.providers = self._encoder.get_providers()
        logger.info(f"ONNX sessions ready on {self.providers[0]}")

    def encode(self, image_tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        self.load()
        input_name = self._encoder.get_inputs()[0].name
        outputs = self._encoder.run(None, {input_name: image_tensor})
        return outputs[0]

    def decode(
        self,
        embeddings: NDArray[np.float32],
        point_coords: NDArray[np.float32],
        point_labels: NDArray[np.float32],
    ) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
        self.load()
        feeds = {}
        for model_input in self._decoder.get_inputs():
            name = model_input.name
            if "image" in name or "embed" in name:
                feeds[name] = embeddings
            elif "coord" in name:
                feeds[name] = point_coords
            elif "label" in name:
                feeds[name] = point_labels

        output_names = [o.name for o in self._decoder.get_outputs()]
        outputs = dict(zip(output_names, self._decoder.run(None, feeds)))

        masks = scores = None
        for name, value in outputs.items():
            if "mask" in name and "score" not in name:
                masks = value
            elif "score" in name or "iou" in name:
                scores = value
        if masks is None or scores is None:
            raise InvalidModelOutput(f"Decoder outputs {output_names} lack masks or scores")
        return masks, scores

    def close(self) -> None:
        self._encoder = None
        self._decoder = None


@dataclass
class EnvironmentReport:
    """What the local runtime can do."""
    available_providers: List[str] = field(default_factory=list)
    can_run: bool = False
    issues: List[str] = field(default_factory=list)


def validate_environment() -> EnvironmentReport:
    """Check the inference runtime up front so failures are visible before first use."""
    import onnxruntime as ort

    report = EnvironmentReport()
    report.available_providers = list(ort.get_available_providers())
    report.can_run = "CPUExecutionProvider" in report.available_providers
    if not any(p != "CPUExecutionProvider" for p in report.available_providers):
        report.issues.append("No GPU execution provider (will use CPU)")
    logger.info(f"Inference environment: {report.available_providers}")
    return report


# ============================================================
# SESSION
# ============================================================

class SegmentationModel:
    """
    Encode/decode session around a ModelBackend.

    Guarantees:
    - decode never runs without embeddings (callers hold an Embeddings object)
    - every candidate carries IoU, stability, compactness and quality
    - backend errors surface as EmbeddingComputeFailure / DecodeFailure
    """

    def __init__(
        self,
        backend: ModelBackend,
        model_config: Optional[ModelConfig] = None,
        quality_config: Optional[QualityConfig] = None,
        mask_threshold: float = 0.0,
    ):
        """
        Initialize the session.

        Args:
            backend: Network runner
            model_config: Input size and normalization
            quality_config: Scoring and selection thresholds
            mask_threshold: Logit threshold used for coverage and compactness
        """
        self.backend = backend
        self.model_config = model_config or ModelConfig()
        self.quality_config = quality_config or QualityConfig()
        self.mask_threshold = mask_threshold

        # Performance tracking
        self._decode_times: List[float] = []
        self._max_timing_history = 100

    @classmethod
    def from_config(cls, config) -> SegmentationModel:
        """Build an ONNX-backed session from a Config."""
        if not config.model.encoder_path or not config.model.decoder_path:
            raise ValueError("Model config needs both encoder_path and decoder_path")
        backend = OnnxModelBackend(
            config.model.encoder_path,
            config.model.decoder_path,
            providers=config.model.providers,
        )
        return cls(
            backend,
            model_config=config.model,
            quality_config=config.quality,
            mask_threshold=config.postprocess.mask_threshold,
        )

    def encode(self, image: NDArray[np.uint8]) -> Embeddings:
        """
        Compute embeddings for an image.

        Args:
            image: RGB image (H x W x 3)

        Returns:
            Embeddings holding the tensor, letterbox geometry and a grayscale guide

        Raises:
            EmbeddingComputeFailure: If preprocessing or the encoder fails
        """
        start_time = time.perf_counter()
        try:
            tensor, resize_info = preprocess_image(
                image,
                self.model_config.input_size,
                self.model_config.pixel_mean,
                self.model_config.pixel_std,
            )
            output = self.backend.encode(tensor)
        except EmbeddingComputeFailure:
            raise
        except Exception as e:
            raise EmbeddingComputeFailure(f"Encoder failed: {e}") from e

        if output is None or np.asarray(output).size == 0:
            raise EmbeddingComputeFailure("Encoder returned no embeddings")

        elapsed = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Computed embeddings for {resize_info.original_width}x{resize_info.original_height} "
            f"image in {elapsed:.0f}ms"
        )
        return Embeddings(
            tensor=np.asarray(output, dtype=np.float32),
            resize_info=resize_info,
            image_size=ImageSize(resize_info.original_width, resize_info.original_height),
            guide=to_grayscale_guide(image),
            encode_time_ms=elapsed,
        )

    def decode(self, embeddings: Embeddings, points: Sequence[PointPrompt]) -> List[MaskCandidate]:
        """
        Run the decoder once and score every candidate it returns.

        Args:
            embeddings: Output of encode() for the same image
            points: Prompts in source-image pixels

        Returns:
            Scored candidates, cropped to the unpadded region

        Raises:
            EmptyPointSet: If no points are given
            DecodeFailure: If the decoder raises
            InvalidModelOutput: If outputs are missing or mis-shaped
        """
        if not points:
            raise EmptyPointSet("decode needs at least one point")

        start_time = time.perf_counter()
        scale = embeddings.resize_info.scale
        coords = np.array([[[p.x * scale, p.y * scale] for p in points]], dtype=np.float32)
        labels = np.array([[float(p.label) for p in points]], dtype=np.float32)

        try:
            masks, scores = self.backend.decode(embeddings.tensor, coords, labels)
        except SegmentationError:
            raise
        except Exception as e:
            raise DecodeFailure(f"Decoder failed: {e}") from e

        masks, scores = self._validate_outputs(masks, scores)
        crop_h, crop_w = self._crop_shape(embeddings.resize_info, masks.shape[1:])

        candidates = [
            score_candidate(
                index=k,
                logits=np.ascontiguousarray(masks[k, :crop_h, :crop_w]),
                iou=float(scores[k]),
                config=self.quality_config,
                mask_threshold=self.mask_threshold,
            )
            for k in range(masks.shape[0])
        ]

        self._record_decode_time((time.perf_counter() - start_time) * 1000)
        return candidates

    def select(self, candidates: Sequence[MaskCandidate]) -> MaskCandidate:
        return select_best_candidate(candidates, self.quality_config)

    def _validate_outputs(self, masks, scores) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
        if masks is None or scores is None:
            raise InvalidModelOutput("Decoder returned no masks or scores")

        masks = np.asarray(masks, dtype=np.float32)
        scores = np.asarray(scores, dtype=np.float32).reshape(-1)

        if masks.ndim == 4:
            if masks.shape[0] != 1:
                raise InvalidModelOutput(f"Expected batch size 1, got mask shape {masks.shape}")
            masks = masks[0]
        elif masks.ndim == 2:
            masks = masks[None]
        elif masks.ndim != 3:
            raise InvalidModelOutput(f"Unexpected mask shape {masks.shape}")

        if masks.shape[0] == 0 or masks.shape[1] == 0 or masks.shape[2] == 0:
            raise InvalidModelOutput(f"Empty mask tensor {masks.shape}")
        if scores.shape[0] != masks.shape[0]:
            raise InvalidModelOutput(
                f"{masks.shape[0]} masks but {scores.shape[0]} scores from decoder"
            )
        return masks, scores

    def _crop_shape(self, info: ResizeInfo, mask_shape: Tuple[int, int]) -> Tuple[int, int]:
        """Region of the low-resolution mask that corresponds to real image pixels."""
        mask_h, mask_w = mask_shape
        input_size = self.model_config.input_size
        crop_h = int(round(info.resized_height / input_size * mask_h))
        crop_w = int(round(info.resized_width / input_size * mask_w))
        return max(1, min(crop_h, mask_h)), max(1, min(crop_w, mask_w))

    def _record_decode_time(self, elapsed_ms: float) -> None:
        self._decode_times.append(elapsed_ms)
        if len(self._decode_times) > self._max_timing_history:
            self._decode_times.pop(0)
        logger.debug(f"Decode took {elapsed_ms:.1f}ms")

    @property
    def average_decode_time_ms(self) -> float:
        if not self._decode_times:
            return 0.0
        return sum(self._decode_times) / len(self._decode_times)

    def close(self) -> None:
        self.backend.close()
        logger.info("Segmentation model shutdown complete")
