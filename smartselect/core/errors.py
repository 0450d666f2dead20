"""
Error taxonomy and failure reporting.

Every failure inside the segmentation pipeline is one of the exceptions
below. Interactive callers degrade to "no state change" on any of them;
batch callers log and move on to the next prompt.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional
from loguru import logger


class SegmentationError(Exception):
    """Base class for every segmentation pipeline failure."""
    kind = "segmentation_error"


class EmbeddingComputeFailure(SegmentationError):
    """Encoder could not produce embeddings (model load, OOM, backend unavailable)."""
    kind = "embedding_compute_failure"


class EmbeddingsMissing(SegmentationError):
    """Decode requested for a document whose embeddings were never computed or were released."""
    kind = "embeddings_missing"


class DecodeFailure(SegmentationError):
    """Runtime error during a point-prompt decode."""
    kind = "decode_failure"


class RequestTimeout(DecodeFailure):
    """No response arrived within the request's time budget."""
    kind = "request_timeout"


class InvalidModelOutput(DecodeFailure):
    """Decoder returned missing or mis-shaped tensors."""
    kind = "invalid_model_output"


class EmptyPointSet(SegmentationError, ValueError):
    """A segmentation request was made with no points."""
    kind = "empty_point_set"


ERROR_KINDS = {
    cls.kind: cls
    for cls in (
        SegmentationError,
        EmbeddingComputeFailure,
        EmbeddingsMissing,
        DecodeFailure,
        RequestTimeout,
        InvalidModelOutput,
        EmptyPointSet,
    )
}


def error_from_kind(kind: str, message: str) -> SegmentationError:
    """Rebuild an exception sent across the worker boundary."""
    return ERROR_KINDS.get(kind, DecodeFailure)(message)


# ============================================================
# REPORTING
# ============================================================

class ErrorSeverity(Enum):
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


@dataclass
class MLError:
    """A failure record surfaced to the host."""
    stage: str
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    document_id: Optional[str] = None
    cause: Optional[BaseException] = None
    timestamp: float = field(default_factory=time.time)


class ErrorReporter:
    """
    Logs failures and forwards them to registered handlers.

    Handlers are plain callables taking an MLError. A handler that raises
    is logged and skipped so one bad listener cannot hide the report
    from the others.
    """

    def __init__(self):
        self._handlers: List[Callable[[MLError], None]] = []
        self.reported: int = 0

    def add_handler(self, handler: Callable[[MLError], None]) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: Callable[[MLError], None]) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def report(self, error: MLError) -> None:
        self.reported += 1
        if error.severity == ErrorSeverity.WARNING:
            logger.warning(f"[{error.stage}] {error.message}")
        else:
            logger.error(f"[{error.stage}] {error.message}")

        for handler in list(self._handlers):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"Error handler {handler!r} failed: {e}")

    def report_exception(
        self,
        stage: str,
        exc: BaseException,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        document_id: Optional[str] = None,
    ) -> MLError:
        error = MLError(
            stage=stage,
            message=str(exc) or exc.__class__.__name__,
            severity=severity,
            document_id=document_id,
            cause=exc,
        )
        self.report(error)
        return error
