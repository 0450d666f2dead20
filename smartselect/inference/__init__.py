"""
Inference module.

Responsibilities:
- Dedicated worker thread owning the model and embedding cache
- Correlation-id request/response messages
- Asyncio client with per-request timeouts
"""

from .messages import (
    SegmentResponse,
    EmbeddingsReadyResponse,
    AutoSegmentBatchResponse,
    ErrorResponse,
    next_correlation_id,
)
from .worker import InferenceWorker
from .client import InferenceClient
