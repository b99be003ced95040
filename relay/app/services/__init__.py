"""Services package for the relay.

This package provides:
- The rate limit aware retry loop shared by every provider
- Sequential chunked submission for oversized uploads
"""

from relay.app.services.chunked_upload import (
    Chunk,
    ChunkedUploadCoordinator,
    ChunkedUploadResult,
    ChunkTarget,
    split_into_chunks,
)
from relay.app.services.orchestrator import (
    PROVIDER_PROFILES,
    ProviderProfile,
    RetryOrchestrator,
    calculate_exponential_backoff,
    synthesize_denial,
)

__all__ = [
    # Chunking
    "Chunk",
    "ChunkedUploadCoordinator",
    "ChunkedUploadResult",
    "ChunkTarget",
    "split_into_chunks",
    # Retry
    "PROVIDER_PROFILES",
    "ProviderProfile",
    "RetryOrchestrator",
    "calculate_exponential_backoff",
    "synthesize_denial",
]
