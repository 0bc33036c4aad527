"""Service layer helpers for external integrations."""

from .ai_cache import InMemoryAiCache, SqlAiCache, refinement_cache_key
from .embeddings_client import BedrockEmbeddingClient, EmbeddingError, get_embedding_client
from .error_reporter import LoggingErrorReporter, get_error_reporter
from .llm_client import BedrockLlmClient, LlmInvocationError, get_llm_client
from .storage import MissingMediaError, S3MediaStore, StorageError
from .transcribe import (
    ProviderTranscript,
    TranscribeService,
    TranscribeServiceError,
    get_transcribe_service,
)

__all__ = [
    "BedrockEmbeddingClient",
    "BedrockLlmClient",
    "EmbeddingError",
    "InMemoryAiCache",
    "LlmInvocationError",
    "LoggingErrorReporter",
    "MissingMediaError",
    "ProviderTranscript",
    "S3MediaStore",
    "SqlAiCache",
    "StorageError",
    "TranscribeService",
    "TranscribeServiceError",
    "get_embedding_client",
    "get_error_reporter",
    "get_llm_client",
    "get_transcribe_service",
    "refinement_cache_key",
]
