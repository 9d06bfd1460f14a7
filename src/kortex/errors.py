"""Exception hierarchy for the kortex retrieval pipeline.

Provider failures during auto-selection are recoverable and swallowed by the
embedding service; only total exhaustion surfaces as ``NoProviderAvailable``.
A disabled vector index is never an exception: it is reported through
``VectorIndex.is_available()``.
"""

from __future__ import annotations


class KortexError(Exception):
    """Base exception for all kortex errors.

    Attributes:
        message: Human-readable error description
        context: Optional diagnostic object (request, response, state)
    """

    def __init__(self, message: str, context: object | None = None):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message


class EmbeddingError(KortexError):
    """A single embedding call failed."""

    def __init__(self, message: str, provider: str, cause: BaseException | None = None):
        super().__init__(message, context=cause)
        self.provider = provider
        self.cause = cause


class ProviderUnavailable(EmbeddingError):
    """A provider could not be initialized or failed its availability probe."""


class NoProviderAvailable(EmbeddingError):
    """Auto-selection exhausted every candidate provider."""

    def __init__(self, tried: list[str]):
        tried_text = ", ".join(tried) if tried else "none"
        message = (
            f"No embedding provider available (tried: {tried_text}). "
            "Install sentence-transformers for local embeddings, run Ollama with the "
            "configured model pulled, or set OPENAI_API_KEY."
        )
        super().__init__(message, provider="service")
        self.tried = list(tried)


class ServiceNotInitialized(KortexError, RuntimeError):
    """Service state was queried before ``initialize()`` completed."""


class UnknownProviderError(KortexError, ValueError):
    """Provider factory was asked for a name it does not know."""


class StorageError(KortexError):
    """Record store operation failed.

    Attributes:
        code: One of ``StorageErrorCodes``
    """

    def __init__(self, message: str, code: str, context: object | None = None):
        super().__init__(message, context=context)
        self.code = code


class StorageErrorCodes:
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    INVALID_INPUT = "INVALID_INPUT"
    UNKNOWN = "UNKNOWN"
