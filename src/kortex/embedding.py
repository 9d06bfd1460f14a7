"""Embedding providers for model-agnostic vector generation.

Three interchangeable providers share the ``EmbeddingProvider`` contract:

    - LocalEmbedding: sentence-transformers model running in-process
    - OllamaEmbedding: a local Ollama daemon over HTTP
    - OpenAIEmbedding: the OpenAI embeddings API

Providers document their ``max_input_length``; none of them truncates input on
the caller's behalf. Batch embedding always runs with a bounded concurrency
window or native batching, never an unbounded fan-out.
"""

import asyncio
import importlib.util
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError

from kortex.config import EmbeddingSettings
from kortex.errors import EmbeddingError, ProviderUnavailable, UnknownProviderError

OLLAMA_MODEL_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "snowflake-arctic-embed": 1024,
}


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol for embedding provider implementations."""

    name: str
    max_input_length: int
    max_batch_size: int

    @property
    def dimensions(self) -> int:
        """Length of the vectors this provider produces."""
        ...

    async def initialize(self) -> None:
        """Load the model or verify connectivity.

        Idempotent: repeat calls after success are no-ops.

        Raises:
            ProviderUnavailable: If the provider cannot be used
        """
        ...

    async def embed(self, text: str) -> list[float]:
        """Generate the embedding for a single text.

        Raises:
            EmbeddingError: If the call fails
        """
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for texts, preserving order and length."""
        ...

    async def is_available(self) -> bool:
        """Side-effect-free availability probe. Never raises."""
        ...

    async def close(self) -> None:
        """Release network clients. Safe to call more than once."""
        ...


class LocalEmbedding:
    """In-process sentence-transformers model.

    No network access or credentials needed; the model is downloaded on first
    initialization. Encoding is CPU-bound and runs in a worker thread.
    """

    name = "local"
    max_input_length = 512  # tokens; longer input is truncated by the model
    max_batch_size = 32

    def __init__(self, model_name: str, batch_size: int = 32):
        self.model_name = model_name
        self.max_batch_size = batch_size
        self._model: Any = None
        self._dimensions = 384

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def initialize(self) -> None:
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ProviderUnavailable(
                f"sentence-transformers is required for local embeddings: {e}", self.name, e
            ) from e

        try:
            model = await asyncio.to_thread(SentenceTransformer, self.model_name)
        except Exception as e:
            raise ProviderUnavailable(
                f"Failed to load local model {self.model_name!r}: {e}", self.name, e
            ) from e

        self._dimensions = int(model.get_sentence_embedding_dimension())
        self._model = model
        logger.info(f"Loaded local embedding model {self.model_name} ({self._dimensions} dims)")

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        await self.initialize()

        try:
            matrix = await asyncio.to_thread(
                self._model.encode,
                texts,
                batch_size=self.max_batch_size,
                normalize_embeddings=True,
                convert_to_numpy=True,
            )
        except Exception as e:
            raise EmbeddingError(f"Failed to generate local embedding: {e}", self.name, e) from e

        return [row.astype("float32").tolist() for row in matrix]

    async def is_available(self) -> bool:
        try:
            return importlib.util.find_spec("sentence_transformers") is not None
        except (ImportError, ValueError):
            return False

    async def close(self) -> None:
        self._model = None


class OllamaEmbedding:
    """Embedding provider backed by a running Ollama daemon.

    Ollama has no native batch endpoint, so batches are sent as single
    requests with at most ``concurrency`` in flight.
    """

    name = "ollama"
    max_input_length = 8192
    max_batch_size = 64

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        concurrency: int = 8,
        timeout_seconds: float = 30.0,
        probe_timeout_seconds: float = 5.0,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self._dimensions = OLLAMA_MODEL_DIMENSIONS.get(model, 768)
        self._initialized = False

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.host, timeout=timeout)

    async def initialize(self) -> None:
        if self._initialized:
            return

        if not await self.is_available():
            raise ProviderUnavailable(
                f"Ollama is not available at {self.host} or model {self.model} is not installed",
                self.name,
            )

        # The model table is only a guess; the daemon decides the real size.
        try:
            async with self._client(self.timeout_seconds) as client:
                vector = await self._request_embedding(client, "dimension check")
        except EmbeddingError as e:
            raise ProviderUnavailable(
                f"Ollama model {self.model} failed to embed: {e}", self.name, e
            ) from e

        if len(vector) != self._dimensions:
            logger.info(
                f"Ollama model {self.model} produces {len(vector)} dims "
                f"(table said {self._dimensions})"
            )
            self._dimensions = len(vector)
        self._initialized = True

    async def _request_embedding(self, client: httpx.AsyncClient, text: str) -> list[float]:
        try:
            response = await client.post(
                "/api/embeddings",
                json={"model": self.model, "prompt": text or " "},
            )
            response.raise_for_status()
            embedding = response.json()["embedding"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise EmbeddingError(
                f"Failed to generate embedding with Ollama: {e}", self.name, e
            ) from e

        if not embedding:
            raise EmbeddingError("Ollama returned an empty embedding", self.name)
        return [float(v) for v in embedding]

    async def _embed_with(self, client: httpx.AsyncClient, text: str) -> list[float]:
        embedding = await self._request_embedding(client, text)
        if len(embedding) != self._dimensions:
            raise EmbeddingError(
                f"Expected {self._dimensions} dimensions, got {len(embedding)}", self.name
            )
        return embedding

    async def embed(self, text: str) -> list[float]:
        await self.initialize()
        async with self._client(self.timeout_seconds) as client:
            return await self._embed_with(client, text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        await self.initialize()

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(client: httpx.AsyncClient, text: str) -> list[float]:
            async with semaphore:
                return await self._embed_with(client, text)

        async with self._client(self.timeout_seconds) as client:
            vectors = await asyncio.gather(*(bounded(client, t) for t in texts))

        logger.debug(f"Embedded {len(texts)} texts with Ollama model {self.model}")
        return list(vectors)

    async def is_available(self) -> bool:
        try:
            async with self._client(self.probe_timeout_seconds) as client:
                response = await client.get("/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            names = {m.get("name", "").split(":")[0] for m in models}
            return self.model in names
        except Exception:
            return False

    async def close(self) -> None:
        # Clients are scoped per call.
        return None


class OpenAIEmbedding:
    """OpenAI embedding client with retry logic and batching."""

    name = "openai"
    max_input_length = 8191  # tokens
    max_batch_size = 2048

    def __init__(
        self,
        api_key: str | None,
        model: str = "text-embedding-3-small",
        dimensions: int = 512,
        batch_size: int = 100,
        max_retries: int = 3,
        timeout_seconds: float = 30.0,
        probe_timeout_seconds: float = 5.0,
    ):
        self.api_key = api_key
        self.model_name = model.removeprefix("openai/")
        self._dimensions = dimensions
        self.max_batch_size = batch_size
        self.max_retries = max_retries
        self.probe_timeout_seconds = probe_timeout_seconds
        self._initialized = False
        # Retries are handled below so backoff stays under our control.
        self.client = AsyncOpenAI(
            api_key=api_key or "missing", timeout=timeout_seconds, max_retries=0
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def initialize(self) -> None:
        if self._initialized:
            return

        if not self.api_key:
            raise ProviderUnavailable(
                "OpenAI API key not provided. Set OPENAI_API_KEY environment variable.",
                self.name,
            )
        if not await self.is_available():
            raise ProviderUnavailable(
                "OpenAI API key is invalid or API is unavailable", self.name
            )
        self._initialized = True

    async def _create(self, texts: list[str]) -> list[list[float]]:
        kwargs: dict[str, Any] = {"model": self.model_name, "input": [t or " " for t in texts]}
        if self.model_name.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        for attempt in range(self.max_retries):
            try:
                response = await self.client.embeddings.create(**kwargs)

                ordered = sorted(response.data, key=lambda item: item.index)
                embeddings = [item.embedding for item in ordered]

                for i, emb in enumerate(embeddings):
                    if len(emb) != self._dimensions:
                        raise EmbeddingError(
                            f"Expected {self._dimensions} dimensions, got {len(emb)} for text {i}",
                            self.name,
                        )

                logger.debug(
                    f"Embedded {len(texts)} texts with {self.model_name} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                return embeddings

            except (httpx.TimeoutException, APITimeoutError) as e:
                logger.warning(
                    f"Timeout embedding batch (attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2**attempt)
                else:
                    raise EmbeddingError(f"OpenAI request timed out: {e}", self.name, e) from e

            except RateLimitError as e:
                logger.warning(f"Rate limited (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** (attempt + 1))
                else:
                    raise EmbeddingError(f"OpenAI rate limit exhausted: {e}", self.name, e) from e

            except (APIStatusError, APIConnectionError, httpx.HTTPError) as e:
                logger.error(f"HTTP error embedding batch: {e}")
                raise EmbeddingError(
                    f"Failed to generate embedding with OpenAI: {e}", self.name, e
                ) from e

        raise EmbeddingError("Exhausted all retry attempts", self.name)

    async def embed(self, text: str) -> list[float]:
        await self.initialize()
        embeddings = await self._create([text])
        return embeddings[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        await self.initialize()

        results: list[list[float]] = []
        for start in range(0, len(texts), self.max_batch_size):
            results.extend(await self._create(texts[start : start + self.max_batch_size]))
        return results

    async def is_available(self) -> bool:
        if not self.api_key:
            return False
        try:
            probe = self.client.with_options(timeout=self.probe_timeout_seconds, max_retries=0)
            await probe.models.list()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        await self.client.close()


def create_embedding_provider(name: str, settings: EmbeddingSettings) -> EmbeddingProvider:
    """Factory keyed by provider name.

    Args:
        name: ``local``, ``ollama`` or ``openai`` (aliases ``transformers``,
            ``daemon`` and ``remote`` are accepted)
        settings: Embedding configuration

    Returns:
        An uninitialized provider

    Raises:
        UnknownProviderError: For any other name (including ``auto``)
    """
    key = {"transformers": "local", "daemon": "ollama", "remote": "openai"}.get(name, name)

    if key == "openai":
        cfg = settings.openai
        return OpenAIEmbedding(
            api_key=cfg.resolved_api_key(),
            model=cfg.model,
            dimensions=cfg.dimensions,
            batch_size=cfg.batch_size,
            max_retries=cfg.max_retries,
            timeout_seconds=cfg.timeout_seconds,
            probe_timeout_seconds=settings.probe_timeout_seconds,
        )
    elif key == "ollama":
        cfg_o = settings.ollama
        return OllamaEmbedding(
            host=cfg_o.host,
            model=cfg_o.model,
            concurrency=cfg_o.concurrency,
            timeout_seconds=cfg_o.timeout_seconds,
            probe_timeout_seconds=settings.probe_timeout_seconds,
        )
    elif key == "local":
        return LocalEmbedding(settings.local.model, batch_size=settings.local.batch_size)
    else:
        raise UnknownProviderError(f"Unknown embedding provider: {name!r}")


def prepare_text_for_embedding(
    title: str,
    content: str,
    tags: list[str] | None = None,
    context_summary: str | None = None,
) -> str:
    """Combine title, summary (or first paragraph) and tags into embedding text."""
    parts = [title]

    if context_summary:
        parts.append(context_summary)
    else:
        first_paragraph = extract_first_paragraph(content)
        if first_paragraph:
            parts.append(first_paragraph)

    if tags:
        parts.append(" ".join(tags))

    return "\n\n".join(p for p in parts if p)


def extract_first_paragraph(content: str, max_lines: int = 5, max_chars: int = 500) -> str:
    """Return the first meaningful paragraph of markdown content.

    Skips front-matter and leading headers; stops at a blank line or the next
    header.
    """
    text = content
    if text.startswith("---"):
        end = text.find("---", 3)
        if end != -1:
            text = text[end + 3 :].strip()

    lines = text.split("\n")
    start = 0
    while start < len(lines):
        line = lines[start]
        if line and not line.startswith("#") and line.strip():
            break
        start += 1

    paragraph: list[str] = []
    for line in lines[start:]:
        if len(paragraph) >= max_lines:
            break
        if not line.strip():
            if paragraph:
                break
            continue
        if line.startswith("#"):
            break
        paragraph.append(line)

    return " ".join(paragraph).strip()[:max_chars]
