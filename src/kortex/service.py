"""Embedding service: provider selection, lazy initialization and delegation.

The selected provider is memoized per service instance. Initialization is
guarded by an ``asyncio.Lock`` so concurrent first use initializes exactly one
provider.
"""

import asyncio
from collections.abc import Callable

from loguru import logger

from kortex.config import EmbeddingSettings
from kortex.embedding import EmbeddingProvider, create_embedding_provider
from kortex.errors import NoProviderAvailable, ProviderUnavailable, ServiceNotInitialized

ProviderFactory = Callable[[str, EmbeddingSettings], EmbeddingProvider]

AUTO_PRIORITY = ("openai", "ollama", "local")


class EmbeddingService:
    """Selects one embedding provider and exposes single and batch embedding.

    Args:
        settings: Embedding configuration (defaults used when omitted)
        provider_factory: Builds a provider from its name; injectable for tests
    """

    def __init__(
        self,
        settings: EmbeddingSettings | None = None,
        provider_factory: ProviderFactory = create_embedding_provider,
    ):
        self.settings = settings or EmbeddingSettings()
        self._factory = provider_factory
        self._provider: EmbeddingProvider | None = None
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._provider is not None

    @property
    def dimensions(self) -> int:
        if self._provider is None:
            raise ServiceNotInitialized("Embedding service not initialized")
        return self._provider.dimensions

    @property
    def provider_name(self) -> str:
        return self._provider.name if self._provider is not None else "none"

    async def initialize(self) -> None:
        """Select and initialize a provider once.

        Raises:
            ProviderUnavailable: Explicitly configured provider cannot be used
            NoProviderAvailable: Auto-selection found no usable provider
        """
        if self._provider is not None:
            return

        async with self._init_lock:
            if self._provider is not None:
                return

            if self.settings.provider == "auto":
                provider = await self._auto_select()
            else:
                provider = self._factory(self.settings.provider, self.settings)
                try:
                    await provider.initialize()
                except ProviderUnavailable:
                    await provider.close()
                    raise

            self._provider = provider
            logger.info(f"Using {provider.name} embeddings ({provider.dimensions} dims)")

    async def _auto_select(self) -> EmbeddingProvider:
        """Probe candidates by priority: OpenAI (if keyed) > Ollama > local."""
        tried: list[str] = []

        for name in AUTO_PRIORITY:
            if name == "openai" and not self.settings.openai.resolved_api_key():
                continue

            tried.append(name)
            candidate = self._factory(name, self.settings)
            if not await candidate.is_available():
                logger.debug(f"Embedding provider {name} not available")
                await candidate.close()
                continue

            try:
                await candidate.initialize()
            except ProviderUnavailable as e:
                logger.warning(f"Embedding provider {name} failed to initialize: {e}")
                await candidate.close()
                continue
            return candidate

        raise NoProviderAvailable(tried)

    async def embed(self, text: str) -> list[float]:
        await self.initialize()
        assert self._provider is not None
        return await self._provider.embed(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        await self.initialize()
        assert self._provider is not None
        return await self._provider.embed_batch(texts)

    async def check_provider(self, name: str) -> bool:
        """Probe a provider by name without selecting it."""
        provider = self._factory(name, self.settings)
        try:
            return await provider.is_available()
        finally:
            await provider.close()

    async def close(self) -> None:
        """Close the selected provider; the service can be initialized again."""
        provider, self._provider = self._provider, None
        if provider is not None:
            await provider.close()
