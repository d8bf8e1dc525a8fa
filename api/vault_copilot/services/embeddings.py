"""
Embedding generation for vault chunks and queries.

Uses the same OpenAI-compatible clients as the chat models; the active
embedding model is selected by `embedding_model_key` in the plugin settings.
"""

import logging

from vault_copilot.core.cancellation import CancellationToken, guarded
from vault_copilot.core.config import Settings
from vault_copilot.core.errors import ConfigurationError
from vault_copilot.core.telemetry import get_tracer
from vault_copilot.models.settings import find_custom_model
from vault_copilot.services.chat_models import ClientFactory, create_client
from vault_copilot.services.settings_store import SettingsStore

logger = logging.getLogger(__name__)


class OpenAIEmbeddings:
    """Wrapper around an OpenAI-compatible embeddings endpoint."""

    def __init__(self, client, model_name: str, batch_size: int = 16) -> None:
        self.client = client
        self.model_name = model_name
        self.batch_size = batch_size
        self._tracer = get_tracer()

    async def embed_query(
        self, text: str, cancellation: CancellationToken | None = None
    ) -> list[float]:
        """
        Generate an embedding vector for a single query.

        Args:
            text: The text to embed.
            cancellation: Token raced against the provider call.

        Returns:
            A list of floats representing the embedding vector.
        """
        with self._tracer.start_as_current_span("embeddings.embed_query") as span:
            span.set_attribute("embeddings.model", self.model_name)
            response = await guarded(
                self.client.embeddings.create(input=[text], model=self.model_name),
                cancellation,
            )
            return response.data[0].embedding

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for many texts, in batches to avoid API limits.

        Returns:
            List of embedding vectors (same order as input).
        """
        all_embeddings: list[list[float]] = []
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size
        with self._tracer.start_as_current_span("embeddings.embed_documents") as span:
            span.set_attribute("embeddings.model", self.model_name)
            span.set_attribute("embeddings.count", len(texts))
            for i in range(0, len(texts), self.batch_size):
                batch = texts[i : i + self.batch_size]
                logger.info("Embedding batch %d/%d (%d items)",
                            i // self.batch_size + 1, total_batches, len(batch))
                response = await self.client.embeddings.create(
                    input=batch, model=self.model_name
                )
                all_embeddings.extend(item.embedding for item in response.data)

        logger.info("Generated %d embeddings total.", len(all_embeddings))
        return all_embeddings


class EmbeddingsManager:
    """Resolves the configured embedding model to an OpenAIEmbeddings handle."""

    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        client_factory: ClientFactory = create_client,
    ) -> None:
        self._settings = settings
        self._store = store
        self._client_factory = client_factory
        self._cached_key: str | None = None
        self._embeddings: OpenAIEmbeddings | None = None

    def get_embeddings_api(self) -> OpenAIEmbeddings | None:
        """Return the embeddings handle, or None when it cannot be configured."""
        plugin_settings = self._store.get()
        key = plugin_settings.embedding_model_key
        if self._embeddings is not None and self._cached_key == key:
            return self._embeddings

        try:
            model = find_custom_model(key, plugin_settings.active_embedding_models)
            if model is None:
                logger.error("No embedding model configuration found for: %s", key)
                return None
            client = self._client_factory(model, self._settings)
        except ConfigurationError as e:
            logger.error("Error creating embeddings API for %s: %s", key, e)
            return None

        self._embeddings = OpenAIEmbeddings(
            client, model.name, batch_size=self._settings.embedding_batch_size
        )
        self._cached_key = key
        return self._embeddings
