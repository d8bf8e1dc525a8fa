"""
Chat model registry.

Maps a configured CustomModel to an async OpenAI-compatible client and wraps
it in a ChatModel handle that streams completions. Every supported provider
speaks the OpenAI chat completions protocol; Azure OpenAI uses Entra ID
token auth (DefaultAzureCredential) when no API key is configured.
"""

import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from azure.identity import DefaultAzureCredential, get_bearer_token_provider
from openai import AsyncAzureOpenAI, AsyncOpenAI

from vault_copilot.core.cancellation import CancellationToken, guarded
from vault_copilot.core.config import Settings
from vault_copilot.core.errors import ConfigurationError
from vault_copilot.core.telemetry import get_tracer
from vault_copilot.models.settings import CustomModel, ModelProvider
from vault_copilot.services.settings_store import SettingsStore

logger = logging.getLogger(__name__)

AZURE_COGNITIVE_SCOPE = "https://cognitiveservices.azure.com/.default"

ClientFactory = Callable[[CustomModel, Settings], Any]

_END = object()


def create_client(model: CustomModel, settings: Settings) -> AsyncOpenAI:
    """Build an async client for `model`'s provider, or raise ConfigurationError."""
    provider = model.provider

    if provider is ModelProvider.AZURE_OPENAI:
        endpoint = model.base_url or settings.azure_openai_endpoint
        if not endpoint:
            raise ConfigurationError("Azure OpenAI endpoint is not set.")
        api_key = model.api_key or settings.azure_openai_api_key
        if api_key:
            return AsyncAzureOpenAI(
                azure_endpoint=endpoint,
                api_key=api_key,
                api_version=settings.azure_openai_api_version,
            )
        # Use Entra ID token-based auth (no API keys)
        token_provider = get_bearer_token_provider(
            DefaultAzureCredential(), AZURE_COGNITIVE_SCOPE
        )
        return AsyncAzureOpenAI(
            azure_endpoint=endpoint,
            azure_ad_token_provider=token_provider,
            api_version=settings.azure_openai_api_version,
        )

    if provider is ModelProvider.OPENAI:
        api_key = model.api_key or settings.openai_api_key
        if not api_key:
            raise ConfigurationError(
                "OpenAI API key is not set. Put it in a .env file or environment variable."
            )
        return AsyncOpenAI(
            api_key=api_key,
            organization=settings.openai_org_id or None,
            base_url=model.base_url or None,
        )

    if provider is ModelProvider.OPENROUTER:
        api_key = model.api_key or settings.openrouter_api_key
        if not api_key:
            raise ConfigurationError("OpenRouter API key is not set.")
        return AsyncOpenAI(api_key=api_key, base_url=model.base_url or settings.openrouter_base_url)

    if provider is ModelProvider.OLLAMA:
        return AsyncOpenAI(api_key="ollama", base_url=model.base_url or settings.ollama_base_url)

    if provider is ModelProvider.LM_STUDIO:
        return AsyncOpenAI(
            api_key="lm-studio", base_url=model.base_url or settings.lm_studio_base_url
        )

    if not model.base_url:
        raise ConfigurationError(f"Model {model.key} needs a base URL.")
    return AsyncOpenAI(api_key=model.api_key or "not-needed", base_url=model.base_url)


async def _next_or_end(iterator: Any) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class ChatModel:
    """An initialized chat model handle bound to one provider client."""

    def __init__(
        self,
        client: Any,
        custom_model: CustomModel,
        temperature: float = 0.1,
        max_tokens: int = 1000,
    ) -> None:
        self.client = client
        self.custom_model = custom_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._tracer = get_tracer()

    @property
    def model_name(self) -> str:
        return self.custom_model.name

    @property
    def provider(self) -> ModelProvider:
        return self.custom_model.provider

    @property
    def is_reasoning_model(self) -> bool:
        """Reasoning-only variants reject the system role and sampling parameters."""
        return self.custom_model.capabilities.reasoning or self.model_name.startswith("o1")

    def _request_params(self) -> dict[str, Any]:
        if self.is_reasoning_model:
            return {"max_completion_tokens": self.max_tokens}
        return {"temperature": self.temperature, "max_tokens": self.max_tokens}

    async def astream(
        self,
        messages: list[dict[str, str]],
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """
        Stream completion tokens for `messages`.

        The request and every chunk read are raced against `cancellation`;
        once it fires the provider stream is closed and
        OperationCancelledError propagates to the caller.
        """
        with self._tracer.start_as_current_span("chat_model.stream") as span:
            span.set_attribute("llm.model", self.model_name)
            span.set_attribute("llm.provider", self.provider.value)
            span.set_attribute("llm.message_count", len(messages))

            stream = await guarded(
                self.client.chat.completions.create(
                    model=self.model_name,
                    messages=messages,
                    stream=True,
                    **self._request_params(),
                ),
                cancellation,
            )
            try:
                while True:
                    chunk = await guarded(_next_or_end(stream), cancellation)
                    if chunk is _END:
                        break
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta.content
                    if delta:
                        yield delta
            finally:
                await stream.close()

    async def ainvoke(
        self,
        messages: list[dict[str, str]],
        cancellation: CancellationToken | None = None,
    ) -> str:
        parts = [token async for token in self.astream(messages, cancellation)]
        return "".join(parts)

    def __repr__(self) -> str:
        return f"ChatModel({self.custom_model.key!r})"


class ChatModelManager:
    """Holds the active chat model handle."""

    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        client_factory: ClientFactory = create_client,
    ) -> None:
        self._settings = settings
        self._store = store
        self._client_factory = client_factory
        self._chat_model: ChatModel | None = None

    def get_chat_model(self) -> ChatModel | None:
        return self._chat_model

    def set_chat_model(self, custom_model: CustomModel) -> ChatModel:
        """
        Build a handle for `custom_model` and make it active.

        On failure the previous handle stays active and ConfigurationError
        is raised.
        """
        if not custom_model.enabled:
            raise ConfigurationError(f"Model {custom_model.key} is disabled.")
        try:
            client = self._client_factory(custom_model, self._settings)
        except ConfigurationError:
            logger.error("Error creating chat model %s", custom_model.key)
            raise
        plugin_settings = self._store.get()
        self._chat_model = ChatModel(
            client,
            custom_model,
            temperature=plugin_settings.temperature,
            max_tokens=plugin_settings.max_tokens,
        )
        logger.info("Chat model set to %s", custom_model.key)
        return self._chat_model

    @staticmethod
    def validate_chat_model(chat_model: ChatModel | None) -> bool:
        return (
            chat_model is not None
            and chat_model.client is not None
            and bool(chat_model.model_name)
        )
