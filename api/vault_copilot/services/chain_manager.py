"""
Chain manager.

Owns the active pipelines for one chat session, rebuilds them when the
model, the chain type or other settings change, and executes chat turns by
dispatching to the runner registered for the active chain type.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from vault_copilot.core.cancellation import CancellationToken
from vault_copilot.core.errors import (
    ConfigurationError,
    CopilotError,
    DuplicateModelError,
    InitializationError,
    UnsupportedChainTypeError,
)
from vault_copilot.core.events import Subscription, Topic
from vault_copilot.core.notices import Notifier
from vault_copilot.core.telemetry import get_tracer
from vault_copilot.models.chat import ChatMessage, Sender, StreamEvent
from vault_copilot.models.settings import (
    BUILTIN_CHAT_MODELS,
    ChainType,
    IndexStrategy,
    RetrievalOptions,
    find_custom_model,
)
from vault_copilot.services.chain_factory import (
    ChainFactory,
    PlainPipeline,
    RetrievalPipeline,
    is_supported_pipeline,
)
from vault_copilot.services.chain_runner import (
    RUNNERS,
    ChainRunner,
    FinalCallback,
    PartialCallback,
    RunChainOptions,
)
from vault_copilot.services.chat_models import ChatModel, ChatModelManager
from vault_copilot.services.embeddings import OpenAIEmbeddings
from vault_copilot.services.memory import MemoryManager
from vault_copilot.services.prompts import (
    ChatPrompt,
    DropSystemAdapter,
    PromptAdapter,
    PromptManager,
    adapter_for_model,
)
from vault_copilot.services.retriever import HybridRetriever
from vault_copilot.services.settings_store import SettingsStore
from vault_copilot.services.tools import (
    CommandToolPlanner,
    CurrentTimeTool,
    Tool,
    ToolPlanner,
    VaultSearchTool,
)
from vault_copilot.services.vector_store import Document, LocalVectorStore, VectorStoreManager

logger = logging.getLogger(__name__)

MIN_SIMILARITY_SCORE = 0.01

NO_MODEL_NOTICE = "No chat model is set. Please check your settings and choose a valid model."


@dataclass(frozen=True)
class SetChainOptions:
    refresh_index: bool = False
    prompt: ChatPrompt | None = None
    prompt_adapter: PromptAdapter | None = None


class ChainManager:
    """Builds, rebuilds and runs the chat pipelines for one session."""

    def __init__(
        self,
        store: SettingsStore,
        chat_model_manager: ChatModelManager,
        memory_manager: MemoryManager,
        prompt_manager: PromptManager,
        vector_store_manager: VectorStoreManager,
        notifier: Notifier,
        tool_planner: ToolPlanner | None = None,
        tools: dict[str, Tool] | None = None,
    ) -> None:
        self.store = store
        self.chat_model_manager = chat_model_manager
        self.memory_manager = memory_manager
        self.prompt_manager = prompt_manager
        self.vector_store_manager = vector_store_manager
        self.notifier = notifier
        self.tool_planner = tool_planner or CommandToolPlanner()
        self.tools = tools if tools is not None else self._default_tools()

        self.retrieved_documents: list[Document] = []
        self._chain: PlainPipeline | None = None
        self._retrieval_chain: RetrievalPipeline | None = None
        self._active_chain_type: ChainType | None = None
        self._prompt_adapter: PromptAdapter | None = None
        self._lock = asyncio.Lock()
        self._subscriptions: list[Subscription] = []
        self._tracer = get_tracer()

    # Lifecycle

    async def start(self) -> None:
        """Subscribe to settings changes and build the initial chain."""
        bus = self.store.bus
        self._subscriptions = [
            bus.subscribe(Topic.MODEL_KEY, self._on_model_key_changed),
            bus.subscribe(Topic.CHAIN_TYPE, self._on_chain_type_changed),
            bus.subscribe(Topic.SETTINGS, self._on_settings_changed),
        ]
        await self.create_chain_with_new_model()

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    # Accessors

    @property
    def active_chain_type(self) -> ChainType:
        """The chain type of the last successful build, else the stored one."""
        return self._active_chain_type or self.store.chain_type

    def get_chain(self) -> PlainPipeline | None:
        return self._chain

    def get_retrieval_chain(self) -> RetrievalPipeline | None:
        return self._retrieval_chain

    def store_retriever_documents(self, documents: list[Document]) -> None:
        self.retrieved_documents = list(documents)

    # Building

    def _validate_chat_model(self) -> ChatModel:
        chat_model = self.chat_model_manager.get_chat_model()
        if not ChatModelManager.validate_chat_model(chat_model):
            self.notifier.notify(NO_MODEL_NOTICE)
            logger.error(NO_MODEL_NOTICE)
            raise ConfigurationError(NO_MODEL_NOTICE)
        return chat_model

    async def create_chain_with_new_model(self) -> None:
        """
        Activate the model named by `model_key` and rebuild the current chain.

        An unknown or ambiguous key falls back to the first built-in model.
        Fallbacks and model configuration errors are noticed and logged,
        never raised.
        """
        settings = self.store.get()
        try:
            try:
                custom_model = find_custom_model(settings.model_key, settings.active_models)
                reason = f"No model configuration found for {settings.model_key}."
            except DuplicateModelError as e:
                custom_model = None
                reason = str(e)
            if custom_model is None:
                custom_model = BUILTIN_CHAT_MODELS[0]
                logger.error("%s Falling back to %s.", reason, custom_model.key)
                self.notifier.notify(f"{reason} Falling back to {custom_model.key}.")
            try:
                self.chat_model_manager.set_chat_model(custom_model)
            except ConfigurationError as e:
                logger.error("Could not set chat model %s: %s", custom_model.key, e)
                self.notifier.notify(f"Could not set chat model {custom_model.key}: {e}")
                return
            await self.set_chain(settings.chain_type)
        except Exception:
            logger.exception("Error creating chain with model %s", settings.model_key)

    async def set_chain(
        self,
        chain_type: ChainType | str,
        options: SetChainOptions = SetChainOptions(),
    ) -> None:
        """
        Build the pipeline for `chain_type` and make it active.

        The previous pipeline stays in place until the new one is fully
        built, so a failed build leaves the last working chain queryable.

        Raises:
            ConfigurationError: No usable chat model, or an unsupported type.
            InitializationError: The vault index or embeddings are unavailable.
        """
        chain_type = _resolve_chain_type(chain_type)
        chat_model = self._validate_chat_model()

        async with self._lock:
            with self._tracer.start_as_current_span("chain_manager.set_chain") as span:
                span.set_attribute("chain.type", chain_type.value)
                span.set_attribute("llm.model", chat_model.model_name)
                adapter = options.prompt_adapter or adapter_for_model(chat_model)

                if chain_type is ChainType.PLAIN_CHAT:
                    self._chain = self._build_plain_pipeline(chat_model, options, adapter)
                elif chain_type is ChainType.VAULT_QA:
                    db, embeddings = await self.initialize_qa_chain(options)
                    qa_prompt = self.prompt_manager.get_qa_prompt()
                    self._retrieval_chain = ChainFactory.create_conversational_retrieval_pipeline(
                        chat_model,
                        HybridRetriever(db, embeddings, self._retrieval_options(),
                                        debug=self.store.debug),
                        system_message=self.store.system_prompt,
                        on_documents_retrieved=self.store_retriever_documents,
                        debug=self.store.debug,
                        prompt=adapter.adapt(qa_prompt) if adapter else qa_prompt,
                    )
                elif chain_type is ChainType.AGENTIC_PLUS:
                    await self.initialize_qa_chain(options)
                    self._chain = self._build_plain_pipeline(chat_model, options, adapter)
                else:
                    raise UnsupportedChainTypeError(chain_type)

                self._active_chain_type = chain_type
                self._prompt_adapter = adapter
                self.store.record_chain_type(chain_type)
                logger.info("Chain set to %s with %s", chain_type.value, chat_model.model_name)

    def _build_plain_pipeline(
        self,
        chat_model: ChatModel,
        options: SetChainOptions,
        adapter: PromptAdapter | None,
    ) -> PlainPipeline:
        prompt = options.prompt or self.prompt_manager.get_chat_prompt()
        if adapter is not None:
            prompt = adapter.adapt(prompt)
        return ChainFactory.create_plain_pipeline(
            chat_model, self.memory_manager.get_memory(), prompt
        )

    async def initialize_qa_chain(
        self, options: SetChainOptions = SetChainOptions()
    ) -> tuple[LocalVectorStore, OpenAIEmbeddings]:
        """Make sure the vault index and the embeddings API are ready."""
        embeddings = self.vector_store_manager.get_embeddings_manager().get_embeddings_api()
        if embeddings is None:
            raise InitializationError("Error getting embeddings API. Please check your settings.")

        db = self.vector_store_manager.get_db()
        if db is None:
            db = await self.vector_store_manager.initialize_db()
        if db is None:
            raise InitializationError("Vault index could not be initialized.")

        if options.refresh_index:
            await self.vector_store_manager.index_vault_to_vector_store()
            if self.vector_store_manager.get_db() is not None:
                db = self.vector_store_manager.get_db()
        return db, embeddings

    def _retrieval_options(self) -> RetrievalOptions:
        return RetrievalOptions(
            min_similarity_score=MIN_SIMILARITY_SCORE,
            max_k=self.store.get().max_source_chunks,
        )

    def _build_tool_retriever(self) -> HybridRetriever:
        return HybridRetriever(
            self.vector_store_manager.get_db(),
            self.vector_store_manager.get_embeddings_manager().get_embeddings_api(),
            self._retrieval_options(),
            debug=self.store.debug,
        )

    def _default_tools(self) -> dict[str, Tool]:
        tools = [
            VaultSearchTool(self._build_tool_retriever, self.store_retriever_documents),
            CurrentTimeTool(),
        ]
        return {tool.name: tool for tool in tools}

    # Running

    def _validate_chain_initialization(self, chain_type: ChainType, chat_model: ChatModel) -> bool:
        """True when the pipeline for `chain_type` exists and uses `chat_model`."""
        chain = self._retrieval_chain if chain_type is ChainType.VAULT_QA else self._chain
        return is_supported_pipeline(chain) and chain.model is chat_model

    def _get_chain_runner(self, chain_type: ChainType) -> ChainRunner:
        runner_cls = RUNNERS.get(chain_type)
        if runner_cls is None:
            raise UnsupportedChainTypeError(chain_type)
        return runner_cls(self)

    async def run_chain(
        self,
        user_message: ChatMessage,
        cancellation: CancellationToken,
        on_partial: PartialCallback,
        on_final: FinalCallback,
        options: RunChainOptions = RunChainOptions(),
    ) -> ChatMessage | None:
        """
        Run one chat turn on the active chain.

        Returns:
            The final AI message, or None when the turn was cancelled.
        """
        chat_model = self._validate_chat_model()
        chain_type = self.active_chain_type

        adapter = adapter_for_model(chat_model)
        if adapter is None and options.ignore_system_message:
            adapter = DropSystemAdapter()

        if not self._validate_chain_initialization(chain_type, chat_model):
            logger.info("Chain %s is stale; rebuilding before the turn.", chain_type.value)
            await self.set_chain(chain_type, SetChainOptions(prompt_adapter=adapter))
        elif type(adapter) is not type(self._prompt_adapter):
            logger.info("Rebuilding %s with %s", chain_type.value, type(adapter).__name__)
            await self.set_chain(chain_type, SetChainOptions(prompt_adapter=adapter))

        if options.debug or self.store.debug:
            logger.info("Running %s turn with %s", chain_type.value, chat_model.model_name)
        runner = self._get_chain_runner(chain_type)
        return await runner.run(user_message, cancellation, on_partial, on_final, options)

    async def stream_chain(
        self,
        user_message: ChatMessage,
        cancellation: CancellationToken | None = None,
        options: RunChainOptions = RunChainOptions(),
    ) -> AsyncIterator[StreamEvent]:
        """
        Run one turn and yield its events as they happen.

        Yields partial events with the accumulated answer, then exactly one of
        final, error or cancelled. Closing the iterator early cancels the turn.
        """
        token = cancellation or CancellationToken()
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

        def on_partial(text: str) -> None:
            queue.put_nowait(StreamEvent(type="partial", text=text))

        def on_final(message: ChatMessage) -> None:
            event_type = "error" if message.is_error else "final"
            queue.put_nowait(StreamEvent(type=event_type, text=message.message, message=message))

        async def produce() -> None:
            try:
                result = await self.run_chain(user_message, token, on_partial, on_final, options)
                if result is None:
                    queue.put_nowait(StreamEvent(type="cancelled", text=token.reason or ""))
            except CopilotError as e:
                queue.put_nowait(StreamEvent(type="error", text=str(e)))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not task.done():
                token.cancel("stream closed")
            await task

    # Memory

    def update_memory_with_loaded_messages(self, messages: list[ChatMessage]) -> None:
        """Replace memory with the user/AI pairs of a loaded transcript."""
        memory = self.memory_manager.get_memory()
        memory.clear()
        for i in range(0, len(messages), 2):
            if i + 1 >= len(messages):
                logger.debug("Skipping unpaired trailing message")
                break
            user_message, ai_message = messages[i], messages[i + 1]
            if user_message.sender is not Sender.USER:
                logger.debug("Skipping pair %d: first message is not from the user", i // 2)
                continue
            memory.save_context(user_message.message, ai_message.message)

    # Settings handlers

    async def _on_model_key_changed(self) -> None:
        await self.create_chain_with_new_model()

    async def _on_chain_type_changed(self) -> None:
        settings = self.store.get()
        chain_type = settings.chain_type
        refresh_index = (
            settings.index_vault_to_vector_store is IndexStrategy.ON_MODE_SWITCH
            and chain_type.uses_vault_index
        )
        try:
            await self.set_chain(chain_type, SetChainOptions(refresh_index=refresh_index))
        except CopilotError as e:
            logger.error("Could not switch to %s: %s", chain_type.value, e)
            self.notifier.notify(f"Could not switch to {chain_type.value}: {e}")
            self._restore_active_chain_type()
        except Exception:
            logger.exception("Unexpected error switching to %s", chain_type.value)
            self._restore_active_chain_type()

    def _restore_active_chain_type(self) -> None:
        # Persisted chain_type always names the running chain.
        if self._active_chain_type is not None:
            self.store.record_chain_type(self._active_chain_type)

    async def _on_settings_changed(self) -> None:
        await self.create_chain_with_new_model()


def _resolve_chain_type(chain_type: ChainType | str) -> ChainType:
    if isinstance(chain_type, ChainType):
        return chain_type
    try:
        return ChainType.from_string(chain_type)
    except ValueError:
        raise UnsupportedChainTypeError(chain_type) from None
