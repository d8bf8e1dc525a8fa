"""
Unit tests for the chain manager: chain switching, model changes, prompt
adaptation, memory replay and streaming.
"""

import asyncio

import pytest

from vault_copilot.core.cancellation import CancellationToken
from vault_copilot.core.errors import (
    ConfigurationError,
    InitializationError,
    UnsupportedChainTypeError,
)
from vault_copilot.core.events import Topic
from vault_copilot.models.chat import ChatMessage, Sender
from vault_copilot.models.settings import (
    BUILTIN_CHAT_MODELS,
    ChainType,
    CustomModel,
    IndexStrategy,
    ModelProvider,
)
from vault_copilot.services.chain_factory import is_plain_pipeline, is_retrieval_pipeline
from vault_copilot.services.chain_manager import SetChainOptions
from vault_copilot.services.chain_runner import RunChainOptions


def user(text):
    return ChatMessage(sender=Sender.USER, message=text)


def ai(text):
    return ChatMessage(sender=Sender.AI, message=text)


async def run(manager, text, options=RunChainOptions(), token=None):
    partials, finals = [], []
    result = await manager.run_chain(
        user(text), token or CancellationToken(), partials.append, finals.append, options
    )
    return result, partials, finals


@pytest.mark.asyncio
@pytest.mark.parametrize("chain_type", list(ChainType))
async def test_set_chain_embeds_active_model(chain_manager, chat_model_manager, chain_type):
    """Every supported chain type is built around the registered chat model."""
    await chain_manager.create_chain_with_new_model()
    await chain_manager.set_chain(chain_type)

    if chain_type is ChainType.VAULT_QA:
        pipeline = chain_manager.get_retrieval_chain()
        assert is_retrieval_pipeline(pipeline)
    else:
        pipeline = chain_manager.get_chain()
        assert is_plain_pipeline(pipeline)
    assert pipeline.model is chat_model_manager.get_chat_model()
    assert chain_manager.active_chain_type is chain_type


@pytest.mark.asyncio
async def test_set_chain_records_chain_type_without_publishing(chain_manager, store, bus):
    await chain_manager.create_chain_with_new_model()
    published = []
    bus.subscribe(Topic.CHAIN_TYPE, lambda: published.append("chain_type"))

    await chain_manager.set_chain(ChainType.AGENTIC_PLUS)

    assert store.chain_type is ChainType.AGENTIC_PLUS
    assert published == []


@pytest.mark.asyncio
async def test_set_chain_accepts_chain_type_strings(chain_manager):
    await chain_manager.create_chain_with_new_model()
    await chain_manager.set_chain("vault_qa")
    assert chain_manager.active_chain_type is ChainType.VAULT_QA


@pytest.mark.asyncio
async def test_switching_chain_type_keeps_memory(chain_manager, memory_manager):
    """Memory is shared by every chain type and survives switches."""
    await chain_manager.create_chain_with_new_model()
    memory = memory_manager.get_memory()
    memory.save_context("hi", "hello")
    before = memory.exchanges

    for chain_type in (ChainType.VAULT_QA, ChainType.AGENTIC_PLUS, ChainType.PLAIN_CHAT):
        await chain_manager.set_chain(chain_type)

    assert memory_manager.get_memory().exchanges == before
    assert chain_manager.get_chain().memory is memory


@pytest.mark.asyncio
async def test_unresolvable_model_key_falls_back_to_default(chain_manager, chat_model_manager, store, notices):
    await store.update(model_key="does-not-exist|openai")

    await chain_manager.create_chain_with_new_model()

    assert chat_model_manager.get_chat_model().custom_model.key == BUILTIN_CHAT_MODELS[0].key
    assert chain_manager.get_chain().model is chat_model_manager.get_chat_model()
    assert store.model_key == "does-not-exist|openai"
    message = notices.recent()[-1].message
    assert "does-not-exist|openai" in message
    assert "Falling back to gpt-4o|openai" in message


@pytest.mark.asyncio
async def test_duplicate_model_key_notifies_and_falls_back(chain_manager, chat_model_manager, store, notices):
    duplicate = CustomModel(name="gpt-4o", provider=ModelProvider.OPENAI)
    await store.update(active_models=[*store.get().active_models, duplicate])

    await chain_manager.create_chain_with_new_model()

    assert any("must be unique" in n.message for n in notices.recent())
    assert chat_model_manager.get_chat_model().custom_model.key == BUILTIN_CHAT_MODELS[0].key


@pytest.mark.asyncio
async def test_create_chain_with_new_model_swallows_client_errors(store, chain_manager, chat_model_manager, notices):
    def failing_factory(model, settings):
        raise ConfigurationError("OpenAI API key is not set.")

    chat_model_manager._client_factory = failing_factory

    await chain_manager.create_chain_with_new_model()

    assert chat_model_manager.get_chat_model() is None
    assert chain_manager.get_chain() is None
    assert "OpenAI API key is not set." in notices.recent()[-1].message


@pytest.mark.asyncio
async def test_misconfigured_model_switch_is_noticed(store, chain_manager, chat_model_manager, client, notices):
    azure = CustomModel(name="gpt-4o", provider=ModelProvider.AZURE_OPENAI)
    await store.update(active_models=[*store.get().active_models, azure])

    def factory(model, settings):
        if model.provider is ModelProvider.AZURE_OPENAI:
            raise ConfigurationError("Azure OpenAI endpoint is not set.")
        return client

    chat_model_manager._client_factory = factory
    await chain_manager.start()

    await store.update(model_key=azure.key)

    assert chat_model_manager.get_chat_model().custom_model.key == "gpt-4o|openai"
    message = notices.recent()[-1].message
    assert azure.key in message
    assert "Azure OpenAI endpoint is not set." in message


@pytest.mark.asyncio
async def test_set_chain_without_chat_model_raises_and_notifies(chain_manager, notices):
    with pytest.raises(ConfigurationError):
        await chain_manager.set_chain(ChainType.PLAIN_CHAT)
    assert notices.recent()
    assert "No chat model" in notices.recent()[-1].message


@pytest.mark.asyncio
async def test_unsupported_chain_type(chain_manager):
    await chain_manager.create_chain_with_new_model()
    with pytest.raises(UnsupportedChainTypeError):
        await chain_manager.set_chain("summarize_everything")


@pytest.mark.asyncio
async def test_vault_qa_without_embeddings_keeps_previous_retrieval_chain(chain_manager, store):
    await chain_manager.create_chain_with_new_model()
    await chain_manager.set_chain(ChainType.VAULT_QA)
    previous = chain_manager.get_retrieval_chain()

    await store.update(embedding_model_key="missing-embedder|openai")
    with pytest.raises(InitializationError):
        await chain_manager.set_chain(ChainType.VAULT_QA)

    assert chain_manager.get_retrieval_chain() is previous
    assert chain_manager.active_chain_type is ChainType.VAULT_QA


@pytest.mark.asyncio
async def test_vault_qa_refresh_index_rebuilds_db(chain_manager, vector_store_manager):
    await chain_manager.create_chain_with_new_model()
    await chain_manager.set_chain(ChainType.VAULT_QA, SetChainOptions(refresh_index=True))

    db = vector_store_manager.get_db()
    assert len(db) == 3
    assert chain_manager.get_retrieval_chain().retriever.db is db


@pytest.mark.asyncio
async def test_embedding_model_change_drops_old_index(chain_manager, vector_store_manager, store):
    await chain_manager.create_chain_with_new_model()
    await chain_manager.set_chain(ChainType.VAULT_QA, SetChainOptions(refresh_index=True))
    assert vector_store_manager.get_db().embedding_model == "text-embedding-3-small"

    await store.update(embedding_model_key="text-embedding-3-large|openai")
    await chain_manager.set_chain(ChainType.VAULT_QA)

    db = chain_manager.get_retrieval_chain().retriever.db
    assert db.embedding_model == "text-embedding-3-large"
    assert len(db) == 0
    result, _, _ = await run(chain_manager, "What grows in the garden?")
    assert not result.is_error


@pytest.mark.asyncio
async def test_in_flight_turn_keeps_its_pipeline(chain_manager, chat_model_manager, completions, gate):
    await chain_manager.create_chain_with_new_model()
    completions.gate = gate

    turn = asyncio.create_task(run(chain_manager, "hi"))
    await asyncio.sleep(0.05)
    new_model = chat_model_manager.set_chat_model(BUILTIN_CHAT_MODELS[1])
    await chain_manager.set_chain(ChainType.PLAIN_CHAT)
    gate.set()
    result, _, _ = await turn

    assert chain_manager.get_chain().model is new_model
    assert result.message == "Hello there"
    assert [call["model"] for call in completions.calls] == ["gpt-4o"]


@pytest.mark.asyncio
async def test_reasoning_model_prompt_has_no_system_role(chain_manager, store):
    await store.update(model_key="o1-mini|openai")
    await chain_manager.create_chain_with_new_model()

    chain = chain_manager.get_chain()
    assert "system" not in chain.prompt.roles
    assert chain.prompt.roles[0] == "assistant"
    assert all(m["role"] != "system" for m in chain.build_messages("hi"))


@pytest.mark.asyncio
async def test_reasoning_model_request_has_no_system_message(chain_manager, store, completions):
    await store.update(model_key="o1-mini|openai")
    await chain_manager.create_chain_with_new_model()

    result, _, _ = await run(chain_manager, "What is asyncio?")

    request = completions.calls[-1]
    assert result.message == "Hello there"
    assert [m["role"] for m in request["messages"]] == ["assistant", "user"]
    assert "max_completion_tokens" in request
    assert "temperature" not in request


@pytest.mark.asyncio
async def test_ignore_system_message_rebuilds_prompt(chain_manager, completions):
    await chain_manager.create_chain_with_new_model()

    await run(chain_manager, "first", RunChainOptions(ignore_system_message=True))
    assert [m["role"] for m in completions.calls[-1]["messages"]] == ["user"]

    await run(chain_manager, "second")
    assert completions.calls[-1]["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_run_chain_rebuilds_when_model_changed(chain_manager, chat_model_manager):
    await chain_manager.create_chain_with_new_model()
    stale = chain_manager.get_chain()

    new_model = chat_model_manager.set_chat_model(BUILTIN_CHAT_MODELS[1])
    await run(chain_manager, "hi")

    assert chain_manager.get_chain() is not stale
    assert chain_manager.get_chain().model is new_model


@pytest.mark.asyncio
async def test_run_chain_without_model_raises(chain_manager, notices):
    with pytest.raises(ConfigurationError):
        await run(chain_manager, "hi")
    assert notices.recent()


class TestLoadedMessages:
    def test_pairs_user_and_ai_messages(self, chain_manager, memory_manager):
        chain_manager.update_memory_with_loaded_messages([user("hi"), ai("hello")])
        exchanges = memory_manager.get_memory().exchanges
        assert len(exchanges) == 1
        assert (exchanges[0].input, exchanges[0].output) == ("hi", "hello")

    def test_unpaired_message_leaves_memory_empty(self, chain_manager, memory_manager):
        chain_manager.update_memory_with_loaded_messages([user("hi")])
        assert len(memory_manager.get_memory()) == 0

    def test_replaces_previous_memory(self, chain_manager, memory_manager):
        memory_manager.get_memory().save_context("old", "turn")
        chain_manager.update_memory_with_loaded_messages([user("a"), ai("b"), user("c"), ai("d")])
        pairs = memory_manager.get_memory().history_pairs()
        assert pairs == [("a", "b"), ("c", "d")]

    def test_skips_pairs_not_starting_with_user(self, chain_manager, memory_manager):
        chain_manager.update_memory_with_loaded_messages([ai("welcome"), user("hi"), user("x"), ai("y")])
        assert memory_manager.get_memory().history_pairs() == [("x", "y")]


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_start_subscribes_and_close_unsubscribes(self, chain_manager, bus):
        await chain_manager.start()
        for topic in Topic:
            assert bus.subscriber_count(topic) == 1
        assert chain_manager.get_chain() is not None

        chain_manager.close()
        for topic in Topic:
            assert bus.subscriber_count(topic) == 0

    @pytest.mark.asyncio
    async def test_chain_type_change_switches_and_reindexes(self, chain_manager, store, vector_store_manager):
        assert store.get().index_vault_to_vector_store is IndexStrategy.ON_MODE_SWITCH
        await chain_manager.start()

        await store.update(chain_type=ChainType.VAULT_QA)

        assert chain_manager.active_chain_type is ChainType.VAULT_QA
        assert is_retrieval_pipeline(chain_manager.get_retrieval_chain())
        assert len(vector_store_manager.get_db()) == 3

    @pytest.mark.asyncio
    async def test_failed_switch_is_noticed_and_keeps_previous_chain(self, chain_manager, store, notices):
        await chain_manager.start()
        await store.update(embedding_model_key="missing-embedder|openai")
        plain = chain_manager.get_chain()

        await store.update(chain_type=ChainType.VAULT_QA)

        assert chain_manager.active_chain_type is ChainType.PLAIN_CHAT
        assert chain_manager.get_chain().model is plain.model
        assert any("vault_qa" in n.message for n in notices.recent())
        assert store.chain_type is ChainType.PLAIN_CHAT

    @pytest.mark.asyncio
    async def test_model_change_rebuilds_chain(self, chain_manager, store, chat_model_manager):
        await chain_manager.start()

        await store.update(model_key="gpt-4o-mini|openai")

        assert chat_model_manager.get_chat_model().model_name == "gpt-4o-mini"
        assert chain_manager.get_chain().model is chat_model_manager.get_chat_model()

    @pytest.mark.asyncio
    async def test_settings_change_rebuilds_with_new_temperature(self, chain_manager, store):
        await chain_manager.start()

        await store.update(temperature=0.7)

        assert chain_manager.get_chain().model.temperature == 0.7


class TestStreamChain:
    @pytest.mark.asyncio
    async def test_streams_partials_then_final(self, chain_manager, memory_manager):
        await chain_manager.create_chain_with_new_model()

        events = [e async for e in chain_manager.stream_chain(user("hi"))]

        assert [e.type for e in events] == ["partial", "partial", "final"]
        assert events[0].text == "Hello"
        assert events[-1].message.message == "Hello there"
        assert memory_manager.get_memory().history_pairs() == [("hi", "Hello there")]

    @pytest.mark.asyncio
    async def test_provider_error_is_streamed_as_error_event(self, chain_manager, completions, memory_manager):
        await chain_manager.create_chain_with_new_model()
        completions.error = RuntimeError("provider down")

        events = [e async for e in chain_manager.stream_chain(user("hi"))]

        assert [e.type for e in events] == ["error"]
        assert events[0].message.is_error
        assert len(memory_manager.get_memory()) == 0

    @pytest.mark.asyncio
    async def test_configuration_error_is_streamed_as_error_event(self, chain_manager):
        events = [e async for e in chain_manager.stream_chain(user("hi"))]
        assert [e.type for e in events] == ["error"]
        assert "No chat model" in events[0].text

    @pytest.mark.asyncio
    async def test_cancel_before_first_token(self, chain_manager, completions, memory_manager, gate):
        await chain_manager.create_chain_with_new_model()
        completions.gate = gate
        token = CancellationToken()

        async def consume():
            return [e async for e in chain_manager.stream_chain(user("hi"), token)]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        token.cancel()
        events = await task

        assert [e.type for e in events] == ["cancelled"]
        assert len(memory_manager.get_memory()) == 0
        assert completions.streams[0].closed

    @pytest.mark.asyncio
    async def test_closing_the_stream_cancels_the_turn(self, chain_manager, completions, memory_manager, gate):
        await chain_manager.create_chain_with_new_model()
        completions.gate = gate
        token = CancellationToken()
        stream = chain_manager.stream_chain(user("hi"), token)

        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.05)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending
        await stream.aclose()

        assert token.cancelled
        assert len(memory_manager.get_memory()) == 0
