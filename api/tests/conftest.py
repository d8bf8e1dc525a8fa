"""
Shared mocks and fixtures for the chat core tests.

Provider clients are replaced by in-memory mocks that speak the subset of the
OpenAI SDK surface the services use: `chat.completions.create(stream=True)`
and `embeddings.create`.
"""

import asyncio
from types import SimpleNamespace

import pytest

from vault_copilot.core.config import Settings
from vault_copilot.core.events import EventBus
from vault_copilot.core.notices import NoticeBoard
from vault_copilot.services.chain_manager import ChainManager
from vault_copilot.services.chat_models import ChatModelManager
from vault_copilot.services.embeddings import EmbeddingsManager
from vault_copilot.services.memory import MemoryManager
from vault_copilot.services.prompts import PromptManager
from vault_copilot.services.settings_store import SettingsStore
from vault_copilot.services.vault import Vault
from vault_copilot.services.vector_store import VectorStoreManager

VOCAB = ["python", "garden", "tomato", "project", "travel", "summer", "recipe"]


def embed_text(text: str) -> list[float]:
    """Bag-of-words vector over VOCAB, plus a constant to keep it non-zero."""
    lowered = text.lower()
    return [float(lowered.count(word)) for word in VOCAB] + [0.1]


class MockChunk:
    def __init__(self, content):
        self.choices = [SimpleNamespace(delta=SimpleNamespace(content=content))]


class MockStream:
    """Async iterator over completion chunks, like the SDK's AsyncStream."""

    def __init__(self, tokens, gate=None):
        self._tokens = list(tokens)
        self._gate = gate
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._gate is not None:
            await self._gate.wait()
        if not self._tokens:
            raise StopAsyncIteration
        return MockChunk(self._tokens.pop(0))

    async def close(self):
        self.closed = True


class MockCompletions:
    """Mock chat completions endpoint. Replies are consumed in order."""

    def __init__(self):
        self.default_reply = ["Hello", " there"]
        self.replies = []
        self.calls = []
        self.streams = []
        self.error = None
        self.gate = None

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        tokens = self.replies.pop(0) if self.replies else self.default_reply
        stream = MockStream(tokens, self.gate)
        self.streams.append(stream)
        return stream


class MockEmbeddingsAPI:
    def __init__(self):
        self.calls = 0

    async def create(self, input, model):
        self.calls += 1
        return SimpleNamespace(data=[SimpleNamespace(embedding=embed_text(t)) for t in input])


class MockOpenAIClient:
    def __init__(self):
        self.chat = SimpleNamespace(completions=MockCompletions())
        self.embeddings = MockEmbeddingsAPI()


@pytest.fixture
def vault_dir(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    (root / "Python.md").write_text(
        "---\ntags: [code, python]\n---\n# Python\n\n"
        "My python project uses asyncio. The project also tracks the [[Garden]].\n",
        encoding="utf-8",
    )
    (root / "Garden.md").write_text(
        "# Garden\n\nThe garden has tomato plants. Water the tomato beds daily.\n",
        encoding="utf-8",
    )
    (root / "Travel.md").write_text(
        "# Travel\n\nTravel plans for the summer: hiking and a long summer road trip.\n",
        encoding="utf-8",
    )
    (root / ".obsidian").mkdir()
    (root / ".obsidian" / "workspace.md").write_text("ignored", encoding="utf-8")
    return root


@pytest.fixture
def settings(tmp_path, vault_dir):
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        vault_path=vault_dir,
        index_path=tmp_path / ".copilot" / "index.json",
        settings_path=tmp_path / ".copilot" / "settings.json",
        embedding_batch_size=2,
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store(bus):
    return SettingsStore(bus)


@pytest.fixture
def client():
    return MockOpenAIClient()


@pytest.fixture
def completions(client):
    return client.chat.completions


@pytest.fixture
def client_factory(client):
    def factory(model, settings):
        return client

    return factory


@pytest.fixture
def chat_model_manager(settings, store, client_factory):
    return ChatModelManager(settings, store, client_factory=client_factory)


@pytest.fixture
def embeddings_manager(settings, store, client_factory):
    return EmbeddingsManager(settings, store, client_factory=client_factory)


@pytest.fixture
def vector_store_manager(settings, embeddings_manager):
    return VectorStoreManager(settings, Vault(settings.vault_path), embeddings_manager)


@pytest.fixture
def memory_manager(store):
    return MemoryManager(store)


@pytest.fixture
def notices():
    return NoticeBoard()


@pytest.fixture
def chain_manager(store, chat_model_manager, memory_manager, vector_store_manager, notices):
    return ChainManager(
        store,
        chat_model_manager,
        memory_manager,
        PromptManager(store),
        vector_store_manager,
        notices,
    )


@pytest.fixture
def gate():
    """An event that is never set unless the test sets it; blocks mock streams."""
    return asyncio.Event()
