"""
Pydantic models for runtime plugin settings: chain types, custom models and
retrieval options.
"""

from dataclasses import dataclass, replace
from enum import Enum

from pydantic import BaseModel, Field

from vault_copilot.core.errors import DuplicateModelError


class ChainType(str, Enum):
    PLAIN_CHAT = "llm_chain"
    VAULT_QA = "vault_qa"
    AGENTIC_PLUS = "copilot_plus"

    @classmethod
    def from_string(cls, value: str) -> "ChainType":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown chain type: {value}") from None

    @property
    def uses_vault_index(self) -> bool:
        return self in (ChainType.VAULT_QA, ChainType.AGENTIC_PLUS)


class ModelProvider(str, Enum):
    OPENAI = "openai"
    AZURE_OPENAI = "azure openai"
    OPENROUTER = "openrouterai"
    OLLAMA = "ollama"
    LM_STUDIO = "lm-studio"
    OPENAI_FORMAT = "3rd party (openai-format)"


class IndexStrategy(str, Enum):
    NEVER = "NEVER"
    ON_STARTUP = "ON STARTUP"
    ON_MODE_SWITCH = "ON MODE SWITCH"


class ModelCapabilities(BaseModel):
    reasoning: bool = False
    vision: bool = False
    tool_calling: bool = False


class CustomModel(BaseModel):
    """A chat or embedding model configured by the user, keyed by name|provider."""

    name: str
    provider: ModelProvider
    base_url: str | None = Field(None, description="Endpoint override")
    api_key: str | None = Field(None, description="Overrides the provider key from env")
    enabled: bool = True
    core: bool = Field(False, description="Built-in model that cannot be deleted")
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)

    @property
    def key(self) -> str:
        return f"{self.name}|{self.provider.value}"


BUILTIN_CHAT_MODELS: list[CustomModel] = [
    CustomModel(name="gpt-4o", provider=ModelProvider.OPENAI, core=True,
                capabilities=ModelCapabilities(vision=True, tool_calling=True)),
    CustomModel(name="gpt-4o-mini", provider=ModelProvider.OPENAI, core=True,
                capabilities=ModelCapabilities(vision=True, tool_calling=True)),
    CustomModel(name="o1-mini", provider=ModelProvider.OPENAI, core=True,
                capabilities=ModelCapabilities(reasoning=True)),
]

BUILTIN_EMBEDDING_MODELS: list[CustomModel] = [
    CustomModel(name="text-embedding-3-small", provider=ModelProvider.OPENAI, core=True),
    CustomModel(name="text-embedding-3-large", provider=ModelProvider.OPENAI, core=True),
]

DEFAULT_SYSTEM_PROMPT = (
    "You are Vault Copilot, a helpful assistant working inside the user's "
    "note vault. Answer the user's questions directly and concisely. "
    "When the user mentions a note with [[Note Title]], refer to it by that name. "
    "Use the same language as the user."
)


class PluginSettings(BaseModel):
    """Runtime chat settings, persisted between restarts by the settings store."""

    active_models: list[CustomModel] = Field(
        default_factory=lambda: [m.model_copy() for m in BUILTIN_CHAT_MODELS]
    )
    active_embedding_models: list[CustomModel] = Field(
        default_factory=lambda: [m.model_copy() for m in BUILTIN_EMBEDDING_MODELS]
    )
    model_key: str = BUILTIN_CHAT_MODELS[0].key
    embedding_model_key: str = BUILTIN_EMBEDDING_MODELS[0].key
    chain_type: ChainType = ChainType.PLAIN_CHAT
    temperature: float = Field(0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(1000, ge=1)
    context_turns: int = Field(15, ge=1)
    max_source_chunks: int = Field(3, ge=1)
    user_system_prompt: str = ""
    index_vault_to_vector_store: IndexStrategy = IndexStrategy.ON_MODE_SWITCH
    debug: bool = False

    @property
    def system_prompt(self) -> str:
        return self.user_system_prompt or DEFAULT_SYSTEM_PROMPT


@dataclass(frozen=True)
class RetrievalOptions:
    min_similarity_score: float
    max_k: int
    salient_terms: tuple[str, ...] = ()

    def with_salient_terms(self, terms: list[str] | tuple[str, ...]) -> "RetrievalOptions":
        return replace(self, salient_terms=tuple(terms))


def find_custom_model(model_key: str, models: list[CustomModel]) -> CustomModel | None:
    """
    Look up a model by its name|provider key.

    Returns None when nothing matches and raises DuplicateModelError when the
    key is ambiguous, rather than picking one of the matches.
    """
    name, _, provider = model_key.partition("|")
    matches = [m for m in models if m.name == name and m.provider.value == provider]
    if len(matches) > 1:
        raise DuplicateModelError(model_key, len(matches))
    return matches[0] if matches else None


class ChainTypeUpdate(BaseModel):
    """Request body for PUT /settings/chain-type."""

    chain_type: str = Field(..., description="llm_chain, vault_qa or copilot_plus")


class ModelUpdate(BaseModel):
    """Request body for PUT /settings/model."""

    model_key: str = Field(..., description="Composite key name|provider")
