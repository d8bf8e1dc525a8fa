"""
Prompt templates for the chat pipelines.

A ChatPrompt is an ordered tuple of message templates plus a history
placeholder. Pipelines format it into the OpenAI message list on every turn.
Model families that cannot take a system role get the prompt rewritten by a
PromptAdapter looked up from PROMPT_ADAPTERS.
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Protocol, Union

from vault_copilot.services.settings_store import SettingsStore

SYSTEM = "system"
AI = "assistant"
HUMAN = "user"

QA_INSTRUCTIONS = """\
Answer the question using the note excerpts below.
Each excerpt starts with a [docN] tag followed by the note title.
Cite the excerpts you used with their [docN] tags.
If the excerpts do not contain the answer, say that the notes do not mention it.
"""

QA_HUMAN_TEMPLATE = """\
## Note Excerpts

{context}

## Question

{input}"""

CONDENSE_QUESTION_TEMPLATE = """\
Given the following conversation and a follow up question, rephrase the follow \
up question to be a standalone question, in its original language.

Chat History:
{chat_history}

Follow Up Input: {input}
Standalone question:"""


@dataclass(frozen=True)
class MessageTemplate:
    role: str
    template: str
    literal: bool = False

    def format(self, **variables: str) -> dict[str, str]:
        content = self.template if self.literal else self.template.format(**variables)
        return {"role": self.role, "content": content}


@dataclass(frozen=True)
class HistoryPlaceholder:
    name: str = "history"


PromptPart = Union[MessageTemplate, HistoryPlaceholder]


@dataclass(frozen=True)
class ChatPrompt:
    parts: tuple[PromptPart, ...]

    @classmethod
    def from_messages(cls, *parts: PromptPart) -> "ChatPrompt":
        return cls(parts=tuple(parts))

    @property
    def roles(self) -> list[str]:
        """Roles of the template messages, in order, history excluded."""
        return [p.role for p in self.parts if isinstance(p, MessageTemplate)]

    @property
    def system_message(self) -> str | None:
        for part in self.parts:
            if isinstance(part, MessageTemplate) and part.role == SYSTEM:
                return part.template
        return None

    def format_messages(
        self, history: list[dict[str, str]] | None = None, **variables: str
    ) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        for part in self.parts:
            if isinstance(part, HistoryPlaceholder):
                messages.extend(history or [])
            else:
                messages.append(part.format(**variables))
        return messages

    def without_system(self) -> "ChatPrompt":
        return replace(
            self,
            parts=tuple(
                p for p in self.parts
                if not (isinstance(p, MessageTemplate) and p.role == SYSTEM)
            ),
        )

    def with_system_as_assistant(self) -> "ChatPrompt":
        """Move system content into a leading assistant message."""
        system = self.system_message
        rest = self.without_system().parts
        return replace(self, parts=(MessageTemplate(AI, system or "", literal=True), *rest))


class PromptAdapter(Protocol):
    def adapt(self, prompt: ChatPrompt) -> ChatPrompt:
        ...


class SystemAsAssistantAdapter:
    """For models that reject the system role (o1 family)."""

    def adapt(self, prompt: ChatPrompt) -> ChatPrompt:
        return prompt.with_system_as_assistant()


class DropSystemAdapter:
    def adapt(self, prompt: ChatPrompt) -> ChatPrompt:
        return prompt.without_system()


# (predicate on the chat model, adapter); first match wins
PROMPT_ADAPTERS: list[tuple[Callable[[object], bool], PromptAdapter]] = [
    (lambda model: getattr(model, "is_reasoning_model", False), SystemAsAssistantAdapter()),
]


def build_qa_prompt(system_message: str) -> ChatPrompt:
    return ChatPrompt.from_messages(
        MessageTemplate(SYSTEM, f"{system_message}\n\n{QA_INSTRUCTIONS}", literal=True),
        HistoryPlaceholder(),
        MessageTemplate(HUMAN, QA_HUMAN_TEMPLATE),
    )


def adapter_for_model(model: object) -> PromptAdapter | None:
    for matches, adapter in PROMPT_ADAPTERS:
        if matches(model):
            return adapter
    return None


class PromptManager:
    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    def get_chat_prompt(self) -> ChatPrompt:
        return ChatPrompt.from_messages(
            MessageTemplate(SYSTEM, self._store.system_prompt, literal=True),
            HistoryPlaceholder(),
            MessageTemplate(HUMAN, "{input}"),
        )

    def get_qa_prompt(self) -> ChatPrompt:
        return build_qa_prompt(self._store.system_prompt)

    @staticmethod
    def get_condense_prompt() -> ChatPrompt:
        return ChatPrompt.from_messages(MessageTemplate(HUMAN, CONDENSE_QUESTION_TEMPLATE))
