"""
Conversation memory shared by every chain type.

Stores (input, output) pairs in order and replays the last `context_turns`
of them as chat messages for the next model call.
"""

import logging
from dataclasses import dataclass

from vault_copilot.services.settings_store import SettingsStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Exchange:
    input: str
    output: str


class ConversationMemory:
    """Windowed buffer of past conversation turns."""

    def __init__(self, window: int = 15) -> None:
        self.window = window
        self._exchanges: list[Exchange] = []

    def save_context(self, input_text: str, output_text: str) -> None:
        self._exchanges.append(Exchange(input=input_text, output=output_text))

    def clear(self) -> None:
        self._exchanges.clear()

    @property
    def exchanges(self) -> list[Exchange]:
        return list(self._exchanges)

    def __len__(self) -> int:
        return len(self._exchanges)

    def load_history(self) -> list[dict[str, str]]:
        """Return the last `window` turns as user/assistant messages."""
        messages: list[dict[str, str]] = []
        for exchange in self._exchanges[-self.window:]:
            messages.append({"role": "user", "content": exchange.input})
            messages.append({"role": "assistant", "content": exchange.output})
        return messages

    def history_pairs(self) -> list[tuple[str, str]]:
        return [(e.input, e.output) for e in self._exchanges[-self.window:]]


class MemoryManager:
    """Owns the session's conversation memory."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store
        self._memory = ConversationMemory(window=store.get().context_turns)

    def get_memory(self) -> ConversationMemory:
        self._memory.window = self._store.get().context_turns
        return self._memory

    def clear_chat_memory(self) -> None:
        logger.debug("Clearing chat memory (%d turns)", len(self._memory))
        self._memory.clear()
