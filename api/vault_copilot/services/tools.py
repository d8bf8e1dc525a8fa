"""
Tools available to the agentic "plus" chain.

A ToolPlanner decides which tools to call for a message; the default planner
runs the tools named by explicit commands such as `@vault` or `@time`.
Tool output is folded into the user message before the model answers.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from vault_copilot.core.cancellation import CancellationToken
from vault_copilot.services.chain_factory import DocumentsCallback, format_context
from vault_copilot.services.retriever import HybridRetriever, extract_salient_terms
from vault_copilot.services.vector_store import Document

logger = logging.getLogger(__name__)

COMMAND_RE = re.compile(r"(?<!\S)@(\w+)")


@dataclass(frozen=True)
class ToolCall:
    tool: str
    query: str


@dataclass
class ToolResult:
    tool: str
    output: str
    documents: list[Document] = field(default_factory=list)


class Tool(Protocol):
    name: str
    description: str

    async def run(self, query: str, cancellation: CancellationToken | None = None) -> ToolResult:
        ...


class ToolPlanner(Protocol):
    async def plan(self, message: str, tools: dict[str, Tool]) -> list[ToolCall]:
        ...


class VaultSearchTool:
    """Searches the vault index for the query."""

    name = "vault"
    description = "Search the notes in the vault"

    def __init__(
        self,
        retriever_factory: Callable[[], HybridRetriever],
        on_documents_retrieved: DocumentsCallback,
    ) -> None:
        self._retriever_factory = retriever_factory
        self._on_documents_retrieved = on_documents_retrieved

    async def run(self, query: str, cancellation: CancellationToken | None = None) -> ToolResult:
        retriever = self._retriever_factory()
        documents = await retriever.get_relevant_documents(
            query, cancellation, salient_terms=extract_salient_terms(query)
        )
        self._on_documents_retrieved(documents)
        return ToolResult(self.name, format_context(documents), documents)


class CurrentTimeTool:
    """Reports the local date and time."""

    name = "time"
    description = "Get the current local date and time"

    async def run(self, query: str, cancellation: CancellationToken | None = None) -> ToolResult:
        now = datetime.now().astimezone()
        return ToolResult(self.name, f"The current local time is {now.isoformat(timespec='seconds')}.")


class CommandToolPlanner:
    """Runs every tool explicitly requested with `@name` in the message."""

    async def plan(self, message: str, tools: dict[str, Tool]) -> list[ToolCall]:
        requested = [name.lower() for name in COMMAND_RE.findall(message)]
        query = strip_commands(message, tools)
        calls: list[ToolCall] = []
        for name in dict.fromkeys(requested):
            if name in tools:
                calls.append(ToolCall(tool=name, query=query))
            else:
                logger.debug("Ignoring unknown command @%s", name)
        return calls


def strip_commands(message: str, tools: dict[str, Tool]) -> str:
    def _drop(match: re.Match) -> str:
        return "" if match.group(1).lower() in tools else match.group(0)

    return re.sub(r"\s{2,}", " ", COMMAND_RE.sub(_drop, message)).strip()


def enhance_user_message(message: str, results: list[ToolResult]) -> str:
    """Append tool outputs to the user message as additional context."""
    outputs = [r for r in results if r.output]
    if not outputs:
        return message
    context = "\n\n".join(f"# {r.tool}\n{r.output}" for r in outputs)
    return f"{message}\n\nAdditional context:\n\n{context}"
