"""
Chain runners: one strategy per chain type for executing a chat turn.

Every runner streams tokens to `on_partial`, commits the exchange to memory
and emits the final message only when the turn completes. A cancelled turn
commits nothing and emits nothing; a failed turn commits nothing and emits a
diagnostic AI message instead.
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

from vault_copilot.core.cancellation import CancellationToken
from vault_copilot.core.errors import InitializationError, OperationCancelledError
from vault_copilot.core.telemetry import get_tracer
from vault_copilot.models.chat import ChatMessage, Sender, Source
from vault_copilot.models.settings import ChainType
from vault_copilot.services.chain_factory import is_plain_pipeline, is_retrieval_pipeline
from vault_copilot.services.tools import ToolResult, enhance_user_message
from vault_copilot.services.vector_store import Document

if TYPE_CHECKING:
    from vault_copilot.services.chain_manager import ChainManager

logger = logging.getLogger(__name__)

PartialCallback = Callable[[str], None]
FinalCallback = Callable[[ChatMessage], None]

DOC_TAG_RE = re.compile(r"\[doc(\d+)\]")


@dataclass(frozen=True)
class RunChainOptions:
    debug: bool = False
    ignore_system_message: bool = False


@dataclass
class TurnResult:
    text: str
    sources: list[Source] = field(default_factory=list)


def extract_sources(answer: str, documents: list[Document]) -> list[Source]:
    """
    Map [docN] tags in the answer to the retrieved notes.

    When the answer cites nothing, every retrieved note is listed. Notes
    appear once, in citation order.
    """
    cited: list[tuple[str, Document]] = []
    for n in sorted({int(m) for m in DOC_TAG_RE.findall(answer)}):
        if 1 <= n <= len(documents):
            cited.append((f"[doc{n}]", documents[n - 1]))
    if not cited:
        cited = [("", doc) for doc in documents]

    sources: list[Source] = []
    seen: set[str] = set()
    for tag, doc in cited:
        key = doc.path or doc.title
        if not key or key in seen:
            continue
        seen.add(key)
        sources.append(Source(title=doc.title, path=doc.path, tag=tag))
    return sources


class ChainRunner(ABC):
    """Executes one chat turn against the manager's active pipeline."""

    chain_type: ClassVar[ChainType]

    def __init__(self, chain_manager: "ChainManager") -> None:
        self.chain_manager = chain_manager
        self._tracer = get_tracer()

    async def run(
        self,
        user_message: ChatMessage,
        cancellation: CancellationToken,
        on_partial: PartialCallback,
        on_final: FinalCallback,
        options: RunChainOptions = RunChainOptions(),
    ) -> ChatMessage | None:
        """
        Execute one turn.

        Returns:
            The final AI message, the diagnostic message on failure, or None
            when the turn was cancelled.
        """
        with self._tracer.start_as_current_span("chain_runner.run") as span:
            span.set_attribute("chain.type", self.chain_type.value)
            try:
                result = await self._run_turn(user_message, cancellation, on_partial, options)
                cancellation.raise_if_cancelled()
            except OperationCancelledError:
                logger.info("%s turn cancelled; nothing committed.", self.chain_type.value)
                span.set_attribute("chain.cancelled", True)
                return None
            except Exception as e:
                logger.exception("%s turn failed", self.chain_type.value)
                error_message = ChatMessage(
                    sender=Sender.AI,
                    message=f"Error: {e}",
                    is_error=True,
                )
                on_final(error_message)
                return error_message

            self.chain_manager.memory_manager.get_memory().save_context(
                user_message.message, result.text
            )
            ai_message = ChatMessage(sender=Sender.AI, message=result.text, sources=result.sources)
            span.set_attribute("chain.source_count", len(result.sources))
            on_final(ai_message)
            return ai_message

    @abstractmethod
    async def _run_turn(
        self,
        user_message: ChatMessage,
        cancellation: CancellationToken,
        on_partial: PartialCallback,
        options: RunChainOptions,
    ) -> TurnResult:
        ...

    @staticmethod
    async def _collect(
        tokens: AsyncIterator[str],
        cancellation: CancellationToken,
        on_partial: PartialCallback,
    ) -> str:
        full_response = ""
        async with aclosing(tokens) as stream:
            async for token in stream:
                cancellation.raise_if_cancelled()
                full_response += token
                on_partial(full_response)
        return full_response


class LLMChainRunner(ChainRunner):
    """Plain chat conditioned on conversation memory."""

    chain_type = ChainType.PLAIN_CHAT

    async def _run_turn(self, user_message, cancellation, on_partial, options) -> TurnResult:
        chain = self.chain_manager.get_chain()
        if not is_plain_pipeline(chain):
            raise InitializationError("Chat chain is not initialized.")
        if options.debug:
            logger.info("==== Step 1: Plain chat with %s ====", chain.model.model_name)
        text = await self._collect(
            chain.astream(user_message.message, cancellation), cancellation, on_partial
        )
        return TurnResult(text)


class VaultQAChainRunner(ChainRunner):
    """Answers from retrieved vault notes and cites them as sources."""

    chain_type = ChainType.VAULT_QA

    async def _run_turn(self, user_message, cancellation, on_partial, options) -> TurnResult:
        chain = self.chain_manager.get_retrieval_chain()
        if not is_retrieval_pipeline(chain):
            raise InitializationError("Vault QA chain is not initialized.")
        history = self.chain_manager.memory_manager.get_memory().history_pairs()
        if options.debug:
            logger.info("==== Step 1: Vault QA with %d history turns ====", len(history))

        # Concurrent turns share the manager's cache; cite from this turn's retrieval.
        documents: list[Document] = []
        text = await self._collect(
            chain.astream(
                user_message.message, history, cancellation, on_documents=documents.extend
            ),
            cancellation,
            on_partial,
        )
        sources = extract_sources(text, documents)
        return TurnResult(text, sources)


class CopilotPlusChainRunner(ChainRunner):
    """Runs the requested tools, then answers through the plain pipeline."""

    chain_type = ChainType.AGENTIC_PLUS

    async def _run_turn(self, user_message, cancellation, on_partial, options) -> TurnResult:
        chain = self.chain_manager.get_chain()
        if not is_plain_pipeline(chain):
            raise InitializationError("Chat chain is not initialized.")

        results = await self._run_tools(user_message.message, cancellation, options)
        enhanced = enhance_user_message(user_message.message, results)
        if options.debug:
            logger.info("==== Step 2: Enhanced user message ====\n%s", enhanced)

        text = await self._collect(chain.astream(enhanced, cancellation), cancellation, on_partial)
        documents = [doc for r in results for doc in r.documents]
        sources = extract_sources(text, documents) if documents else []
        return TurnResult(text, sources)

    async def _run_tools(
        self, message: str, cancellation: CancellationToken, options: RunChainOptions
    ) -> list[ToolResult]:
        tools = self.chain_manager.tools
        calls = await self.chain_manager.tool_planner.plan(message, tools)
        if options.debug:
            logger.info("==== Step 1: Tool calls %s ====", [c.tool for c in calls])

        results: list[ToolResult] = []
        for call in calls:
            cancellation.raise_if_cancelled()
            with self._tracer.start_as_current_span("tool.run") as span:
                span.set_attribute("tool.name", call.tool)
                try:
                    results.append(await tools[call.tool].run(call.query, cancellation))
                except OperationCancelledError:
                    raise
                except Exception:
                    logger.exception("Tool %s failed; answering without it", call.tool)
        return results


RUNNERS: dict[ChainType, type[ChainRunner]] = {
    runner.chain_type: runner
    for runner in (LLMChainRunner, VaultQAChainRunner, CopilotPlusChainRunner)
}
