"""
Pipeline construction.

A pipeline is an immutable value bundling a model with what it needs to
answer one turn. PlainPipeline conditions the model on memory and a chat
prompt; RetrievalPipeline condenses the question, retrieves notes, reports
them through its callback and answers from the retrieved context.
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass

from vault_copilot.core.cancellation import CancellationToken
from vault_copilot.services.chat_models import ChatModel
from vault_copilot.services.memory import ConversationMemory
from vault_copilot.services.prompts import ChatPrompt, PromptManager, build_qa_prompt
from vault_copilot.services.retriever import HybridRetriever, extract_salient_terms
from vault_copilot.services.vector_store import Document

logger = logging.getLogger(__name__)

DocumentsCallback = Callable[[list[Document]], None]


def format_context(documents: list[Document]) -> str:
    """Format retrieved chunks into a context block with [docN] tags."""
    parts = []
    for i, doc in enumerate(documents):
        parts.append(f"[doc{i + 1}] (Source: {doc.title}): {doc.page_content.strip()}")
    return "\n\n".join(parts)


def format_chat_history(history: list[tuple[str, str]]) -> str:
    return "\n".join(f"Human: {human}\nAssistant: {ai}" for human, ai in history)


@dataclass(frozen=True)
class PlainPipeline:
    model: ChatModel
    memory: ConversationMemory
    prompt: ChatPrompt

    def build_messages(self, user_input: str) -> list[dict[str, str]]:
        return self.prompt.format_messages(history=self.memory.load_history(), input=user_input)

    async def astream(
        self, user_input: str, cancellation: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        messages = self.build_messages(user_input)
        async with aclosing(self.model.astream(messages, cancellation)) as tokens:
            async for token in tokens:
                yield token


@dataclass(frozen=True)
class RetrievalPipeline:
    model: ChatModel
    retriever: HybridRetriever
    prompt: ChatPrompt
    on_documents_retrieved: DocumentsCallback
    debug: bool = False

    async def condense_question(
        self,
        question: str,
        chat_history: list[tuple[str, str]],
        cancellation: CancellationToken | None = None,
    ) -> str:
        """Rewrite a follow-up question so it stands on its own."""
        if not chat_history:
            return question
        messages = PromptManager.get_condense_prompt().format_messages(
            chat_history=format_chat_history(chat_history), input=question
        )
        standalone = (await self.model.ainvoke(messages, cancellation)).strip()
        if self.debug:
            logger.info("Standalone question: %s", standalone)
        return standalone or question

    async def astream(
        self,
        question: str,
        chat_history: list[tuple[str, str]],
        cancellation: CancellationToken | None = None,
        on_documents: DocumentsCallback | None = None,
    ) -> AsyncIterator[str]:
        """
        Condense, retrieve and stream the answer.

        `on_documents` receives this call's documents only; the pipeline-wide
        `on_documents_retrieved` sees every call.
        """
        standalone = await self.condense_question(question, chat_history, cancellation)
        documents = await self.retriever.get_relevant_documents(
            standalone, cancellation, salient_terms=extract_salient_terms(standalone)
        )
        self.on_documents_retrieved(documents)
        if on_documents is not None:
            on_documents(documents)

        history = []
        for human, ai in chat_history:
            history.append({"role": "user", "content": human})
            history.append({"role": "assistant", "content": ai})
        messages = self.prompt.format_messages(
            history=history, context=format_context(documents), input=question
        )
        if self.debug:
            logger.info("Answering from %d retrieved documents", len(documents))
        async with aclosing(self.model.astream(messages, cancellation)) as tokens:
            async for token in tokens:
                yield token


class ChainFactory:
    """Stateless constructors; every call returns a fresh pipeline."""

    @staticmethod
    def create_plain_pipeline(
        model: ChatModel, memory: ConversationMemory, prompt: ChatPrompt
    ) -> PlainPipeline:
        return PlainPipeline(model=model, memory=memory, prompt=prompt)

    @staticmethod
    def create_conversational_retrieval_pipeline(
        model: ChatModel,
        retriever: HybridRetriever,
        system_message: str,
        on_documents_retrieved: DocumentsCallback,
        debug: bool = False,
        prompt: ChatPrompt | None = None,
    ) -> RetrievalPipeline:
        """`prompt` overrides the QA prompt built from `system_message`."""
        return RetrievalPipeline(
            model=model,
            retriever=retriever,
            prompt=prompt or build_qa_prompt(system_message),
            on_documents_retrieved=on_documents_retrieved,
            debug=debug,
        )


def is_plain_pipeline(pipeline: object) -> bool:
    return isinstance(pipeline, PlainPipeline) and pipeline.model is not None


def is_retrieval_pipeline(pipeline: object) -> bool:
    return isinstance(pipeline, RetrievalPipeline) and pipeline.retriever is not None


def is_supported_pipeline(pipeline: object) -> bool:
    return is_plain_pipeline(pipeline) or is_retrieval_pipeline(pipeline)
