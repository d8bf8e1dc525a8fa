"""
Hybrid retrieval over the vault index.

Vector similarity produces the candidate list; salient terms and note-graph
relations ([[mentions]] in the query and the notes they link to) add to each
candidate's score. Candidates are re-ranked by combined score with a stable
sort, so equal scores keep their vector-similarity order.
"""

import logging
import re
from dataclasses import dataclass

from vault_copilot.core.cancellation import CancellationToken
from vault_copilot.core.errors import InitializationError
from vault_copilot.core.telemetry import get_tracer
from vault_copilot.models.settings import RetrievalOptions
from vault_copilot.services.embeddings import OpenAIEmbeddings
from vault_copilot.services.vault import extract_note_titles
from vault_copilot.services.vector_store import Document, LocalVectorStore

logger = logging.getLogger(__name__)

TERM_WEIGHT = 0.3
MENTION_BOOST = 0.2
LINK_BOOST = 0.1
CANDIDATE_MULTIPLIER = 2

TOKEN_RE = re.compile(r"[\w-]+", re.UNICODE)
STOP_WORDS = frozenset(
    "a an and are as at be but by can could did do does for from had has have how i "
    "in into is it its me my of on or our should so than that the their them then there "
    "these this to was we were what when where which who why will with would you your "
    "about any all please tell give find show notes note".split()
)


def extract_salient_terms(query: str) -> list[str]:
    """Lowercased keywords of `query` without stop words or [[mentions]]."""
    text = re.sub(r"\[\[[^\]]*\]\]", " ", query)
    seen: dict[str, None] = {}
    for token in TOKEN_RE.findall(text.lower()):
        if len(token) > 2 and token not in STOP_WORDS:
            seen.setdefault(token, None)
    return list(seen)


@dataclass
class _Candidate:
    document: Document
    vector_score: float
    score: float = 0.0


class HybridRetriever:
    """Ranks vault chunks by vector similarity, salient terms and note links."""

    def __init__(
        self,
        db: LocalVectorStore | None,
        embeddings: OpenAIEmbeddings | None,
        options: RetrievalOptions,
        debug: bool = False,
    ) -> None:
        if embeddings is None:
            raise InitializationError("Error getting embeddings API. Please check your settings.")
        if db is None:
            raise InitializationError("Vault index is not available. Please check your settings.")
        self.db = db
        self.embeddings = embeddings
        self.options = options
        self.debug = debug
        self._tracer = get_tracer()

    async def get_relevant_documents(
        self,
        query: str,
        cancellation: CancellationToken | None = None,
        salient_terms: list[str] | None = None,
    ) -> list[Document]:
        """
        Retrieve at most `options.max_k` documents for `query`.

        Args:
            query: The (standalone) user question.
            cancellation: Token raced against the embedding call.
            salient_terms: Per-query keywords; replaces `options.salient_terms`.

        Returns:
            Documents ordered by combined score, best first.
        """
        options = self.options
        if salient_terms is not None:
            options = options.with_salient_terms(salient_terms)

        with self._tracer.start_as_current_span("retriever.hybrid") as span:
            span.set_attribute("retriever.max_k", options.max_k)
            query_vector = await self.embeddings.embed_query(query, cancellation)
            hits = self.db.similarity_search_by_vector(
                query_vector, k=options.max_k * CANDIDATE_MULTIPLIER
            )
            candidates = [
                _Candidate(doc, score)
                for doc, score in hits
                if score >= options.min_similarity_score
            ]
            span.set_attribute("retriever.vector_hits", len(candidates))

            mentioned, linked = self._graph_titles(query)
            self._add_graph_candidates(mentioned, candidates)
            terms = [t.lower() for t in options.salient_terms]
            for candidate in candidates:
                candidate.score = (
                    candidate.vector_score
                    + TERM_WEIGHT * _term_ratio(candidate.document, terms)
                    + _graph_boost(candidate.document, mentioned, linked)
                )

            ranked = sorted(candidates, key=lambda c: c.score, reverse=True)[: options.max_k]
            span.set_attribute("retriever.returned", len(ranked))

        if self.debug:
            for c in ranked:
                logger.info("Retrieved %s (vector=%.3f, combined=%.3f)",
                            c.document.path or c.document.title, c.vector_score, c.score)
        return [c.document for c in ranked]

    def _graph_titles(self, query: str) -> tuple[set[str], set[str]]:
        mentioned = set(extract_note_titles(query))
        linked: set[str] = set()
        if mentioned:
            for doc in self.db.documents_for_titles(mentioned):
                linked.update(doc.metadata.get("links", []))
        return mentioned, linked - mentioned

    def _add_graph_candidates(self, mentioned: set[str], candidates: list[_Candidate]) -> None:
        """Append chunks of [[mentioned]] notes that the vector search missed."""
        if not mentioned:
            return
        graph_docs = self.db.documents_for_titles(mentioned)
        if not graph_docs:
            logger.debug("No indexed notes for mentions %s", sorted(mentioned))
            return
        present = {id(c.document) for c in candidates}
        candidates.extend(_Candidate(doc, 0.0) for doc in graph_docs if id(doc) not in present)


def _term_ratio(document: Document, terms: list[str]) -> float:
    if not terms:
        return 0.0
    haystack = " ".join(
        [document.page_content, document.title, " ".join(document.metadata.get("tags", []))]
    ).lower()
    return sum(1 for term in terms if term in haystack) / len(terms)


def _graph_boost(document: Document, mentioned: set[str], linked: set[str]) -> float:
    if document.title in mentioned:
        return MENTION_BOOST
    if document.title in linked:
        return LINK_BOOST
    return 0.0
