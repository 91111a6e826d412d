"""Main Anchor engine orchestrator."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .cache import AnswerCache, CacheKey
from .chunking import BoilerplatePolicy, chunk_document
from .config import SEARCH_MODES, AnchorConfig
from .embeddings import BaseEmbeddingProvider, create_embedding_provider, get_cache
from .errors import (
    AnchorError,
    ConfigError,
    EmbeddingServiceError,
    GenerationError,
    ServiceUnavailable,
    ValidationError,
)
from .generator import BaseGenerator, create_generator
from .index import IndexStore, make_entry, validate_k
from .models import AnswerRecord, Document, IndexEntry, IngestionReport, RetrievalResult
from .prompt import PromptAssembler
from .reranker import BaseReranker, create_reranker
from .retry import CancellationToken
from .search import Retriever
from .storage import MetadataStore
from .verifier import GroundingVerifier

logger = logging.getLogger(__name__)


class Anchor:
    """Grounded question answering over an ingested document collection.

    Ingestion builds a new index version and swaps it in atomically;
    ``ask`` runs retrieve, assemble, generate and verify against the
    version current when the query started.
    """

    def __init__(
        self,
        config: Optional[AnchorConfig] = None,
        *,
        embedder: Optional[BaseEmbeddingProvider] = None,
        generator: Optional[BaseGenerator] = None,
        reranker: Optional[BaseReranker] = None,
        is_boilerplate: Optional[BoilerplatePolicy] = None,
    ):
        self.config = (config or AnchorConfig()).validate()
        self._write_lock = threading.RLock()
        policy = self.config.retry_policy

        # Initialize components
        self.embedder = embedder or self._default_embedder()
        if self.config.embedding_dim is not None and self.embedder.dimension != self.config.embedding_dim:
            raise ConfigError(
                f"{self.embedder.model_id} produces {self.embedder.dimension}-d vectors, "
                f"config expects {self.config.embedding_dim}"
            )
        self.generator = generator or create_generator(
            self.config.generator_provider,
            self.config.generator_model,
            retry_policy=policy,
            temperature=self.config.temperature,
        )
        if reranker is None:
            reranker_kwargs = {}
            if self.config.reranker == "llm":
                reranker_kwargs = {"model": self.config.generator_model, "retry_policy": policy}
            reranker = create_reranker(self.config.reranker, **reranker_kwargs)
        self.is_boilerplate = is_boilerplate

        self.store = IndexStore(
            model_id=self.embedder.model_id,
            max_k=self.config.max_k,
            metric=self.config.metric,
            dtype=self.config.dtype,
            connectivity=self.config.connectivity,
            expansion_add=self.config.expansion_add,
            expansion_search=self.config.expansion_search,
            exact_search_threshold=self.config.exact_search_threshold,
        )
        self.retriever = Retriever(
            self.embedder,
            self.store,
            reranker=reranker,
            default_k=self.config.default_k,
            default_mode=self.config.default_mode,
            semantic_weight=self.config.semantic_weight,
            lexical_weight=self.config.lexical_weight,
            min_score=self.config.min_score,
            lexical_saturation=self.config.lexical_saturation,
            rerank_depth=self.config.rerank_depth,
        )
        self.assembler = PromptAssembler(self.config.max_prompt_chars)
        self.verifier = GroundingVerifier(
            support_threshold=self.config.support_threshold,
            min_supported_fraction=self.config.min_supported_fraction,
            confidence_floor=self.config.confidence_floor,
            suppress_unsupported=self.config.suppress_unsupported,
            conflict_threshold=self.config.conflict_threshold,
        )
        self.cache = AnswerCache(self.config.cache_size)

        self.metadata_store: Optional[MetadataStore] = None
        if self.config.db_path:
            self.metadata_store = MetadataStore(self.config.db_path)
            self._load()

    def _default_embedder(self) -> BaseEmbeddingProvider:
        kwargs: Dict[str, Any] = {
            "retry_policy": self.config.retry_policy,
            "batch_size": self.config.embedding_batch_size,
        }
        if self.config.embedding_provider == "hashing":
            kwargs["dimension"] = self.config.embedding_dim or 384
        return create_embedding_provider(
            self.config.embedding_provider, self.config.embedding_model, **kwargs
        )

    def _load(self) -> None:
        version, entries, documents = self.metadata_store.load(
            expected_model_id=self.embedder.model_id
        )
        if entries or documents:
            self.store.replace(entries, documents, version=version)
            logger.info(
                "Loaded index version %d from %s (%d documents, %d chunks)",
                version,
                self.config.db_path,
                len(documents),
                len(entries),
            )

    def _persist(self) -> None:
        if self.metadata_store is None:
            return
        snapshot = self.store.current
        self.metadata_store.save_snapshot(
            snapshot.version,
            snapshot.model_id,
            list(snapshot.entries.values()),
            list(snapshot.documents.values()),
        )

    def _after_swap(self) -> int:
        self._persist()
        self.cache.evict_stale(self.store.version)
        return self.store.version

    # ============ Ingestion ============

    def _chunk(self, document: Document):
        return list(
            chunk_document(
                document,
                self.config.chunk_size,
                self.config.chunk_overlap,
                is_boilerplate=self.is_boilerplate,
            )
        )

    def _embed_documents(
        self, planned: List[Tuple[Document, list]]
    ) -> List[Tuple[Document, Optional[List[IndexEntry]], Optional[str]]]:
        """Embed each document's chunks in a bounded worker pool."""

        def embed_one(item):
            document, chunks = item
            try:
                vectors = self.embedder.embed([c.text for c in chunks])
            except EmbeddingServiceError as exc:
                logger.error("Embedding failed for %s: %s", document.source or document.doc_id, exc)
                return document, None, f"embedding failure: {exc.message}"
            return document, [make_entry(c, v) for c, v in zip(chunks, vectors)], None

        if len(planned) <= 1 or self.config.embedding_workers <= 1:
            return [embed_one(item) for item in planned]
        with ThreadPoolExecutor(max_workers=self.config.embedding_workers) as pool:
            return list(pool.map(embed_one, planned))

    def _check_dimension(self, entries: Sequence[IndexEntry]) -> None:
        expected = self.store.current.dimension or self.embedder.dimension
        for entry in entries:
            if entry.vector.shape[0] != expected:
                raise ConfigError(
                    f"{self.embedder.model_id} returned a {entry.vector.shape[0]}-d vector, "
                    f"index dimension is {expected}"
                )

    def ingest(self, documents: Union[Sequence[Document], Sequence[str]]) -> IngestionReport:
        """
        Ingest documents into the index as one new version.

        Args:
            documents: Document objects or raw text strings

        Returns:
            IngestionReport with accepted document ids, rejections and
            the resulting index version

        Raises:
            ConfigError: If the embedder returns vectors of the wrong size
        """
        # Normalize input
        docs = [Document(text=d) if isinstance(d, str) else d for d in documents]
        report = IngestionReport()

        with self._write_lock:
            snapshot = self.store.current
            current_docs = snapshot.documents
            seen_ids = set()
            replaced: List[str] = []
            planned: List[Tuple[Document, list]] = []

            for doc in docs:
                name = doc.source or doc.doc_id
                if not doc.text or not doc.text.strip():
                    report.rejected.append((name, "empty text"))
                    continue
                existing = current_docs.get(doc.doc_id)
                if doc.doc_id in seen_ids or (existing is not None and existing.text == doc.text):
                    report.rejected.append((name, "duplicate content"))
                    continue
                chunks = self._chunk(doc)
                if not chunks:
                    report.rejected.append((name, "empty after boilerplate stripping"))
                    continue
                seen_ids.add(doc.doc_id)
                previous = snapshot.document_by_source(doc.source)
                if previous is not None and previous.doc_id != doc.doc_id:
                    replaced.append(previous.doc_id)
                if existing is not None:
                    replaced.append(doc.doc_id)
                planned.append((doc, chunks))

            entries: List[IndexEntry] = []
            accepted_docs: List[Document] = []
            for doc, doc_entries, error in self._embed_documents(planned):
                if error is not None:
                    report.rejected.append((doc.source or doc.doc_id, error))
                    continue
                self._check_dimension(doc_entries)
                entries.extend(doc_entries)
                accepted_docs.append(doc)
                report.accepted.append(doc.doc_id)

            for name, reason in report.rejected:
                logger.warning("Rejected document %s: %s", name, reason)

            if accepted_docs:
                # Only replace documents whose successor was accepted
                accepted_sources = {d.source for d in accepted_docs if d.source}
                accepted_ids = {d.doc_id for d in accepted_docs}
                to_delete = [
                    doc_id
                    for doc_id in replaced
                    if doc_id in accepted_ids
                    or current_docs[doc_id].source in accepted_sources
                ]
                self.store.apply(upserts=entries, documents=accepted_docs, delete_documents=to_delete)
                self._after_swap()

            report.chunks = len(entries)
            report.index_version = self.store.version

        logger.info(
            "Ingested %d document(s) into %d chunk(s), rejected %d; index version %d",
            len(report.accepted),
            report.chunks,
            len(report.rejected),
            report.index_version,
        )
        return report

    def delete_document(self, doc_id: str) -> int:
        """Remove a document and its chunks. Returns the number of chunks removed."""
        with self._write_lock:
            snapshot = self.store.current
            if doc_id not in snapshot.documents:
                return 0
            removed = len(snapshot.chunks_for(doc_id))
            self.store.apply(delete_documents=[doc_id])
            self._after_swap()
        logger.info("Deleted document %s (%d chunks)", doc_id, removed)
        return removed

    def reindex(self) -> int:
        """Re-chunk and re-embed every document, then swap the rebuild in. Returns the new version."""
        with self._write_lock:
            documents = list(self.store.current.documents.values())
            planned = [(doc, self._chunk(doc)) for doc in documents]
            entries: List[IndexEntry] = []
            kept: List[Document] = []
            for doc, doc_entries, error in self._embed_documents([p for p in planned if p[1]]):
                if error is not None:
                    raise EmbeddingServiceError(
                        f"Reindex aborted, {doc.source or doc.doc_id}: {error}", stage="embed"
                    )
                self._check_dimension(doc_entries)
                entries.extend(doc_entries)
                kept.append(doc)
            self.store.replace(entries, kept)
            return self._after_swap()

    # ============ Query ============

    def _resolve(self, query: str, k: Optional[int], mode: Optional[str]) -> Tuple[int, str]:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query must be a non-empty string", stage="validate")
        k = self.config.default_k if k is None else k
        validate_k(k, self.config.max_k)
        mode = mode or self.config.default_mode
        if mode not in SEARCH_MODES:
            raise ValidationError(
                f"Unknown mode {mode!r}. Supported: {', '.join(SEARCH_MODES)}",
                stage="validate",
                query=query,
            )
        return k, mode

    def search(
        self,
        query: str,
        *,
        k: Optional[int] = None,
        mode: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RetrievalResult:
        """
        Search for relevant chunks without generating an answer.

        Args:
            query: Search query text
            k: Number of results to return
            mode: 'semantic', 'lexical', or 'hybrid'
            cancel_token: Checked before the query embedding call

        Returns:
            RetrievalResult ordered by score
        """
        k, mode = self._resolve(query, k, mode)
        try:
            return self.retriever.retrieve(query, k, mode, cancel_token=cancel_token)
        except EmbeddingServiceError as exc:
            logger.error("Retrieval failed for %r at %s after %s attempt(s)", query, exc.stage, exc.attempts)
            raise ServiceUnavailable(
                exc.message, stage=exc.stage or "embed", query=query, attempts=exc.attempts
            ) from exc

    def ask(
        self,
        query: str,
        *,
        k: Optional[int] = None,
        mode: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AnswerRecord:
        """
        Answer a question from the indexed documents.

        Args:
            query: Natural-language question
            k: Number of chunks to retrieve
            mode: 'semantic', 'lexical', or 'hybrid'
            cancel_token: Abort before any further billed call

        Returns:
            AnswerRecord; the unsupported sentinel when nothing grounds an answer

        Raises:
            ValidationError: Bad query, k or mode
            ServiceUnavailable: Embedding or generation backend is down
            QueryCancelled: The token was cancelled
        """
        k, mode = self._resolve(query, k, mode)
        snapshot = self.store.current
        key = CacheKey.build(query, k, mode, snapshot.version)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            retrieval = self.retriever.retrieve(
                query, k, mode, snapshot=snapshot, cancel_token=cancel_token
            )
            prompt = self.assembler.assemble(query, retrieval)

            if not prompt.answerable:
                verification = self.verifier.unsupported(retrieval)
                logger.info("No usable sources for %r, answering unsupported", query)
            else:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled("generate")
                raw_answer = self.generator.generate(prompt, cancel_token=cancel_token)
                verification = self.verifier.verify(raw_answer, retrieval, prompt.chunk_ids)
        except (EmbeddingServiceError, GenerationError) as exc:
            logger.error(
                "Service failure for %r at stage %s after %s attempt(s): %s",
                query,
                exc.stage,
                exc.attempts,
                exc.message,
            )
            raise ServiceUnavailable(
                exc.message, stage=exc.stage, query=query, attempts=exc.attempts
            ) from exc
        except AnchorError as exc:
            if exc.query is None:
                exc.query = query
            raise

        record = AnswerRecord(
            query=query,
            answer=verification.final_answer,
            citations=tuple(verification.citations),
            prompt=prompt.text,
            confidence=verification.confidence,
            supported=verification.supported,
            index_version=snapshot.version,
            faithfulness=verification.faithfulness,
        )
        # A swap during answering already evicted stale entries; do not
        # reinsert one for the old version
        if key.index_version == self.store.version:
            self.cache.put(key, record)
        return record

    # ============ Maintenance ============

    def clear_cache(self) -> int:
        return self.cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        snapshot = self.store.current
        return {
            "index_version": snapshot.version,
            "documents": len(snapshot.documents),
            "chunks": len(snapshot),
            "model_id": self.embedder.model_id,
            "embedding_dim": snapshot.dimension or self.embedder.dimension,
            "metric": self.config.metric,
            "db_path": self.config.db_path,
            "answer_cache": self.cache.stats(),
            "embedding_cache": get_cache().stats(),
        }

    def close(self) -> None:
        """Close the storage connection."""
        with self._write_lock:
            if self.metadata_store is not None:
                self.metadata_store.close()
                self.metadata_store = None

    def __enter__(self) -> "Anchor":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def create_anchor(
    db_path: Optional[str] = None,
    *,
    embedding_provider: str = "openai",
    generator_provider: str = "openai",
    **overrides,
) -> Anchor:
    """
    Create an Anchor instance with sensible defaults.

    Example:
        >>> anchor = create_anchor("anchor.db")
        >>> anchor.ingest(load_sources(["./docs"]))
        >>> record = anchor.ask("When was Acme founded?")
        >>> offline = create_anchor(embedding_provider="hashing", generator_provider="extractive")
    """
    config = AnchorConfig(
        db_path=db_path,
        embedding_provider=embedding_provider,
        generator_provider=generator_provider,
        **overrides,
    )
    return Anchor(config)
