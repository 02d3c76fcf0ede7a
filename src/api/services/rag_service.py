"""
RAG Service

Handles retrieval-augmented generation context: query expansion, dense,
keyword and web retrieval, fusion and post-processing, caching, and the
prompt-side context stack (ordering, compression, summarization,
prioritization, token budgeting, formatting).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ConfigurationError
from ..models.question import Source
from ..models.rag_context import DocumentContext, RagContext, WebSearchResult
from ..models.rag_options import RagOptions
from .degradation_service import ServiceType
from .health_registry import HealthRegistry
from .pipeline_stage import StageResult, run_stage
from .service_contracts import (
    CompletionGateway,
    ContextCacheLike,
    DocumentStoreLike,
    EmbeddingGateway,
    KeywordIndexGateway,
    VectorIndexGateway,
    WebSearchGateway,
)

logger = logging.getLogger(__name__)

UNKNOWN_DOCUMENT = "Unknown Document"
SNIPPET_CHARS = 200
MAX_RESULTS_PER_SEARCH = 50


@dataclass
class PromptContext:
    """Context text ready for the system prompt plus what each stage did to it."""
    text: str
    context: RagContext
    stats: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def _snippet(content: str) -> str:
    content = content or ""
    return content[:SNIPPET_CHARS] + ("..." if len(content) > SNIPPET_CHARS else "")


def format_context_for_prompt(context: Optional[RagContext]) -> str:
    """Render context in the numbered layout the citation rules refer to. Empty context renders as ''."""
    if context is None:
        return ""
    parts: List[str] = []

    if context.document_contexts:
        parts.append("Relevant Document Excerpts:\n\n")
        for index, doc in enumerate(context.document_contexts, 1):
            marker = "⭐ " if doc.high_priority else ""
            label = " (HIGH PRIORITY)" if doc.high_priority else ""
            parts.append(f"[Document {index}] {marker}{doc.document_name}{label}\n")
            parts.append(f"Relevance Score: {doc.ranking_score:.2f}\n")
            parts.append(f"Content: {doc.content}\n\n")

    if context.web_search_results:
        parts.append("Web Search Results:\n\n")
        for index, result in enumerate(context.web_search_results, 1):
            marker = "⭐ " if result.high_priority else ""
            label = " (HIGH PRIORITY)" if result.high_priority else ""
            parts.append(f"[Web Source {index}] {marker}{result.title}{label}\n")
            parts.append(f"URL: {result.url}\n")
            parts.append(f"Content: {result.content}\n\n")
            parts.append(
                f"CITING: You MUST use [Web Source {index}]({result.url}) inline when using this source"
                " (this exact format is required for clickable links).\n\n"
            )

    return "".join(parts)


def extract_sources(context: Optional[RagContext], citation_min_score: float = 0.6) -> List[Source]:
    """All web results, and the documents whose retrieval score clears `citation_min_score`."""
    if context is None:
        return []
    sources: List[Source] = []
    for doc in context.document_contexts:
        if doc.score < citation_min_score:
            continue
        metadata = {k: v for k, v in doc.metadata.items() if v is not None}
        metadata["chunk_index"] = doc.chunk_index
        if doc.priority is not None:
            metadata["priority"] = doc.priority
        sources.append(
            Source(
                type="document",
                title=doc.document_name,
                document_id=doc.document_id,
                snippet=_snippet(doc.content),
                score=doc.score,
                metadata=metadata,
            )
        )
    for result in context.web_search_results:
        metadata: Dict[str, Any] = {}
        for name in ("published_date", "author", "access_date", "priority"):
            value = getattr(result, name)
            if value is not None:
                metadata[name] = value
        sources.append(
            Source(
                type="web",
                title=result.title,
                url=result.url,
                snippet=_snippet(result.content),
                score=result.score,
                metadata=metadata,
            )
        )
    return sources


def _hit_to_context(hit: Dict[str, Any]) -> DocumentContext:
    chunk_index = int(hit.get("chunk_index") or 0)
    document_id = str(hit.get("document_id") or "")
    return DocumentContext(
        document_id=document_id,
        document_name=UNKNOWN_DOCUMENT,
        content=str(hit.get("content") or ""),
        score=float(hit.get("score") or 0.0),
        chunk_index=chunk_index,
        chunk_id=str(hit.get("chunk_id") or f"{document_id}_{chunk_index}"),
        metadata=dict(hit.get("metadata") or {}),
        search_source=hit.get("search_source"),
    )


def passes_dense_floor(doc: DocumentContext, floor: float) -> bool:
    """Similarity floor for dense hits; keyword-only hits carry relative BM25 scores and pass."""
    if doc.search_source == "keyword":
        return True
    similarity = doc.semantic_score if doc.semantic_score is not None else doc.score
    return similarity >= floor


class RagService:
    """Service for assembling RAG context for one question"""

    def __init__(
        self,
        *,
        health: HealthRegistry,
        embedding_service: Optional[EmbeddingGateway] = None,
        vector_index: Optional[VectorIndexGateway] = None,
        bm25_service: Optional[KeywordIndexGateway] = None,
        search_service: Optional[WebSearchGateway] = None,
        document_store: Optional[DocumentStoreLike] = None,
        cache: Optional[ContextCacheLike] = None,
        llm_service: Optional[CompletionGateway] = None,
        query_expansion=None,
        threshold_optimizer=None,
        hybrid_search=None,
        rerank_service=None,
        deduplication=None,
        context_selector=None,
        adaptive_context=None,
        relevance_ordering=None,
        compressor=None,
        summarizer=None,
        prioritizer=None,
        token_budget=None,
    ):
        from .adaptive_context_service import AdaptiveContextService
        from .context_compressor_service import ContextCompressorService
        from .context_selector_service import ContextSelectorService
        from .context_summarizer_service import ContextSummarizerService
        from .deduplication_service import DeduplicationService
        from .hybrid_search_service import HybridSearchService
        from .query_expansion_service import QueryExpansionService
        from .relevance_ordering_service import RelevanceOrderingService
        from .rerank_service import RerankService
        from .source_prioritizer_service import SourcePrioritizerService
        from .threshold_optimizer_service import ThresholdOptimizerService
        from .token_budget_service import TokenBudgetService

        self.health = health
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.bm25_service = bm25_service
        self.search_service = search_service
        self.document_store = document_store
        self.cache = cache
        self.llm_service = llm_service
        self.query_expansion = query_expansion or QueryExpansionService(llm_service)
        self.threshold_optimizer = threshold_optimizer or ThresholdOptimizerService()
        self.hybrid_search = hybrid_search or HybridSearchService()
        self.rerank_service = rerank_service or RerankService()
        self.deduplication = deduplication or DeduplicationService()
        self.context_selector = context_selector or ContextSelectorService()
        self.token_budget = token_budget or TokenBudgetService()
        self.adaptive_context = adaptive_context or AdaptiveContextService(
            selector=self.context_selector, token_budget=self.token_budget
        )
        self.relevance_ordering = relevance_ordering or RelevanceOrderingService()
        self.compressor = compressor or ContextCompressorService(llm_service)
        self.summarizer = summarizer or ContextSummarizerService(llm_service)
        self.prioritizer = prioritizer or SourcePrioritizerService()

    # Gateway helpers

    def _dense_available(self) -> bool:
        return (
            self.embedding_service is not None
            and self.embedding_service.is_configured()
            and self.vector_index is not None
            and self.vector_index.is_configured()
        )

    def _web_available(self) -> bool:
        return self.search_service is not None and self.search_service.is_configured()

    async def _recover(
        self,
        service: ServiceType,
        error: BaseException,
        retry_fn,
        fallback_fn=None,
    ) -> Tuple[bool, Any]:
        """Route a failure from `HealthRegistry.call` through error recovery; returns (recovered, result)."""
        if isinstance(error, ConfigurationError):
            logger.info("[RAG] %s unavailable: %s", service.value, error.message)
            return False, None
        outcome = await self.health.recovery.attempt_recovery(
            service, error, retry_fn, fallback_fn, already_recorded=True
        )
        return outcome.recovered, outcome.result

    async def embed_query(self, query: str) -> Optional[List[float]]:
        """Query embedding through the embedding circuit, or None when unavailable."""
        if self.embedding_service is None or not self.embedding_service.is_configured():
            return None

        async def _embed():
            return await self.health.call(ServiceType.EMBEDDING, lambda: self.embedding_service.embed(query))

        try:
            return await _embed()
        except Exception as e:
            recovered, vector = await self._recover(ServiceType.EMBEDDING, e, _embed)
            return vector if recovered else None

    async def expand_query(self, query: str, options: RagOptions) -> str:
        if not options.enable_query_expansion or options.query_expansion_strategy == "none":
            return query
        stage = await run_stage(
            "query_expansion",
            lambda: self.query_expansion.expand_query(
                query,
                strategy=options.query_expansion_strategy,
                max_terms=options.max_expansion_terms,
            ),
            None,
        )
        if stage.value is None:
            return query
        if stage.value.expanded_terms:
            logger.info("[RAG] expanded query with %d terms", len(stage.value.expanded_terms))
        return stage.value.expanded_query or query

    def resolve_threshold(self, query: str, options: RagOptions) -> Tuple[float, str]:
        if not options.use_adaptive_threshold:
            return options.min_score, "static"
        try:
            result = self.threshold_optimizer.calculate_threshold(
                query, min_results=options.min_results, max_results=options.max_results
            )
        except Exception as e:
            logger.warning("[RAG] adaptive threshold failed, using min_score: %s", e)
            return options.min_score, "static"
        return result.threshold, result.strategy

    # Document retrieval

    async def _keyword_hits(self, query: str, options: RagOptions, top_k: int) -> List[Dict[str, Any]]:
        if self.bm25_service is None:
            return []
        hits = await asyncio.to_thread(
            self.bm25_service.search,
            user_id=options.user_id,
            query=query,
            top_k=top_k,
            topic_id=options.topic_id,
            document_ids=list(options.document_ids) or None,
        )
        return [dict(hit, search_source="keyword") for hit in hits]

    async def _vector_hits(self, vector: List[float], options: RagOptions, top_k: int) -> List[Dict[str, Any]]:
        return await self.health.call(
            ServiceType.PINECONE,
            lambda: self.vector_index.search(
                vector,
                user_id=options.user_id,
                topic_id=options.topic_id,
                document_ids=list(options.document_ids) or None,
                top_k=top_k,
            ),
        )

    async def _dense_documents(
        self,
        search_query: str,
        options: RagOptions,
        *,
        vector: Optional[List[float]] = None,
        stats: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[DocumentContext], bool]:
        """Thresholded dense hits without document names. Returns (results, failed)."""
        stats = stats if stats is not None else {}
        if not options.enable_document_search or not self._dense_available():
            return [], False

        if vector is None:
            vector = await self.embed_query(search_query)
        if vector is None:
            if self.bm25_service is None:
                return [], True
            # Embeddings are down: keyword search stands in for dense retrieval.
            logger.info("[RAG] embedding unavailable, falling back to keyword search")
            stats["fallback"] = "keyword"
            try:
                hits = await self._keyword_hits(search_query, options, options.max_document_chunks * 2)
            except Exception as e:
                logger.warning("[RAG] keyword fallback failed: %s", e)
                return [], True
            results = [_hit_to_context(hit) for hit in hits]
            return results[:options.max_document_chunks], True

        threshold, strategy = self.resolve_threshold(search_query, options)
        top_k = min(MAX_RESULTS_PER_SEARCH, max(options.max_document_chunks * 2, options.max_results))

        async def _keyword_fallback():
            return await self._keyword_hits(search_query, options, top_k)

        try:
            hits = await self._vector_hits(vector, options, top_k)
        except Exception as e:
            recovered, hits = await self._recover(
                ServiceType.PINECONE,
                e,
                lambda: self._vector_hits(vector, options, top_k),
                _keyword_fallback if self.bm25_service is not None else None,
            )
            if not recovered:
                return [], True

        results = [_hit_to_context(hit) for hit in hits or []]
        kept = [r for r in results if passes_dense_floor(r, threshold)]

        if (
            len(kept) < options.min_results
            and options.use_adaptive_threshold
            and options.requery_on_low_results
        ):
            floor = max(options.hard_min_score, self.threshold_optimizer.config.min_threshold)
            if floor < threshold:
                logger.info(
                    "[RAG] %d results at %.2f, re-querying once at %.2f", len(kept), threshold, floor
                )
                try:
                    retry_hits = await self._vector_hits(vector, options, min(MAX_RESULTS_PER_SEARCH, top_k * 2))
                except Exception as e:
                    logger.warning("[RAG] re-query failed, keeping first results: %s", e)
                else:
                    results = [_hit_to_context(hit) for hit in retry_hits]
                    kept = [r for r in results if passes_dense_floor(r, floor)]
                    threshold, strategy = floor, "requery"

        kept = [r for r in kept if passes_dense_floor(r, options.hard_min_score)]
        stats["threshold"] = {"value": round(threshold, 4), "strategy": strategy}
        return kept[:options.max_document_chunks], False

    async def _keyword_documents(self, search_query: str, options: RagOptions) -> Tuple[List[DocumentContext], bool]:
        if not options.enable_document_search or not options.enable_keyword_search or self.bm25_service is None:
            return [], False
        try:
            hits = await self._keyword_hits(search_query, options, max(options.max_document_chunks * 2, 10))
        except Exception as e:
            logger.warning("[RAG] keyword search failed: %s", e)
            return [], True
        return [_hit_to_context(hit) for hit in hits], False

    async def attach_document_metadata(self, documents: List[DocumentContext], user_id: str) -> List[DocumentContext]:
        """Fill in document names and attributes; a failed lookup leaves 'Unknown Document'."""
        if not documents or self.document_store is None:
            return documents
        try:
            rows = await self.document_store.get_documents_by_ids(
                sorted({d.document_id for d in documents}), user_id=user_id
            )
        except Exception as e:
            logger.warning("[RAG] document metadata lookup failed: %s", e)
            return documents

        enriched: List[DocumentContext] = []
        for doc in documents:
            row = rows.get(doc.document_id)
            if row is None:
                enriched.append(doc)
                continue
            metadata = dict(doc.metadata)
            for key in ("author", "authors", "file_type", "file_size", "published_date", "created_at", "updated_at"):
                if row.get(key) is not None:
                    metadata[key] = row[key]
            name = row.get("name") or row.get("filename") or UNKNOWN_DOCUMENT
            enriched.append(replace(doc, document_name=str(name), metadata=metadata))
        return enriched

    async def retrieve_document_context(self, query: str, options: RagOptions) -> List[DocumentContext]:
        """Dense retrieval for one user; never raises, returns [] when unavailable or failed."""
        if not options.enable_document_search:
            return []
        try:
            search_query = await self.expand_query(query, options)
            documents, _ = await self._dense_documents(search_query, options)
            return await self.attach_document_metadata(documents, options.user_id)
        except Exception as e:
            logger.error("[RAG] document retrieval failed: %s", e)
            return []

    async def retrieve_document_context_keyword(self, query: str, options: RagOptions) -> List[DocumentContext]:
        try:
            search_query = await self.expand_query(query, options)
            documents, _ = await self._keyword_documents(search_query, options)
            return await self.attach_document_metadata(documents, options.user_id)
        except Exception as e:
            logger.error("[RAG] keyword retrieval failed: %s", e)
            return []

    # Web retrieval

    async def _web_results(self, query: str, options: RagOptions) -> Tuple[List[WebSearchResult], bool]:
        if not options.enable_web_search or not self._web_available():
            return [], False
        from .search_service import WebSearchFilters

        filters = WebSearchFilters(
            topic=options.topic,
            time_range=options.time_range,
            start_date=options.start_date,
            end_date=options.end_date,
            country=options.country,
        )

        async def _search():
            return await self.health.call(
                ServiceType.TAVILY,
                lambda: self.search_service.search(query, max_results=options.max_web_results, filters=filters),
            )

        try:
            results = await _search()
        except Exception as e:
            recovered, results = await self._recover(ServiceType.TAVILY, e, _search)
            if not recovered:
                return [], True
        return list(results or [])[:options.max_web_results], False

    async def retrieve_web_search(self, query: str, options: RagOptions) -> List[WebSearchResult]:
        try:
            results, _ = await self._web_results(query, options)
        except Exception as e:
            logger.error("[RAG] web retrieval failed: %s", e)
            return []
        return results

    # Limits

    async def resolve_limits(self, query: str, options: RagOptions, stats: Dict[str, Any]) -> Tuple[RagOptions, Any]:
        """Apply dynamic/adaptive limits; any failure keeps the caller's static limits."""
        adaptive = None
        if options.enable_adaptive_context_selection:
            stage = await run_stage(
                "adaptive_context_selection",
                lambda: self.adaptive_context.select(
                    query,
                    model=options.model,
                    prefer_documents=options.prefer_documents,
                    prefer_web=options.prefer_web,
                    total_token_budget=options.token_budget,
                ),
                None,
            )
            adaptive = stage.value
            if adaptive is not None:
                stats["adaptive_context"] = adaptive.to_dict()
                return options.with_limits(
                    max_document_chunks=adaptive.document_chunks,
                    max_web_results=adaptive.web_results,
                ), adaptive

        if options.enable_dynamic_limits:
            stage = await run_stage(
                "dynamic_limits",
                lambda: self.context_selector.select_context_size(query),
                None,
            )
            if stage.value is not None:
                stats["dynamic_limits"] = {"chunk_count": stage.value.chunk_count, "reasoning": stage.value.reasoning}
                return options.with_limits(
                    max_document_chunks=stage.value.chunk_count,
                    max_web_results=options.max_web_results,
                ), None
        return options, None

    # Orchestration

    async def _lookup_cache(
        self, query: str, options: RagOptions
    ) -> Tuple[Optional[RagContext], Optional[str], Optional[List[float]]]:
        if self.cache is None or not options.enable_context_cache or not self.cache.is_configured():
            return None, None, None
        filters = options.cache_filters()
        key = self.cache.build_key(query, options.user_id, filters)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.info("[RAG] context served from cache")
            return replace(cached, from_cache=True), key, None

        embedding = None
        if options.enable_similarity_cache:
            embedding = await self.embed_query(query)
            if embedding is not None:
                similar = await self.cache.find_similar(
                    embedding,
                    user_id=options.user_id,
                    filters=filters,
                    threshold=options.context_cache_similarity_threshold,
                )
                if similar is not None:
                    logger.info("[RAG] context served from similarity cache")
                    return replace(similar, from_cache=True), key, embedding
        return None, key, embedding

    async def _post_process(
        self, query: str, documents: List[DocumentContext], options: RagOptions, stages: List[StageResult]
    ) -> List[DocumentContext]:
        from .diversity_filter_service import apply_mmr, diversity_metrics

        if options.enable_reranking and options.reranking_strategy != "none" and documents:
            stage = await run_stage(
                "reranking",
                lambda: self.rerank_service.rerank(
                    query,
                    documents,
                    strategy=options.reranking_strategy,
                    top_k=options.rerank_top_k,
                    max_results=max(options.rerank_max_results, options.max_document_chunks),
                    min_score=options.rerank_min_score,
                ),
                documents,
            )
            stages.append(stage)
            documents = stage.value or documents

        if options.enable_deduplication and len(documents) > 1:
            stage = await run_stage(
                "deduplication",
                lambda: self.deduplication.deduplicate(
                    documents, near_duplicate_threshold=options.deduplication_threshold
                ),
                (documents, None),
            )
            stages.append(stage)
            documents = stage.value[0]

        if options.enable_diversity_filter and len(documents) > 1:
            stage = await run_stage(
                "diversity_filter",
                lambda: apply_mmr(documents, lambda_=options.diversity_lambda, max_results=options.max_document_chunks),
                documents,
            )
            stages.append(stage)
            documents = stage.value
            if stage.ok:
                logger.debug("[RAG] diversity %s", diversity_metrics(documents))

        return documents

    async def retrieve_context(self, query: str, options: RagOptions) -> RagContext:
        """
        Assemble the context for one question.

        Always returns a RagContext with both lists present, even when every
        retrieval source fails.
        """
        if not options.enable_document_search and not options.enable_web_search:
            return RagContext()

        stats: Dict[str, Any] = {}
        try:
            cached, cache_key, query_embedding = await self._lookup_cache(query, options)
        except Exception as e:
            logger.warning("[Cache] lookup failed, treating as miss: %s", e)
            cached, cache_key, query_embedding = None, None, None
        if cached is not None:
            return cached

        stages: List[StageResult] = []
        limited, adaptive = await self.resolve_limits(query, options, stats)

        search_query = await self.expand_query(query, limited)
        vector = query_embedding if search_query == query else None

        dense_stats: Dict[str, Any] = {}
        outcomes = await asyncio.gather(
            self._dense_documents(search_query, limited, vector=vector, stats=dense_stats),
            self._keyword_documents(search_query, limited),
            self._web_results(query, limited),
            return_exceptions=True,
        )
        retrieval_failed = False
        resolved = []
        for name, outcome in zip(("documents", "keyword", "web"), outcomes):
            if isinstance(outcome, BaseException):
                logger.error("[RAG] %s retrieval raised: %s", name, outcome)
                resolved.append([])
                retrieval_failed = True
            else:
                resolved.append(outcome[0])
                retrieval_failed = retrieval_failed or outcome[1]
        dense, keyword, web = resolved
        stats.update(dense_stats)

        documents = dense
        if limited.enable_keyword_search and keyword:
            stage = await run_stage(
                "hybrid_fusion",
                lambda: self.hybrid_search.combine(
                    dense,
                    keyword,
                    strategy=limited.fusion_strategy,
                    semantic_weight=limited.semantic_weight,
                    keyword_weight=limited.keyword_weight,
                    rrf_k=limited.rrf_k,
                    max_results=max(limited.max_document_chunks * 2, limited.max_results),
                ),
                dense or keyword,
            )
            stages.append(stage)
            documents = stage.value

        documents = await self._post_process(search_query, documents, limited, stages)
        documents = [d for d in documents if passes_dense_floor(d, limited.hard_min_score)]
        documents = documents[:limited.max_document_chunks]
        documents = await self.attach_document_metadata(documents, limited.user_id)

        context = RagContext(document_contexts=documents, web_search_results=web)

        if adaptive is not None:
            stage = await run_stage(
                "adaptive_refine",
                lambda: self.adaptive_context.refine(context, adaptive, model=limited.model),
                adaptive,
            )
            refined = stage.value
            if refined is not adaptive:
                context = replace(
                    context,
                    document_contexts=context.document_contexts[:refined.document_chunks],
                    web_search_results=context.web_search_results[:refined.web_results],
                )

        snapshot = self.health.snapshot()
        failed_stages = [s.stage for s in stages if not s.ok]
        context.degraded = snapshot["degraded"] or retrieval_failed
        context.degradation_level = snapshot["degradation_level"]
        context.partial = retrieval_failed or bool(failed_stages)
        stats["stages"] = {s.stage: {"ok": s.ok, "duration_ms": round(s.duration_ms, 1)} for s in stages}
        if failed_stages:
            stats["failed_stages"] = failed_stages
        context.stats = stats

        logger.info(
            "[RAG] context retrieved: %d document chunks, %d web results%s",
            len(context.document_contexts),
            len(context.web_search_results),
            " (partial)" if context.partial else "",
        )

        if cache_key is not None and not context.partial and not context.is_empty:
            try:
                await self.cache.set_with_embedding(
                    cache_key,
                    context,
                    query_embedding,
                    filters=options.cache_filters(),
                    ttl=options.context_cache_ttl,
                )
            except Exception as e:
                logger.warning("[Cache] write failed: %s", e)
        return context

    # Prompt-side context stack

    async def build_prompt_context(
        self,
        context: RagContext,
        options: RagOptions,
        *,
        query: str,
        system_prompt: str = "",
        max_response_tokens: Optional[int] = None,
    ) -> PromptContext:
        """Run ordering, compression, summarization, prioritization and budgeting, then format."""
        if context is None or context.is_empty:
            return PromptContext(text="", context=context or RagContext())

        current = context
        stats: Dict[str, Any] = {}
        warnings: List[str] = []
        model = options.model

        stage = await run_stage(
            "relevance_ordering",
            lambda: self.relevance_ordering.order_context(current, options.ordering_strategy),
            (current, None),
            enabled=options.enable_relevance_ordering,
        )
        current = stage.value[0]
        if stage.value[1] is not None:
            stats["ordering"] = {"strategy": stage.value[1].strategy, "processing_time_ms": stage.value[1].processing_time_ms}

        stage = await run_stage(
            "context_compression",
            lambda: self.compressor.compress_context(
                current,
                query=query,
                model=model,
                strategy=options.compression_strategy,
                max_context_tokens=options.max_context_tokens,
            ),
            (current, None),
            enabled=options.enable_context_compression,
        )
        current = stage.value[0]
        if stage.value[1] is not None:
            stats["compression"] = stage.value[1].to_dict()

        stage = await run_stage(
            "context_summarization",
            lambda: self.summarizer.summarize_context(current, query=query, model=model),
            (current, None),
            enabled=options.enable_context_summarization,
        )
        current = stage.value[0]
        if stage.value[1] is not None:
            stats["summarization"] = stage.value[1].to_dict()

        stage = await run_stage(
            "source_prioritization",
            lambda: self.prioritizer.prioritize_context(current),
            (current, None),
            enabled=options.enable_source_prioritization,
        )
        current = stage.value[0]
        if stage.value[1] is not None:
            stats["prioritization"] = stage.value[1].to_dict()

        if options.enable_token_budgeting:
            def _fit_budget():
                budget = self.token_budget.calculate_budget(
                    model,
                    system_prompt=system_prompt,
                    user_prompt=query,
                    max_response_tokens=max_response_tokens,
                )
                check = self.token_budget.check_budget(budget, current, model)
                fitted = current
                if not check.fits:
                    fitted = self.token_budget.trim_context_to_budget(current, budget, model)
                return fitted, budget, check

            stage = await run_stage("token_budgeting", _fit_budget, (current, None, None))
            fitted, budget, check = stage.value
            if check is not None:
                warnings.extend(check.warnings)
                for error in check.errors:
                    logger.warning("[RAG] token budget: %s", error)
                stats["token_budget"] = {
                    **budget.to_dict(),
                    "fits": check.fits,
                    "context_tokens": check.context_tokens.total,
                    "trimmed": fitted is not current,
                }
            current = fitted

        return PromptContext(text=format_context_for_prompt(current), context=current, stats=stats, warnings=warnings)

    @staticmethod
    def format_context_for_prompt(context: Optional[RagContext]) -> str:
        return format_context_for_prompt(context)

    @staticmethod
    def extract_sources(context: Optional[RagContext], citation_min_score: float = 0.6) -> List[Source]:
        return extract_sources(context, citation_min_score)
