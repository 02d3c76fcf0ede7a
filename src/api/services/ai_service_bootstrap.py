"""Dependency bootstrap helpers for AIService."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .ai_service import AIService
from .bm25_service import Bm25Service
from .document_store import DocumentStore
from .embedding_service import EmbeddingService
from .health_registry import HealthRegistry
from .llm_service import LlmService
from .rag_cache_service import RagCacheService
from .rag_config_service import RagConfigService
from .rag_service import RagService
from .rerank_service import RerankApiConfig, RerankService
from .search_service import SearchService
from .vector_index_service import VectorIndexService


@dataclass
class AIServiceBundle:
    """Services shared by the AI routers for one application instance."""
    config_service: RagConfigService
    health: HealthRegistry
    cache: RagCacheService
    document_store: DocumentStore
    rag_service: RagService
    ai_service: AIService


def bootstrap_ai_service(config_service: Optional[RagConfigService] = None) -> AIServiceBundle:
    """Build the answer pipeline and its gateways in one place."""
    config_service = config_service or RagConfigService()
    config = config_service.config

    health = HealthRegistry.from_config(config.resilience)
    llm_service = LlmService(timeout_seconds=config.generation.timeout_seconds)
    cache = RagCacheService.from_config(config.cache)
    document_store = DocumentStore()
    reranking = config.reranking

    rag_service = RagService(
        health=health,
        embedding_service=EmbeddingService(),
        vector_index=VectorIndexService(),
        bm25_service=Bm25Service(),
        search_service=SearchService(),
        document_store=document_store,
        cache=cache,
        llm_service=llm_service,
        rerank_service=RerankService(
            RerankApiConfig(
                model=reranking.api_model,
                base_url=reranking.api_base_url,
                api_key=reranking.api_key,
                timeout_seconds=reranking.timeout_seconds,
            )
        ),
    )
    ai_service = AIService(
        health=health,
        rag_service=rag_service,
        llm_service=llm_service,
        config=config,
        document_store=document_store,
    )
    return AIServiceBundle(
        config_service=config_service,
        health=health,
        cache=cache,
        document_store=document_store,
        rag_service=rag_service,
        ai_service=ai_service,
    )
