"""
RAG Config API Router

Provides endpoints for reading and updating the RAG pipeline defaults.
"""
from fastapi import APIRouter, HTTPException, Depends, Request
from pydantic import BaseModel, Field
from typing import Literal, Optional
import logging

from ..services.rag_config_service import RagConfigService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/rag", tags=["rag"])


class RagConfigResponse(BaseModel):
    """Response model for RAG configuration"""
    retrieval_enable_document_search: bool
    retrieval_enable_web_search: bool
    retrieval_max_document_chunks: int
    retrieval_max_web_results: int
    retrieval_min_score: float
    retrieval_hard_min_score: float
    retrieval_citation_min_score: float
    retrieval_requery_on_low_results: bool
    retrieval_use_adaptive_threshold: bool
    retrieval_min_results: int
    retrieval_max_results: int
    retrieval_enable_query_expansion: bool
    retrieval_query_expansion_strategy: str
    retrieval_max_expansion_terms: int
    retrieval_enable_keyword_search: bool
    retrieval_keyword_weight: float
    retrieval_semantic_weight: float
    retrieval_fusion_strategy: str
    retrieval_rrf_k: int
    reranking_enabled: bool
    reranking_strategy: str
    reranking_top_k: int
    reranking_max_results: int
    reranking_min_score: float
    reranking_api_model: str
    reranking_api_base_url: str
    reranking_api_key: str = ""
    reranking_timeout_seconds: int
    processing_enable_deduplication: bool
    processing_deduplication_threshold: float
    processing_enable_diversity_filter: bool
    processing_diversity_lambda: float
    processing_enable_dynamic_limits: bool
    processing_enable_adaptive_context_selection: bool
    processing_enable_relevance_ordering: bool
    processing_ordering_strategy: str
    processing_enable_context_compression: bool
    processing_compression_strategy: str
    processing_max_context_tokens: int
    processing_enable_context_summarization: bool
    processing_enable_source_prioritization: bool
    processing_enable_token_budgeting: bool
    cache_enabled: bool
    cache_similarity_enabled: bool
    cache_similarity_threshold: float
    cache_default_ttl_seconds: int
    cache_web_ttl_seconds: int
    cache_prefix: str
    cache_max_scan_keys: int
    generation_model: str
    generation_temperature: float
    generation_max_tokens: int
    generation_history_limit: int
    generation_timeout_seconds: int
    generation_off_topic_precheck: bool
    generation_enable_few_shot: bool
    generation_followup_count: int
    resilience_max_retries: int
    resilience_initial_delay_ms: int
    resilience_max_delay_ms: int
    resilience_backoff_multiplier: float
    resilience_jitter: float
    resilience_failure_threshold: int
    resilience_reset_timeout_seconds: int
    resilience_half_open_max_calls: int


class RagConfigUpdate(BaseModel):
    """Request model for updating RAG configuration"""
    retrieval_enable_document_search: Optional[bool] = None
    retrieval_enable_web_search: Optional[bool] = None
    retrieval_max_document_chunks: Optional[int] = Field(None, ge=1, le=50)
    retrieval_max_web_results: Optional[int] = Field(None, ge=1, le=20)
    retrieval_min_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    retrieval_hard_min_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    retrieval_citation_min_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    retrieval_requery_on_low_results: Optional[bool] = None
    retrieval_use_adaptive_threshold: Optional[bool] = None
    retrieval_min_results: Optional[int] = Field(None, ge=1, le=50)
    retrieval_max_results: Optional[int] = Field(None, ge=1, le=100)
    retrieval_enable_query_expansion: Optional[bool] = None
    retrieval_query_expansion_strategy: Optional[Literal["llm", "embedding", "hybrid", "none"]] = None
    retrieval_max_expansion_terms: Optional[int] = Field(None, ge=1, le=20)
    retrieval_enable_keyword_search: Optional[bool] = None
    retrieval_keyword_weight: Optional[float] = Field(None, ge=0.0, le=1.0)
    retrieval_semantic_weight: Optional[float] = Field(None, ge=0.0, le=1.0)
    retrieval_fusion_strategy: Optional[Literal["weighted", "rrf"]] = None
    retrieval_rrf_k: Optional[int] = Field(None, ge=1, le=500)
    reranking_enabled: Optional[bool] = None
    reranking_strategy: Optional[Literal["cross-encoder", "score-based", "hybrid", "none"]] = None
    reranking_top_k: Optional[int] = Field(None, ge=1, le=100)
    reranking_max_results: Optional[int] = Field(None, ge=1, le=100)
    reranking_min_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    reranking_api_model: Optional[str] = None
    reranking_api_base_url: Optional[str] = None
    reranking_api_key: Optional[str] = None
    reranking_timeout_seconds: Optional[int] = Field(None, ge=1, le=120)
    processing_enable_deduplication: Optional[bool] = None
    processing_deduplication_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    processing_enable_diversity_filter: Optional[bool] = None
    processing_diversity_lambda: Optional[float] = Field(None, ge=0.0, le=1.0)
    processing_enable_dynamic_limits: Optional[bool] = None
    processing_enable_adaptive_context_selection: Optional[bool] = None
    processing_enable_relevance_ordering: Optional[bool] = None
    processing_ordering_strategy: Optional[Literal["relevance", "score", "quality", "hybrid", "chronological"]] = None
    processing_enable_context_compression: Optional[bool] = None
    processing_compression_strategy: Optional[Literal["truncation", "summarization", "extraction", "hybrid"]] = None
    processing_max_context_tokens: Optional[int] = Field(None, ge=100, le=200000)
    processing_enable_context_summarization: Optional[bool] = None
    processing_enable_source_prioritization: Optional[bool] = None
    processing_enable_token_budgeting: Optional[bool] = None
    cache_enabled: Optional[bool] = None
    cache_similarity_enabled: Optional[bool] = None
    cache_similarity_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    cache_default_ttl_seconds: Optional[int] = Field(None, ge=1, le=604800)
    cache_web_ttl_seconds: Optional[int] = Field(None, ge=1, le=604800)
    cache_prefix: Optional[str] = None
    cache_max_scan_keys: Optional[int] = Field(None, ge=1, le=100000)
    generation_model: Optional[str] = None
    generation_temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    generation_max_tokens: Optional[int] = Field(None, ge=1, le=32000)
    generation_history_limit: Optional[int] = Field(None, ge=0, le=100)
    generation_timeout_seconds: Optional[int] = Field(None, ge=1, le=600)
    generation_off_topic_precheck: Optional[bool] = None
    generation_enable_few_shot: Optional[bool] = None
    generation_followup_count: Optional[int] = Field(None, ge=1, le=4)
    resilience_max_retries: Optional[int] = Field(None, ge=0, le=10)
    resilience_initial_delay_ms: Optional[int] = Field(None, ge=0, le=60000)
    resilience_max_delay_ms: Optional[int] = Field(None, ge=0, le=300000)
    resilience_backoff_multiplier: Optional[float] = Field(None, ge=1.0, le=10.0)
    resilience_jitter: Optional[float] = Field(None, ge=0.0, le=1.0)
    resilience_failure_threshold: Optional[int] = Field(None, ge=1, le=100)
    resilience_reset_timeout_seconds: Optional[int] = Field(None, ge=1, le=3600)
    resilience_half_open_max_calls: Optional[int] = Field(None, ge=1, le=100)


def get_rag_config_service(request: Request) -> RagConfigService:
    """Dependency injection for RagConfigService."""
    service = getattr(request.app.state, "rag_config_service", None)
    return service if service is not None else RagConfigService()


@router.get("/config", response_model=RagConfigResponse)
async def get_config(
    service: RagConfigService = Depends(get_rag_config_service)
):
    """Get current RAG configuration"""
    try:
        flat = service.get_flat_config()
        return RagConfigResponse(**flat)
    except Exception as e:
        logger.error("Failed to get RAG config: %s", e)
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/config")
async def update_config(
    updates: RagConfigUpdate,
    request: Request,
    service: RagConfigService = Depends(get_rag_config_service)
):
    """Update RAG configuration. Resilience and cache changes apply after restart."""
    update_dict = updates.model_dump(exclude_none=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No updates provided")

    min_score = update_dict.get("retrieval_min_score", service.config.retrieval.min_score)
    hard_min = update_dict.get("retrieval_hard_min_score", service.config.retrieval.hard_min_score)
    if hard_min > min_score:
        raise HTTPException(
            status_code=400,
            detail="retrieval_hard_min_score must not exceed retrieval_min_score",
        )

    try:
        service.save_flat_config(update_dict)
    except Exception as e:
        logger.error("Failed to update RAG config: %s", e)
        raise HTTPException(status_code=500, detail=str(e))

    ai_service = getattr(request.app.state, "ai_service", None)
    if ai_service is not None:
        ai_service.config = service.config
    return {"message": "RAG configuration updated successfully"}
