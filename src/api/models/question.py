"""
Question answering data models

Request/response shapes for the ask endpoints. Field names are snake_case in
Python; camelCase aliases are accepted and emitted on the wire.
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Literal, Optional


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversationTurn(_CamelModel):
    """One prior message supplied by the caller"""
    role: Literal["user", "assistant"] = Field(..., description="Message author role")
    content: str = Field(..., description="Message text")


class QuestionRequest(_CamelModel):
    """Question plus per-request pipeline switches. Unset switches use configured defaults."""
    question: str = Field(..., description="User question (1-2000 characters)")
    context: Optional[str] = Field(None, description="Extra caller-supplied context")
    conversation_history: Optional[List[ConversationTurn]] = Field(None, description="Prior turns")
    conversation_id: Optional[str] = Field(None, description="Conversation to load history from and persist to")
    model: Optional[str] = Field(None, description="Chat model override")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: Optional[int] = Field(None, ge=1, le=32000, description="Max completion tokens")

    # Web search
    enable_search: Optional[bool] = Field(None, description="Master switch for web search")
    enable_web_search: Optional[bool] = Field(None, description="Search the web")
    topic: Optional[str] = Field(None, description="Web search topic keyword")
    max_search_results: Optional[int] = Field(None, ge=1, le=20, description="Max web results")
    time_range: Optional[Literal["day", "week", "month", "year", "d", "w", "m", "y"]] = Field(
        None, description="Web search recency window"
    )
    start_date: Optional[str] = Field(None, description="Web search start date (YYYY-MM-DD)")
    end_date: Optional[str] = Field(None, description="Web search end date (YYYY-MM-DD)")
    country: Optional[str] = Field(None, description="Web search country code")

    # Document search
    enable_document_search: Optional[bool] = Field(None, description="Search the user's documents")
    topic_id: Optional[str] = Field(None, description="Topic that scopes retrieval")
    document_ids: Optional[List[str]] = Field(None, description="Restrict retrieval to these documents")
    max_document_chunks: Optional[int] = Field(None, ge=1, le=50, description="Max document chunks")
    min_score: Optional[float] = Field(None, ge=0.0, le=1.0, description="Minimum similarity score")

    # Query expansion / thresholds
    enable_query_expansion: Optional[bool] = Field(None, description="Expand the query before retrieval")
    query_expansion_strategy: Optional[Literal["llm", "embedding", "hybrid", "none"]] = None
    max_expansion_terms: Optional[int] = Field(None, ge=1, le=20)
    use_adaptive_threshold: Optional[bool] = Field(None, description="Derive min score from the query type")
    min_results: Optional[int] = Field(None, ge=1, le=50)
    max_results: Optional[int] = Field(None, ge=1, le=100)

    # Fusion / post-processing stages
    enable_keyword_search: Optional[bool] = Field(None, description="Fuse BM25 keyword results")
    keyword_weight: Optional[float] = Field(None, ge=0.0, le=1.0)
    semantic_weight: Optional[float] = Field(None, ge=0.0, le=1.0)
    enable_reranking: Optional[bool] = None
    reranking_strategy: Optional[Literal["cross-encoder", "score-based", "hybrid", "none"]] = None
    rerank_top_k: Optional[int] = Field(None, ge=1, le=100)
    enable_deduplication: Optional[bool] = None
    deduplication_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    enable_diversity_filter: Optional[bool] = None
    diversity_lambda: Optional[float] = Field(None, ge=0.0, le=1.0)

    # Context selection / compression
    enable_dynamic_limits: Optional[bool] = None
    enable_adaptive_context_selection: Optional[bool] = None
    prefer_documents: Optional[bool] = None
    prefer_web: Optional[bool] = None
    token_budget: Optional[int] = Field(None, ge=100, le=200000)
    enable_relevance_ordering: Optional[bool] = None
    ordering_strategy: Optional[Literal["relevance", "score", "quality", "hybrid", "chronological"]] = None
    enable_context_compression: Optional[bool] = None
    compression_strategy: Optional[Literal["truncation", "summarization", "extraction", "hybrid"]] = None
    max_context_tokens: Optional[int] = Field(None, ge=100, le=200000)
    enable_context_summarization: Optional[bool] = None
    enable_source_prioritization: Optional[bool] = None
    enable_token_budgeting: Optional[bool] = None

    # Cache
    enable_context_cache: Optional[bool] = None
    context_cache_ttl: Optional[int] = Field(None, ge=1, le=604800)
    enable_similarity_cache: Optional[bool] = None
    context_cache_similarity_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)

    # Prompting
    enable_few_shot: Optional[bool] = None
    off_topic_precheck: Optional[bool] = None
    strict_topic_scope: Optional[bool] = None


class Source(_CamelModel):
    """Citable source surfaced to the caller"""
    type: Literal["document", "web"] = Field(..., description="Source kind")
    title: str = Field(..., description="Document name or page title")
    url: Optional[str] = Field(None, description="Web URL")
    document_id: Optional[str] = Field(None, description="Document ID")
    snippet: str = Field("", description="First 200 characters of the content")
    score: Optional[float] = Field(None, description="Retrieval score")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Extra source attributes")


class Usage(_CamelModel):
    """Token usage reported by the completion gateway"""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class QuestionResponse(_CamelModel):
    """Final answer with sources, citations, and follow-ups"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    answer: str
    model: str
    sources: List[Source] = Field(default_factory=list)
    citations: Dict[str, Any] = Field(default_factory=dict)
    follow_up_questions: List[str] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    degraded: bool = False
    degradation_level: str = "none"
    partial: bool = False
    off_topic: bool = False
