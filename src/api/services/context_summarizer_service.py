"""
Context Summarizer Service

Replaces the lowest-value context entries with query-aware LLM summaries
until the context drops under the summarization threshold. Source names and
URLs are kept in the summaries so citations still resolve.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Union

from ..models.rag_context import DocumentContext, RagContext, WebSearchResult
from .token_budget_service import count_tokens, document_text, web_text

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise summaries while preserving "
    "all important information, facts, and citations."
)


@dataclass
class SummarizationConfig:
    summarization_threshold: int = 12000
    max_summary_tokens: int = 400
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.3
    max_summarization_time_ms: int = 3000
    query_aware: bool = True


@dataclass
class SummarizationStats:
    original_tokens: int
    summarized_tokens: int
    compression_ratio: float
    items_summarized: int
    processing_time_ms: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "original_tokens": self.original_tokens,
            "summarized_tokens": self.summarized_tokens,
            "compression_ratio": self.compression_ratio,
            "items_summarized": self.items_summarized,
            "processing_time_ms": self.processing_time_ms,
        }


def _context_tokens(context: RagContext, model: str) -> int:
    return sum(count_tokens(document_text(d), model) for d in context.document_contexts) + sum(
        count_tokens(web_text(w), model) for w in context.web_search_results
    )


def _footer(source_line: str) -> str:
    return (
        "Provide a concise summary that preserves:\n"
        "- Key facts and numbers\n"
        "- Important dates and names\n"
        "- Main points and conclusions\n"
        f"- Source: {source_line}\n"
        "\nSummary:"
    )


def build_document_prompt(doc: DocumentContext, query: Optional[str]) -> str:
    parts = [
        "Summarize the following document excerpt while preserving key information, facts, numbers, "
        "dates, and important details.\n\n",
        "IMPORTANT: Preserve all citations, references, and source information. "
        f'Include the document name: "{doc.document_name}".\n\n',
    ]
    if query:
        parts.append(f'Focus on information relevant to this query: "{query}"\n\n')
    parts.append(f"Document: {doc.document_name}\nContent:\n{doc.content}\n\n")
    parts.append(_footer(doc.document_name))
    return "".join(parts)


def build_web_prompt(result: WebSearchResult, query: Optional[str]) -> str:
    parts = [
        "Summarize the following web article while preserving key information, facts, numbers, "
        "dates, and important details.\n\n",
        "IMPORTANT: Preserve all citations and source information. "
        f'Include the source URL: "{result.url}" and title: "{result.title}".\n\n',
    ]
    if query:
        parts.append(f'Focus on information relevant to this query: "{query}"\n\n')
    parts.append(f"Title: {result.title}\nURL: {result.url}\n")
    if result.published_date:
        parts.append(f"Published: {result.published_date}\n")
    if result.author:
        parts.append(f"Author: {result.author}\n")
    parts.append(f"Content:\n{result.content}\n\n")
    parts.append(_footer(f"[{result.title}]({result.url})"))
    return "".join(parts)


class ContextSummarizerService:
    """Service for LLM summarization of oversized context"""

    def __init__(self, llm_service=None, config: Optional[SummarizationConfig] = None):
        self.llm_service = llm_service
        self.config = config or SummarizationConfig()

    async def _summarize(self, prompt: str, fallback: str, config: SummarizationConfig) -> str:
        try:
            result = await self.llm_service.complete(
                [{"role": "system", "content": _SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_summary_tokens,
            )
        except Exception as e:
            logger.warning("[Summarizer] summary failed, keeping original content: %s", e)
            return fallback
        return result.text.strip() or fallback

    async def summarize_context(
        self,
        context: RagContext,
        *,
        query: Optional[str] = None,
        model: str = "gpt-3.5-turbo",
    ) -> Tuple[RagContext, Optional[SummarizationStats]]:
        """Return (context, stats); stats is None when nothing needed summarizing."""
        config = self.config
        if self.llm_service is None or not self.llm_service.is_configured():
            return context, None

        start = time.monotonic()
        original = _context_tokens(context, model)
        if original <= config.summarization_threshold:
            logger.debug("[Summarizer] %d tokens under threshold %d", original, config.summarization_threshold)
            return context, None

        documents: List[DocumentContext] = list(context.document_contexts)
        web: List[WebSearchResult] = list(context.web_search_results)

        # Lowest-value entries go first: documents by ranking score, web results last in their order.
        queue: List[Tuple[str, int, Union[DocumentContext, WebSearchResult]]] = [
            ("web", index, item) for index, item in reversed(list(enumerate(web)))
        ]
        queue += sorted(
            (("doc", index, item) for index, item in enumerate(documents)),
            key=lambda entry: entry[2].ranking_score,
        )

        focus = query if config.query_aware else None
        deadline = start + config.max_summarization_time_ms / 1000
        current = original
        summarized = 0
        for kind, index, item in queue:
            if current <= config.summarization_threshold:
                break
            if time.monotonic() > deadline:
                logger.warning("[Summarizer] time limit reached after %d items", summarized)
                break
            if kind == "doc":
                before = count_tokens(document_text(item), model)
                content = await self._summarize(build_document_prompt(item, focus), item.content, config)
                documents[index] = replace(item, content=content)
                after = count_tokens(document_text(documents[index]), model)
            else:
                before = count_tokens(web_text(item), model)
                content = await self._summarize(build_web_prompt(item, focus), item.content, config)
                web[index] = replace(item, content=content)
                after = count_tokens(web_text(web[index]), model)
            current += after - before
            summarized += 1

        result = replace(context, document_contexts=documents, web_search_results=web)
        stats = SummarizationStats(
            original_tokens=original,
            summarized_tokens=current,
            compression_ratio=current / original if original else 1.0,
            items_summarized=summarized,
            processing_time_ms=(time.monotonic() - start) * 1000,
        )
        logger.info("[Summarizer] %d -> %d tokens, %d items summarized", original, current, summarized)
        return result, stats
