"""
Context Compressor Service

Shrinks retrieved context when it exceeds the compression threshold, one
entry at a time, down to an equal per-entry share of the token target.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from ..models.rag_context import RagContext
from .token_budget_service import count_tokens

logger = logging.getLogger(__name__)

COMPRESSION_STRATEGIES = ("summarization", "extraction", "truncation", "hybrid")
TRUNCATION_MODES = ("start", "end", "middle", "smart")

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+")

_SUMMARY_SYSTEM = (
    "You are a helpful assistant that creates concise summaries while preserving "
    "all important information, facts, numbers, and key details."
)
_EXTRACT_SYSTEM = (
    "You are a helpful assistant that extracts key points while preserving "
    "all important information, facts, numbers, and dates."
)


@dataclass
class CompressionConfig:
    max_context_tokens: int = 8000
    compression_threshold: int = 10000
    strategy: str = "hybrid"
    max_compression_time_ms: int = 2000
    summarization_model: str = "gpt-3.5-turbo"
    summarization_max_tokens: int = 500
    summarization_temperature: float = 0.3
    max_key_points: int = 5
    truncation_mode: str = "smart"


@dataclass
class CompressionStats:
    original_tokens: int
    compressed_tokens: int
    compression_ratio: float
    strategy: str
    processing_time_ms: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "compression_ratio": self.compression_ratio,
            "strategy": self.strategy,
            "processing_time_ms": self.processing_time_ms,
        }


def context_tokens(context: RagContext, model: str = "gpt-3.5-turbo") -> int:
    total = sum(count_tokens(f"{d.document_name}\n{d.content}", model) for d in context.document_contexts)
    total += sum(count_tokens(f"{w.title}\n{w.url}\n{w.content}", model) for w in context.web_search_results)
    return total


def truncate_text(text: str, max_tokens: int, mode: str = "smart", model: str = "gpt-3.5-turbo") -> str:
    current = count_tokens(text, model)
    if current <= max_tokens:
        return text
    target_chars = int((max_tokens / current) * len(text) * 0.9)

    if mode == "start":
        return "..." + (text[-target_chars:] if target_chars > 0 else "")
    if mode == "end":
        return text[:target_chars] + "..."
    if mode == "middle":
        head = target_chars // 2
        tail = target_chars - head
        return text[:head] + "..." + (text[-tail:] if tail > 0 else "")

    sentences = _SENTENCE_RE.findall(text) or [text]
    kept: List[str] = []
    used = 0
    for sentence in sentences:
        tokens = count_tokens(sentence, model)
        if used + tokens > max_tokens:
            break
        kept.append(sentence)
        used += tokens
    result = "".join(kept)
    if not result:
        # A single oversized sentence: fall back to a hard cut.
        result = text[:target_chars]
    if len(result) < len(text):
        result += "..."
    return result


class ContextCompressorService:
    """Service for compressing RAG context into a token target"""

    def __init__(self, llm_service=None, config: Optional[CompressionConfig] = None):
        self.llm_service = llm_service
        self.config = config or CompressionConfig()

    def _llm_available(self) -> bool:
        return self.llm_service is not None and self.llm_service.is_configured()

    async def _ask(self, system: str, prompt: str, config: CompressionConfig) -> str:
        result = await self.llm_service.complete(
            [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
            model=config.summarization_model,
            temperature=config.summarization_temperature,
            max_tokens=config.summarization_max_tokens,
        )
        return result.text.strip()

    async def summarize(self, content: str, query: Optional[str], config: CompressionConfig, model: str) -> str:
        fallback_tokens = config.summarization_max_tokens * 4
        if not self._llm_available():
            return truncate_text(content, fallback_tokens, "smart", model)
        relation = f' in relation to the query "{query}"' if query else ""
        prompt = (
            f"Summarize the following content{relation}. Preserve all key facts, numbers, dates, "
            f"and important details. Keep the summary concise but comprehensive.\n\nContent:\n{content}"
        )
        try:
            return await self._ask(_SUMMARY_SYSTEM, prompt, config) or content
        except Exception as e:
            logger.warning("[Compressor] summarization failed, truncating: %s", e)
            return truncate_text(content, fallback_tokens, "smart", model)

    async def extract_key_points(
        self, content: str, query: Optional[str], config: CompressionConfig, model: str
    ) -> str:
        fallback_tokens = config.summarization_max_tokens * 4
        if not self._llm_available():
            return truncate_text(content, fallback_tokens, "smart", model)
        relation = f' in relation to the query "{query}"' if query else ""
        prompt = (
            f"Extract the {config.max_key_points} most important key points from the following content"
            f"{relation}. Format as a bulleted list. Preserve facts, numbers, and dates.\n\nContent:\n{content}"
        )
        try:
            return await self._ask(_EXTRACT_SYSTEM, prompt, config) or content
        except Exception as e:
            logger.warning("[Compressor] extraction failed, truncating: %s", e)
            return truncate_text(content, fallback_tokens, "smart", model)

    async def compress_text(
        self, content: str, query: Optional[str], config: CompressionConfig, target_tokens: int, model: str
    ) -> str:
        current = count_tokens(content, model)
        if current <= target_tokens:
            return content

        strategy = config.strategy
        if strategy == "summarization":
            return await self.summarize(content, query, config, model)
        if strategy == "extraction":
            return await self.extract_key_points(content, query, config, model)
        if strategy == "truncation":
            return truncate_text(content, target_tokens, config.truncation_mode, model)

        summary = await self.summarize(content, query, config, model)
        if count_tokens(summary, model) >= current * 0.9:
            return truncate_text(content, target_tokens, config.truncation_mode, model)
        return summary

    async def compress_context(
        self,
        context: RagContext,
        *,
        query: Optional[str] = None,
        model: str = "gpt-3.5-turbo",
        strategy: Optional[str] = None,
        max_context_tokens: Optional[int] = None,
    ) -> Tuple[RagContext, Optional[CompressionStats]]:
        """Return (context, stats); stats is None when the context was under the threshold."""
        config = self.config
        if strategy in COMPRESSION_STRATEGIES:
            config = replace(config, strategy=strategy)
        if max_context_tokens:
            config = replace(config, max_context_tokens=max_context_tokens)

        start = time.monotonic()
        original = context_tokens(context, model)
        if original <= config.compression_threshold:
            return context, None

        logger.info(
            "[Compressor] %d tokens over threshold %d, target %d (%s)",
            original,
            config.compression_threshold,
            config.max_context_tokens,
            config.strategy,
        )
        total_items = len(context.document_contexts) + len(context.web_search_results)
        per_item = config.max_context_tokens // total_items if total_items else config.max_context_tokens
        deadline = start + config.max_compression_time_ms / 1000

        documents = []
        for doc in context.document_contexts:
            if time.monotonic() > deadline:
                logger.warning("[Compressor] time limit reached, keeping remaining entries as-is")
                documents.append(doc)
                continue
            content = await self.compress_text(doc.content, query, config, per_item, model)
            documents.append(replace(doc, content=content))

        web = []
        for result in context.web_search_results:
            if time.monotonic() > deadline:
                web.append(result)
                continue
            content = await self.compress_text(result.content, query, config, per_item, model)
            web.append(replace(result, content=content))

        compressed = replace(context, document_contexts=documents, web_search_results=web)
        compressed_tokens = context_tokens(compressed, model)
        stats = CompressionStats(
            original_tokens=original,
            compressed_tokens=compressed_tokens,
            compression_ratio=compressed_tokens / original if original else 1.0,
            strategy=config.strategy,
            processing_time_ms=(time.monotonic() - start) * 1000,
        )
        logger.info("[Compressor] %d -> %d tokens (ratio %.2f)", original, compressed_tokens, stats.compression_ratio)
        return compressed, stats
