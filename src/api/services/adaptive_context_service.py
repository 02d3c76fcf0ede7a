"""
Adaptive Context Service

Chooses how many document chunks and web results to request for a question,
combining query complexity, document/web preference and the token budget.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from ..models.rag_context import RagContext
from .context_selector_service import ContextSelectorService, QueryComplexity
from .token_budget_service import TokenBudget, TokenBudgetService

logger = logging.getLogger(__name__)

TOKENS_PER_DOCUMENT = 300
TOKENS_PER_WEB_RESULT = 400
TOKENS_PER_ITEM_REFINE = 350


@dataclass
class AdaptiveContextConfig:
    min_document_chunks: int = 3
    max_document_chunks: int = 20
    min_web_results: int = 2
    max_web_results: int = 10
    default_document_chunks: int = 5
    balance_ratio: float = 0.5
    enable_complexity_analysis: bool = True
    enable_token_aware_selection: bool = True


@dataclass
class AdaptiveContextResult:
    document_chunks: int
    web_results: int
    complexity: QueryComplexity
    reasoning: str
    token_budget: Optional[TokenBudget] = None
    adjustments: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "document_chunks": self.document_chunks,
            "web_results": self.web_results,
            "complexity": self.complexity.to_dict(),
            "reasoning": self.reasoning,
            "token_budget_remaining": self.token_budget.remaining["total"] if self.token_budget else None,
            "adjustments": dict(self.adjustments),
        }


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class AdaptiveContextService:
    """Service for sizing document and web context together"""

    def __init__(
        self,
        config: Optional[AdaptiveContextConfig] = None,
        *,
        selector: Optional[ContextSelectorService] = None,
        token_budget: Optional[TokenBudgetService] = None,
    ):
        self.config = config or AdaptiveContextConfig()
        self.selector = selector or ContextSelectorService()
        self.token_budget = token_budget or TokenBudgetService()

    def _default_complexity(self, query: str) -> QueryComplexity:
        return QueryComplexity(
            length=len(query),
            word_count=len(query.split()),
            keyword_count=0,
            keywords=[],
            intent_complexity="moderate",
            query_type="factual",
            complexity_score=0.5,
        )

    def select(
        self,
        query: str,
        *,
        model: str = "gpt-3.5-turbo",
        token_budget: Optional[TokenBudget] = None,
        prefer_documents: bool = False,
        prefer_web: bool = False,
        balance_ratio: Optional[float] = None,
        total_token_budget: Optional[int] = None,
    ) -> AdaptiveContextResult:
        config = self.config
        ratio = config.balance_ratio if balance_ratio is None else max(0.0, min(1.0, balance_ratio))

        if config.enable_complexity_analysis:
            selection = self.selector.select_context_size(
                query,
                min_chunks=config.min_document_chunks,
                max_chunks=config.max_document_chunks,
                default_chunks=config.default_document_chunks,
            )
            complexity, base_docs = selection.complexity, selection.chunk_count
        else:
            complexity, base_docs = self._default_complexity(query), config.default_document_chunks

        budget = token_budget
        if budget is None and config.enable_token_aware_selection:
            try:
                budget = self.token_budget.calculate_budget(
                    model, user_prompt=query, model_limit=total_token_budget
                )
            except Exception as e:
                logger.warning("[AdaptiveContext] token budget unavailable: %s", e)

        docs = base_docs
        web = _clamp(math.floor(docs * 0.8), config.min_web_results, config.max_web_results)

        if prefer_documents:
            docs = min(config.max_document_chunks, math.floor(docs * 1.3))
            web = max(config.min_web_results, math.floor(web * 0.7))
            balance_adjustment = 1
        elif prefer_web:
            docs = max(config.min_document_chunks, math.floor(docs * 0.7))
            web = min(config.max_web_results, math.floor(web * 1.3))
            balance_adjustment = -1
        else:
            total = docs + web
            docs = math.floor(total * ratio)
            web = total - docs
            balance_adjustment = 0

        token_adjustment = 0
        if budget is not None and config.enable_token_aware_selection:
            available = budget.remaining["total"]
            max_items = math.floor(available / ((TOKENS_PER_DOCUMENT + TOKENS_PER_WEB_RESULT) / 2))
            if docs + web > max_items:
                scale = max_items / (docs + web)
                docs = max(config.min_document_chunks, math.floor(docs * scale))
                web = max(config.min_web_results, math.floor(web * scale))
                token_adjustment = -1
            elif available > (docs + web) * 500:
                extra_items = math.floor((available - (docs + web) * 500) / 500)
                if extra_items > 0:
                    doc_increase = min(config.max_document_chunks - docs, math.floor(extra_items * ratio))
                    web_increase = min(config.max_web_results - web, extra_items - doc_increase)
                    docs += max(0, doc_increase)
                    web += max(0, web_increase)
                    token_adjustment = 1

        docs = _clamp(docs, config.min_document_chunks, config.max_document_chunks)
        web = _clamp(web, config.min_web_results, config.max_web_results)

        reasons: List[str] = [
            f"Complexity: {complexity.intent_complexity} (score: {complexity.complexity_score:.2f})",
            f"Query type: {complexity.query_type}",
        ]
        if budget is not None:
            reasons.append(f"Token budget: {budget.remaining['total']} tokens available")
        if prefer_documents:
            reasons.append("Preferring documents over web results")
        elif prefer_web:
            reasons.append("Preferring web results over documents")
        else:
            reasons.append(f"Balance ratio: {ratio * 100:.0f}% documents")
        if token_adjustment > 0:
            reasons.append("Token budget allows additional context")
        elif token_adjustment < 0:
            reasons.append("Token budget limits context size")

        reasoning = "; ".join(reasons)
        logger.info("[AdaptiveContext] docs=%d web=%d (%s)", docs, web, reasoning)
        return AdaptiveContextResult(
            document_chunks=docs,
            web_results=web,
            complexity=complexity,
            reasoning=reasoning,
            token_budget=budget,
            adjustments={
                "complexity_based": base_docs,
                "token_based": token_adjustment,
                "balance_based": balance_adjustment,
            },
        )

    def refine(
        self,
        context: RagContext,
        initial: AdaptiveContextResult,
        *,
        model: str = "gpt-3.5-turbo",
    ) -> AdaptiveContextResult:
        """Re-size once the retrieved context is known: shrink when it overflows, grow when under half used."""
        budget = initial.token_budget
        if budget is None:
            return initial

        config = self.config
        tokens = self.token_budget.count_context_tokens(context, model)
        check = self.token_budget.check_budget(budget, context, model)
        available = budget.remaining["total"]
        docs, web = initial.document_chunks, initial.web_results

        if not check.fits and tokens.total > 0:
            excess_ratio = (tokens.total - available) / tokens.total
            docs = max(config.min_document_chunks, math.floor(docs * (1 - excess_ratio * 0.5)))
            web = max(config.min_web_results, math.floor(web * (1 - excess_ratio * 0.5)))
            logger.info("[AdaptiveContext] refine shrink docs %d -> %d, web %d -> %d",
                        initial.document_chunks, docs, initial.web_results, web)
        elif tokens.total < available * 0.5:
            additional = math.floor((available - tokens.total) / TOKENS_PER_ITEM_REFINE)
            if additional > 0:
                doc_increase = min(config.max_document_chunks - docs, math.floor(additional * 0.6))
                web_increase = min(config.max_web_results - web, additional - doc_increase)
                docs += max(0, doc_increase)
                web += max(0, web_increase)
                logger.info("[AdaptiveContext] refine grow docs %d -> %d, web %d -> %d",
                            initial.document_chunks, docs, initial.web_results, web)

        return replace(
            initial,
            document_chunks=docs,
            web_results=web,
            reasoning=initial.reasoning + "; Refined based on actual context size",
        )
