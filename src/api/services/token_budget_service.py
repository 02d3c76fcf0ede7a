"""
Token Budget Service

Token counting (tiktoken) and the per-model context-window budget that the
formatted RAG context has to fit into.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

import tiktoken

from ..models.rag_context import DocumentContext, RagContext, WebSearchResult

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"

MODEL_TOKEN_LIMITS: Dict[str, int] = {
    "gpt-3.5-turbo": 16385,
    "gpt-3.5-turbo-16k": 16385,
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4-turbo-preview": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
}
DEFAULT_MODEL_LIMIT = 16385

_encodings: Dict[str, Optional["tiktoken.Encoding"]] = {}
_encodings_lock = threading.Lock()


def encoding_name_for_model(model: str) -> str:
    name = str(model or "")
    if any(tag in name for tag in ("davinci", "curie", "babbage")) and "gpt" not in name:
        return "p50k_base"
    return DEFAULT_ENCODING


def _get_encoding(name: str) -> Optional["tiktoken.Encoding"]:
    """Cached encoding; None when it cannot be loaded (e.g. offline BPE download)."""
    with _encodings_lock:
        if name in _encodings:
            return _encodings[name]
        try:
            encoding = tiktoken.get_encoding(name)
        except Exception as e:
            logger.warning("[Tokens] encoding %s unavailable, estimating by length: %s", name, e)
            encoding = None
        _encodings[name] = encoding
        return encoding


def count_tokens(text: str, model: str = "gpt-3.5-turbo") -> int:
    if not text:
        return 0
    encoding = _get_encoding(encoding_name_for_model(model))
    if encoding is None:
        return math.ceil(len(text) / 4)
    return len(encoding.encode(text, disallowed_special=()))


def truncate_to_tokens(text: str, max_tokens: int, model: str = "gpt-3.5-turbo") -> str:
    if max_tokens <= 0 or not text:
        return ""
    encoding = _get_encoding(encoding_name_for_model(model))
    if encoding is None:
        return text[: max_tokens * 4]
    tokens = encoding.encode(text, disallowed_special=())
    if len(tokens) <= max_tokens:
        return text
    return encoding.decode(tokens[:max_tokens])


def get_model_limit(model: str) -> int:
    name = str(model or "")
    if name in MODEL_TOKEN_LIMITS:
        return MODEL_TOKEN_LIMITS[name]
    if "gpt-4-turbo" in name or "gpt-4o" in name:
        return MODEL_TOKEN_LIMITS["gpt-4-turbo"]
    if "gpt-4-32k" in name:
        return MODEL_TOKEN_LIMITS["gpt-4-32k"]
    if "gpt-4" in name:
        return MODEL_TOKEN_LIMITS["gpt-4"]
    if "gpt-3.5-turbo" in name:
        return MODEL_TOKEN_LIMITS["gpt-3.5-turbo"]
    logger.warning("[Tokens] unknown model %s, using default limit %d", name, DEFAULT_MODEL_LIMIT)
    return DEFAULT_MODEL_LIMIT


def document_text(doc: DocumentContext) -> str:
    return f"[Document] {doc.document_name}\n{doc.content}"


def web_text(result: WebSearchResult) -> str:
    return f"[Web Source] {result.title}\nURL: {result.url}\n{result.content}"


@dataclass
class BudgetAllocation:
    document_context: float = 0.50
    web_results: float = 0.20
    system_prompt: float = 0.05
    user_prompt: float = 0.05
    response_reserve: float = 0.15
    overhead: float = 0.05

    def normalized(self) -> "BudgetAllocation":
        total = (
            self.document_context + self.web_results + self.system_prompt
            + self.user_prompt + self.response_reserve + self.overhead
        )
        if total <= 0 or abs(total - 1.0) <= 0.01:
            return self
        logger.warning("[Tokens] allocation ratios sum to %.3f, normalizing", total)
        return BudgetAllocation(
            document_context=self.document_context / total,
            web_results=self.web_results / total,
            system_prompt=self.system_prompt / total,
            user_prompt=self.user_prompt / total,
            response_reserve=self.response_reserve / total,
            overhead=self.overhead / total,
        )


@dataclass
class ContextTokens:
    document_context: int = 0
    web_results: int = 0

    @property
    def total(self) -> int:
        return self.document_context + self.web_results


@dataclass
class TokenBudget:
    model: str
    model_limit: int
    available_budget: int
    allocations: Dict[str, int]
    usage: Dict[str, int]
    remaining: Dict[str, int]
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"Token Budget: {self.usage['total']}/{self.model_limit} tokens used, "
            f"{self.remaining['total']} remaining. "
            f"Allocations: Documents={self.allocations['document_context']}, "
            f"Web={self.allocations['web_results']}, "
            f"Response={self.allocations['response_reserve']}"
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "model": self.model,
            "model_limit": self.model_limit,
            "available_budget": self.available_budget,
            "allocations": dict(self.allocations),
            "usage": dict(self.usage),
            "remaining": dict(self.remaining),
            "warnings": list(self.warnings),
        }


@dataclass
class BudgetCheck:
    fits: bool
    context_tokens: ContextTokens
    remaining: Dict[str, int]
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class TokenBudgetService:
    """Service for counting and fitting context into a model's window"""

    def __init__(self, allocation: Optional[BudgetAllocation] = None):
        self.allocation = (allocation or BudgetAllocation()).normalized()

    def calculate_budget(
        self,
        model: str = "gpt-3.5-turbo",
        *,
        system_prompt: str = "",
        user_prompt: str = "",
        max_response_tokens: Optional[int] = None,
        model_limit: Optional[int] = None,
    ) -> TokenBudget:
        allocation = self.allocation
        limit = int(model_limit or get_model_limit(model))
        response_tokens = int(max_response_tokens or math.floor(limit * allocation.response_reserve))
        overhead_tokens = math.floor(limit * allocation.overhead)
        available = limit - response_tokens - overhead_tokens

        allocations = {
            "document_context": math.floor(available * allocation.document_context),
            "web_results": math.floor(available * allocation.web_results),
            "system_prompt": math.floor(available * allocation.system_prompt),
            "user_prompt": math.floor(available * allocation.user_prompt),
            "response_reserve": response_tokens,
            "overhead": overhead_tokens,
        }

        system_tokens = count_tokens(system_prompt, model) if system_prompt else allocations["system_prompt"]
        user_tokens = count_tokens(user_prompt, model) if user_prompt else allocations["user_prompt"]
        used = system_tokens + user_tokens

        warnings: List[str] = []
        if system_tokens > allocations["system_prompt"]:
            warnings.append(f"System prompt exceeds allocation: {system_tokens} > {allocations['system_prompt']}")
        if user_tokens > allocations["user_prompt"]:
            warnings.append(f"User prompt exceeds allocation: {user_tokens} > {allocations['user_prompt']}")
        if used > available:
            warnings.append(f"Total usage exceeds available budget: {used} > {available}")

        return TokenBudget(
            model=model,
            model_limit=limit,
            available_budget=available,
            allocations=allocations,
            usage={
                "document_context": 0,
                "web_results": 0,
                "system_prompt": system_tokens,
                "user_prompt": user_tokens,
                "total": used,
            },
            remaining={
                "document_context": allocations["document_context"],
                "web_results": allocations["web_results"],
                "total": available - used,
            },
            warnings=warnings,
        )

    @staticmethod
    def count_context_tokens(context: RagContext, model: str = "gpt-3.5-turbo") -> ContextTokens:
        return ContextTokens(
            document_context=sum(count_tokens(document_text(d), model) for d in context.document_contexts),
            web_results=sum(count_tokens(web_text(w), model) for w in context.web_search_results),
        )

    def check_budget(self, budget: TokenBudget, context: RagContext, model: str = "gpt-3.5-turbo") -> BudgetCheck:
        """Compare the context against the budget; never raises, reports through warnings/errors."""
        tokens = self.count_context_tokens(context, model)
        remaining = {
            "document_context": budget.remaining["document_context"] - tokens.document_context,
            "web_results": budget.remaining["web_results"] - tokens.web_results,
            "total": budget.remaining["total"] - tokens.total,
        }
        fits = all(value >= 0 for value in remaining.values())

        warnings: List[str] = []
        errors: List[str] = []
        if tokens.document_context > budget.allocations["document_context"]:
            message = (
                f"Document context exceeds allocation: {tokens.document_context} > "
                f"{budget.allocations['document_context']}"
            )
            warnings.append(message)
            if not fits:
                errors.append(message)
        if tokens.web_results > budget.allocations["web_results"]:
            message = f"Web results exceed allocation: {tokens.web_results} > {budget.allocations['web_results']}"
            warnings.append(message)
            if not fits:
                errors.append(message)
        if tokens.total > budget.remaining["total"]:
            message = f"Total context exceeds remaining budget: {tokens.total} > {budget.remaining['total']}"
            warnings.append(message)
            errors.append(message)

        return BudgetCheck(fits=fits, context_tokens=tokens, remaining=remaining, warnings=warnings, errors=errors)

    def trim_context_to_budget(
        self, context: RagContext, budget: TokenBudget, model: str = "gpt-3.5-turbo"
    ) -> RagContext:
        """Keep items in incoming order while they fit; truncate the first overflow and drop the rest."""
        documents: List[DocumentContext] = []
        used = 0
        doc_limit = budget.remaining["document_context"]
        for doc in context.document_contexts:
            tokens = count_tokens(document_text(doc), model)
            if used + tokens <= doc_limit:
                documents.append(doc)
                used += tokens
                continue
            room = doc_limit - used
            if room > 100:
                truncated = truncate_to_tokens(doc.content, room - 50, model)
                documents.append(replace(doc, content=truncated + "..."))
            break

        web: List[WebSearchResult] = []
        used = 0
        web_limit = budget.remaining["web_results"]
        for result in context.web_search_results:
            tokens = count_tokens(web_text(result), model)
            if used + tokens <= web_limit:
                web.append(result)
                used += tokens
                continue
            room = web_limit - used
            if room > 100:
                truncated = truncate_to_tokens(result.content, room - 100, model)
                web.append(replace(result, content=truncated + "..."))
            break

        logger.info(
            "[Tokens] trimmed context docs %d -> %d, web %d -> %d",
            len(context.document_contexts),
            len(documents),
            len(context.web_search_results),
            len(web),
        )
        return replace(context, document_contexts=documents, web_search_results=web)
