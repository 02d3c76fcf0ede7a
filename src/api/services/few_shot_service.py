"""
Few-shot Example Service

Picks worked question/answer examples that show the expected citation style
for the current query and appends them to the system prompt.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..paths import config_defaults_dir
from .threshold_optimizer_service import detect_query_type
from .token_budget_service import count_tokens

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300
CITATION_STYLES = ("mixed", "document-only", "web-only", "web-heavy")

_WORD_RE = re.compile(r"\w+")


@dataclass
class FewShotExample:
    id: str
    query_type: str
    question: str
    answer: str
    has_documents: bool = False
    has_web_results: bool = False
    citation_style: str = "mixed"
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FewShotExample":
        context = data.get("context") or {}
        return cls(
            id=str(data.get("id") or ""),
            query_type=str(data.get("query_type") or "unknown"),
            question=str(data.get("question") or ""),
            answer=str(data.get("answer") or ""),
            has_documents=bool(context.get("has_documents", False)),
            has_web_results=bool(context.get("has_web_results", False)),
            citation_style=str(context.get("citation_style") or "mixed"),
            tags=[str(tag) for tag in data.get("tags") or []],
        )

    def prompt_text(self) -> str:
        return f"Question: {self.question}\nAnswer: {self.answer}"


@dataclass
class FewShotSelection:
    examples: List[FewShotExample]
    total_tokens: int
    reasoning: str


def preferred_citation_style(has_documents: bool, has_web_results: bool) -> Optional[str]:
    if has_documents and has_web_results:
        return "mixed"
    if has_documents:
        return "document-only"
    if has_web_results:
        return "web-only"
    return None


def _words(text: str) -> set:
    return {word for word in _WORD_RE.findall(text.lower()) if len(word) > 2}


class FewShotService:
    """Service for selecting few-shot examples from the YAML example set"""

    def __init__(self, examples_path: Optional[Path] = None):
        self.examples_path = examples_path or (config_defaults_dir() / "few_shot_examples.yaml")
        self._examples: Optional[List[FewShotExample]] = None
        self._loaded_at = 0.0

    def load_examples(self) -> List[FewShotExample]:
        now = time.monotonic()
        if self._examples is not None and now - self._loaded_at < CACHE_TTL_SECONDS:
            return self._examples
        try:
            with open(self.examples_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("[FewShot] Failed to load examples from %s: %s", self.examples_path, e)
            self._examples = []
            self._loaded_at = now
            return self._examples

        self._examples = [FewShotExample.from_dict(item) for item in data.get("examples") or []]
        self._loaded_at = now
        logger.debug("[FewShot] Loaded %d examples", len(self._examples))
        return self._examples

    def clear_cache(self) -> None:
        self._examples = None
        self._loaded_at = 0.0

    @staticmethod
    def score_example(
        example: FewShotExample,
        *,
        query: str,
        query_type: str,
        has_documents: bool,
        has_web_results: bool,
        prefer_citation_style: Optional[str],
    ) -> float:
        score = 0.0
        if example.query_type == query_type:
            score += 10
        elif example.query_type == "unknown" or query_type == "unknown":
            score += 5

        docs_match = example.has_documents == has_documents
        web_match = example.has_web_results == has_web_results
        if docs_match and web_match:
            score += 8
        elif docs_match or web_match:
            score += 4

        if prefer_citation_style and example.citation_style == prefer_citation_style:
            score += 5

        overlap = len(_words(query) & _words(f"{example.question} {example.answer}"))
        score += min(overlap * 0.5, 3)
        return score

    def select_examples(
        self,
        query: str,
        *,
        query_type: Optional[str] = None,
        has_documents: bool = False,
        has_web_results: bool = False,
        max_examples: int = 2,
        max_tokens: int = 500,
        model: str = "gpt-3.5-turbo",
        prefer_citation_style: Optional[str] = None,
    ) -> FewShotSelection:
        examples = self.load_examples()
        if not examples or max_examples <= 0:
            return FewShotSelection([], 0, "No examples available")

        query_type = query_type or detect_query_type(query)
        style = prefer_citation_style or preferred_citation_style(has_documents, has_web_results)

        scored = sorted(
            (
                (
                    self.score_example(
                        example,
                        query=query,
                        query_type=query_type,
                        has_documents=has_documents,
                        has_web_results=has_web_results,
                        prefer_citation_style=style,
                    ),
                    index,
                    example,
                )
                for index, example in enumerate(examples)
            ),
            key=lambda item: (-item[0], item[1]),
        )

        selected: List[FewShotExample] = []
        total = 0
        for _, _, example in scored:
            if len(selected) >= max_examples:
                break
            tokens = count_tokens(example.prompt_text(), model)
            if total + tokens > max_tokens:
                if not selected:
                    # The best match is kept even when it alone exceeds max_tokens.
                    selected.append(example)
                    total += tokens
                break
            selected.append(example)
            total += tokens

        reasoning = (
            f"Selected {len(selected)} example(s) for {query_type} query"
            f" (citation style: {style or 'any'}, {total} tokens)"
        )
        logger.debug("[FewShot] %s", reasoning)
        return FewShotSelection(selected, total, reasoning)

    @staticmethod
    def format_examples_for_prompt(examples: List[FewShotExample]) -> str:
        if not examples:
            return ""
        parts = [
            "\n\nFEW-SHOT EXAMPLES:\n",
            "The following examples demonstrate the expected format and citation style:\n\n",
        ]
        for i, example in enumerate(examples, 1):
            parts.append(f"Example {i}:\nQuestion: {example.question}\nAnswer: {example.answer}\n\n")
        parts.append("Use these examples as a guide for formatting your response with proper citations.\n")
        return "".join(parts)
