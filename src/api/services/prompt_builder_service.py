"""
Prompt Builder Service

Builds the system prompt and message list for answer generation. The prompt
mode follows from which retrieval sources are enabled and whether the active
topic asks for strict scoping.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

FOLLOW_UP_MARKER = "FOLLOW_UP_QUESTIONS:"
DEFAULT_HISTORY_LIMIT = 10


class PromptMode(str, Enum):
    DOCUMENT_ONLY = "document-only"
    WEB_ONLY = "web-only"
    COMBINED = "combined"
    TOPIC_STRICT = "topic-strict"


@dataclass
class TopicScope:
    """Topic attributes that shape the prompt"""
    name: str
    description: Optional[str] = None
    strict: bool = False
    off_topic_precheck: bool = True


def resolve_mode(
    *,
    enable_document_search: bool,
    enable_web_search: bool,
    topic: Optional[TopicScope] = None,
) -> PromptMode:
    if topic is not None and topic.strict:
        return PromptMode.TOPIC_STRICT
    if enable_document_search and not enable_web_search:
        return PromptMode.DOCUMENT_ONLY
    if enable_web_search and not enable_document_search:
        return PromptMode.WEB_ONLY
    return PromptMode.COMBINED


_BASE_PROMPT = (
    "You are a helpful AI assistant that provides accurate, informative, and well-structured answers "
    "to user questions using Retrieval-Augmented Generation (RAG).\n\n"
    "Guidelines:\n"
    "- Provide clear, concise, and accurate answers\n"
    "- If you don't know something, admit it rather than guessing\n"
    "- Use proper formatting (bullet points, paragraphs) when appropriate\n"
    "- Be friendly and professional"
)

_MODE_RULES: Dict[PromptMode, str] = {
    PromptMode.DOCUMENT_ONLY: (
        "SOURCE RULES (DOCUMENTS ONLY):\n"
        "- Answer ONLY from the document excerpts provided below.\n"
        "- Do NOT use outside knowledge, even if you know the answer.\n"
        "- If the excerpts do not contain relevant information, say clearly: "
        "\"I could not find information about this in your documents.\""
    ),
    PromptMode.WEB_ONLY: (
        "SOURCE RULES (WEB ONLY):\n"
        "- Answer from the web search results provided below.\n"
        "- Prefer recent and authoritative sources when they disagree.\n"
        "- If the results do not answer the question, say so instead of guessing."
    ),
    PromptMode.COMBINED: (
        "SOURCE RULES:\n"
        "- Prioritize document excerpts when they directly answer the question.\n"
        "- Combine document knowledge with web search results for comprehensive answers.\n"
        "- When sources disagree, point out the difference and cite both."
    ),
    PromptMode.TOPIC_STRICT: (
        "SOURCE RULES (TOPIC SCOPED):\n"
        "- Answer only questions that fall within the topic described below.\n"
        "- If the question is outside the topic, politely refuse and explain what the topic covers.\n"
        "- Use the provided document excerpts and web search results; do not drift into unrelated subjects."
    ),
}

_CITATION_RULES = (
    "CITATION RULES (MANDATORY):\n"
    "- Every factual sentence MUST end with an inline citation to the source it came from.\n"
    "- Document excerpts: cite as [Document N], matching the numbered excerpt.\n"
    "- Web sources: cite as [Web Source N](url) using the exact URL shown for that source.\n"
    "- Never invent sources, numbers, or URLs that are not listed in the context.\n"
    "- Place citations inline next to the claim, not collected at the end.\n"
    "- Before finalizing, re-read your answer and check that each factual sentence carries a "
    "citation that points to a listed source."
)

_FOLLOW_UP_RULES = (
    "FOLLOW-UP QUESTIONS (REQUIRED):\n"
    f"End every answer with a line containing exactly \"{FOLLOW_UP_MARKER}\" followed by 4 short "
    "follow-up questions the user might ask next, one per line, each starting with \"- \"."
)


def build_topic_section(topic: TopicScope) -> str:
    lines = [f"TOPIC SCOPE: {topic.name}"]
    if topic.description:
        lines.append(f"Topic description: {topic.description}")
    if topic.strict:
        lines.append(f"Only answer questions related to \"{topic.name}\".")
    else:
        lines.append(f"Keep the answer focused on \"{topic.name}\" where possible.")
    return "\n".join(lines)


def build_system_prompt(
    *,
    mode: PromptMode,
    rag_context: str = "",
    additional_context: Optional[str] = None,
    topic: Optional[TopicScope] = None,
    few_shot_text: str = "",
) -> str:
    """Assemble the system prompt for one answer."""
    sections = [_BASE_PROMPT, _MODE_RULES[mode]]
    if topic is not None:
        sections.append(build_topic_section(topic))
    sections.append(_CITATION_RULES)

    context_text = rag_context or ""
    if additional_context:
        context_text += f"Additional Context:\n{additional_context}\n"

    if context_text:
        sections.append(context_text.rstrip("\n"))
        sections.append(
            "Use the provided document excerpts and web search results to answer. Always cite sources "
            "using the format specified above."
        )
    elif mode == PromptMode.DOCUMENT_ONLY:
        sections.append("No relevant document excerpts were found for this question.")

    prompt = "\n\n".join(sections)
    if few_shot_text:
        prompt += few_shot_text
    prompt += "\n\n" + _FOLLOW_UP_RULES
    return prompt


def build_messages(
    question: str,
    system_prompt: str,
    history: Optional[Sequence[Dict[str, str]]] = None,
    *,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    if history and history_limit > 0:
        for turn in list(history)[-history_limit:]:
            role = turn.get("role")
            content = turn.get("content") or ""
            if role in ("user", "assistant") and content:
                messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": question})
    return messages


# Off-topic handling

def build_off_topic_check_messages(question: str, topic: TopicScope) -> List[Dict[str, str]]:
    description = f"\nTopic description: {topic.description}" if topic.description else ""
    return [
        {
            "role": "system",
            "content": (
                "You classify whether a question belongs to a topic. "
                "Reply with exactly one word: YES or NO."
            ),
        },
        {
            "role": "user",
            "content": f"Topic: {topic.name}{description}\n\nQuestion: {question}\n\nIs the question about this topic?",
        },
    ]


def parse_off_topic_reply(text: str) -> bool:
    """True when the classifier says the question is on topic. Ambiguous replies count as on topic."""
    normalized = (text or "").strip().strip(".!\"'").lower()
    return not normalized.startswith("no")


def refusal_message(topic_name: str) -> str:
    return (
        f"I can only help with questions related to \"{topic_name}\". "
        "Your question appears to be outside this topic, so I can't answer it here. "
        "Try rephrasing it in the context of the topic, or ask it in a general conversation."
    )


def refusal_follow_up(topic_name: str) -> str:
    return f"What would you like to know about {topic_name}?"
