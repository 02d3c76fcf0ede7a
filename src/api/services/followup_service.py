"""
Follow-up Questions Service

Extracts the follow-up block the model appends to its answer and, when the
model left it out, generates the questions with a separate call. Every
answer leaves this service with 1-4 follow-ups.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

MAX_FOLLOW_UPS = 4
HEURISTIC_TAIL_CHARS = 700

_BLOCK_RE = re.compile(
    r"(?:\*\*|#+\s*)?(?:FOLLOW_UP_QUESTIONS|Follow[- ]?up questions?)(?:\*\*)?\s*:?\s*(?:\*\*)?\s*\n"
    r"((?:[ \t]*(?:[-*•]|\d+[.)])\s+[^\n]+\n?)+)",
    re.IGNORECASE,
)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")
_HEURISTIC_LINE_RE = re.compile(r"^\s*[-*•]\s+.{10,}")


@dataclass
class FollowupParseResult:
    status: str  # found | heuristic | none
    answer: str
    questions: List[str] = field(default_factory=list)


def _clean(line: str) -> str:
    return _BULLET_RE.sub("", line).strip().strip("*").strip()


def parse_follow_ups(text: str) -> FollowupParseResult:
    """
    Split a generated answer into body and follow-up questions.

    First looks for an explicit follow-up block; failing that, takes 1-6
    trailing bullet lines as questions. The returned answer has the
    follow-up lines removed.
    """
    text = text or ""
    match = _BLOCK_RE.search(text)
    if match:
        questions = [_clean(line) for line in match.group(1).split("\n")]
        questions = [q for q in questions if q][:MAX_FOLLOW_UPS]
        if questions:
            return FollowupParseResult("found", text[:match.start()].strip(), questions)

    tail_start = max(0, len(text) - HEURISTIC_TAIL_CHARS)
    tail = text[tail_start:]
    lines = tail.split("\n")
    trailing: List[int] = []
    for index in range(len(lines) - 1, -1, -1):
        line = lines[index]
        if not line.strip():
            if trailing:
                break
            continue
        if not _HEURISTIC_LINE_RE.match(line):
            break
        trailing.insert(0, index)

    if 1 <= len(trailing) <= 6:
        candidates = [_clean(lines[i]) for i in trailing]
        questions = [q for q in candidates if 5 < len(q) < 200 and q.endswith("?")][:MAX_FOLLOW_UPS]
        if questions:
            offset = tail_start + sum(len(line) + 1 for line in lines[:trailing[0]])
            return FollowupParseResult("heuristic", text[:offset].strip(), questions)

    return FollowupParseResult("none", text.strip(), [])


def parse_generated_questions(raw: str, limit: int = MAX_FOLLOW_UPS) -> List[str]:
    questions = []
    for line in (raw or "").split("\n"):
        line = _clean(line)
        if line and not line.lower().startswith(("follow", "here are")):
            questions.append(line)
    return questions[:limit]


def default_follow_ups(question: str, topic_name: Optional[str] = None) -> List[str]:
    subject = topic_name or "this"
    return [
        f"Can you explain {subject} in more detail?",
        "What are the most important points to remember here?",
        "Are there any recent developments related to this?",
        "What sources can I read to learn more?",
    ]


class FollowupService:
    """Service for extracting and generating follow-up questions"""

    def __init__(
        self,
        llm_service=None,
        *,
        model: Optional[str] = None,
        timeout_seconds: int = 15,
        count: int = MAX_FOLLOW_UPS,
    ):
        self.llm_service = llm_service
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.count = max(1, min(MAX_FOLLOW_UPS, count))

    def _build_prompt(self, question: str, answer: str, topic_name: Optional[str]) -> str:
        topic_line = f"The conversation is about the topic \"{topic_name}\".\n" if topic_name else ""
        return (
            f"{topic_line}"
            f"Based on the question and answer below, suggest exactly {self.count} short follow-up questions "
            "the user might ask next. Return one question per line, each starting with \"- \", and nothing else.\n\n"
            f"Question: {question}\n\nAnswer: {answer[:3000]}"
        )

    async def generate_follow_ups(self, question: str, answer: str, topic_name: Optional[str] = None) -> List[str]:
        """Generate follow-ups with the model; falls back to generic questions on any failure."""
        if self.llm_service is None or not self.llm_service.is_configured():
            return default_follow_ups(question, topic_name)[:self.count]
        try:
            logger.info("[Followup] Generating follow-up questions")
            result = await asyncio.wait_for(
                self.llm_service.complete(
                    [{"role": "user", "content": self._build_prompt(question, answer, topic_name)}],
                    model=self.model,
                    temperature=0.7,
                    max_tokens=200,
                ),
                timeout=self.timeout_seconds,
            )
            questions = parse_generated_questions(result.text, self.count)
        except asyncio.TimeoutError:
            logger.warning("[Followup] Timeout generating follow-up questions")
            questions = []
        except Exception as e:
            logger.warning("[Followup] Failed to generate follow-up questions: %s", e)
            questions = []

        if not questions:
            return default_follow_ups(question, topic_name)[:self.count]
        return questions

    async def ensure_follow_ups(
        self,
        question: str,
        full_answer: str,
        *,
        topic_name: Optional[str] = None,
    ) -> FollowupParseResult:
        """Parse follow-ups out of `full_answer`, generating them when none were found."""
        parsed = parse_follow_ups(full_answer)
        if parsed.questions:
            return parsed
        parsed.questions = await self.generate_follow_ups(question, parsed.answer, topic_name)
        return parsed
