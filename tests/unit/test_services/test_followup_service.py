import asyncio

from src.api.services.followup_service import (
    FollowupService,
    default_follow_ups,
    parse_follow_ups,
    parse_generated_questions,
)
from src.api.services.llm_service import CompletionResult


class _FakeLlm:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.calls = 0

    def is_configured(self):
        return True

    async def complete(self, messages, **kwargs):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return CompletionResult(text=self.text)


def test_parse_follow_ups_explicit_block():
    text = (
        "Answer body.\n\n"
        "FOLLOW_UP_QUESTIONS:\n"
        "- What is A?\n"
        "- What is B?\n"
        "- What is C?\n"
        "- What is D?\n"
        "- What is E?\n"
    )

    result = parse_follow_ups(text)

    assert result.status == "found"
    assert result.answer == "Answer body."
    assert result.questions == ["What is A?", "What is B?", "What is C?", "What is D?"]


def test_parse_follow_ups_markdown_heading_variant():
    text = "Body.\n\n**Follow-up questions:**\n1. How does it scale?\n2. What does it cost?\n"

    result = parse_follow_ups(text)

    assert result.questions == ["How does it scale?", "What does it cost?"]


def test_parse_follow_ups_trailing_bullets_heuristic():
    text = "Body paragraph.\n\n- Could you compare the two options?\n- Which one is cheaper overall?"

    result = parse_follow_ups(text)

    assert result.status == "heuristic"
    assert result.answer == "Body paragraph."
    assert len(result.questions) == 2


def test_parse_follow_ups_ignores_regular_bullet_lists():
    text = "Steps:\n\n- Install the package first\n- Run the server afterwards"

    result = parse_follow_ups(text)

    assert result.status == "none"
    assert result.questions == []


def test_parse_generated_questions_skips_preamble():
    raw = "Here are some follow-up questions:\n- One?\n- Two?"

    assert parse_generated_questions(raw) == ["One?", "Two?"]


def test_ensure_follow_ups_generates_when_missing():
    llm = _FakeLlm("- First?\n- Second?")
    service = FollowupService(llm, count=4)

    result = asyncio.run(service.ensure_follow_ups("q", "An answer without questions."))

    assert result.questions == ["First?", "Second?"]
    assert llm.calls == 1


def test_generation_failure_falls_back_to_defaults():
    service = FollowupService(_FakeLlm(error=RuntimeError("down")), count=3)

    questions = asyncio.run(service.generate_follow_ups("q", "a", topic_name="Gardening"))

    assert questions == default_follow_ups("q", "Gardening")[:3]
    assert questions[0] == "Can you explain Gardening in more detail?"


def test_count_is_clamped_to_one_through_four():
    assert FollowupService(count=0).count == 1
    assert FollowupService(count=9).count == 4
