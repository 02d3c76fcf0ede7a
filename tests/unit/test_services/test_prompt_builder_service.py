from src.api.services.prompt_builder_service import (
    FOLLOW_UP_MARKER,
    PromptMode,
    TopicScope,
    build_messages,
    build_system_prompt,
    parse_off_topic_reply,
    refusal_follow_up,
    resolve_mode,
)


def test_resolve_mode():
    assert resolve_mode(enable_document_search=True, enable_web_search=False) == PromptMode.DOCUMENT_ONLY
    assert resolve_mode(enable_document_search=False, enable_web_search=True) == PromptMode.WEB_ONLY
    assert resolve_mode(enable_document_search=True, enable_web_search=True) == PromptMode.COMBINED
    assert (
        resolve_mode(enable_document_search=True, enable_web_search=True, topic=TopicScope(name="T", strict=True))
        == PromptMode.TOPIC_STRICT
    )


def test_system_prompt_includes_context_and_follow_up_rules():
    prompt = build_system_prompt(
        mode=PromptMode.COMBINED,
        rag_context="Relevant Document Excerpts:\n\n[Document 1] Guide\n",
        additional_context="User is a beginner",
    )

    assert "[Document 1] Guide" in prompt
    assert "Additional Context:\nUser is a beginner" in prompt
    assert prompt.rstrip().endswith("one per line, each starting with \"- \".")
    assert FOLLOW_UP_MARKER in prompt


def test_document_only_prompt_without_context_says_so():
    prompt = build_system_prompt(mode=PromptMode.DOCUMENT_ONLY)

    assert "No relevant document excerpts were found" in prompt


def test_strict_topic_prompt_restricts_scope():
    prompt = build_system_prompt(
        mode=PromptMode.TOPIC_STRICT,
        topic=TopicScope(name="Gardening", description="Plants and soil", strict=True),
    )

    assert "TOPIC SCOPE: Gardening" in prompt
    assert "Topic description: Plants and soil" in prompt
    assert 'Only answer questions related to "Gardening".' in prompt


def test_few_shot_text_goes_before_follow_up_rules():
    prompt = build_system_prompt(mode=PromptMode.COMBINED, few_shot_text="\n\nFEW-SHOT EXAMPLES:\nExample 1")

    assert prompt.index("FEW-SHOT EXAMPLES") < prompt.index("FOLLOW-UP QUESTIONS (REQUIRED)")


def test_build_messages_trims_history_and_drops_unknown_roles():
    history = [{"role": "user", "content": f"q{i}"} for i in range(5)] + [{"role": "tool", "content": "x"}]

    messages = build_messages("final", "system", history, history_limit=3)

    assert messages[0] == {"role": "system", "content": "system"}
    assert [m["content"] for m in messages[1:]] == ["q3", "q4", "final"]


def test_off_topic_reply_parsing():
    assert parse_off_topic_reply("YES") is True
    assert parse_off_topic_reply("No.") is False
    assert parse_off_topic_reply("") is True
    assert parse_off_topic_reply("unclear") is True


def test_refusal_follow_up_names_topic():
    assert refusal_follow_up("Cooking") == "What would you like to know about Cooking?"
