"""
AI Service

Answers a question end to end: validation, topic scoping and the off-topic
pre-check, RAG retrieval, prompt assembly, completion (plain or streamed),
follow-up questions, citation checking, and conversation persistence.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..errors import AppError, ValidationError, map_completion_error
from ..models.question import QuestionRequest, QuestionResponse, Source, Usage
from ..models.rag_context import RagContext
from ..models.rag_options import RagOptions, build_rag_options
from .circuit_breaker_service import CircuitOpenError
from .citation_parser_service import build_inline_segments, parse_citations
from .citation_validator_service import validate_citations
from .degradation_service import ServiceType
from .health_registry import HealthRegistry
from .pipeline_stage import run_stage
from .prompt_builder_service import (
    TopicScope,
    build_messages,
    build_off_topic_check_messages,
    build_system_prompt,
    parse_off_topic_reply,
    refusal_follow_up,
    refusal_message,
    resolve_mode,
)
from .rag_service import PromptContext, RagService
from .service_contracts import CompletionGateway, DocumentStoreLike, StreamItem
from .threshold_optimizer_service import detect_query_type

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 2000
OFF_TOPIC_CHECK_MAX_TOKENS = 5


@dataclass
class PreparedAnswer:
    """Everything generation needs, resolved once per request."""
    question: str
    user_id: str
    options: RagOptions
    topic: Optional[TopicScope]
    context: RagContext
    prompt_context: PromptContext
    sources: List[Source]
    messages: List[Dict[str, str]]
    model: str
    temperature: float
    max_tokens: int
    conversation_id: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)


def validate_question(question: Optional[str]) -> str:
    text = (question or "").strip()
    if not text:
        raise ValidationError("Question is required")
    if len(text) > MAX_QUESTION_LENGTH:
        raise ValidationError(f"Question is too long (max {MAX_QUESTION_LENGTH} characters)")
    return text


def degraded_answer_text(sources: List[Source]) -> str:
    """Answer built from source titles when the completion gateway is unavailable."""
    lines = [
        "I'm having trouble generating a complete answer right now because the AI service is unavailable. "
        "Here are the most relevant sources I found for your question:",
        "",
    ]
    for index, source in enumerate(sources, 1):
        if source.type == "web" and source.url:
            lines.append(f"{index}. [{source.title}]({source.url})")
        else:
            lines.append(f"{index}. {source.title}")
    lines.append("")
    lines.append("Please try again in a moment for a full answer.")
    return "\n".join(lines)


def build_citation_payload(answer: str, sources: List[Source]) -> Dict[str, Any]:
    """Raw citations, their validation against `sources`, and the inline segment view."""
    parsed = parse_citations(answer)
    validation = validate_citations(parsed.citations, sources)
    payload = parsed.to_dict()
    payload["validation"] = validation.to_dict()
    payload["inline"] = build_inline_segments(answer, parsed.citations, sources)
    return payload


class AIService:
    """Service for answering questions with retrieved context"""

    def __init__(
        self,
        *,
        health: HealthRegistry,
        rag_service: RagService,
        llm_service: CompletionGateway,
        config,
        document_store: Optional[DocumentStoreLike] = None,
        followups=None,
        few_shot=None,
    ):
        from .few_shot_service import FewShotService
        from .followup_service import FollowupService

        self.health = health
        self.rag_service = rag_service
        self.llm_service = llm_service
        self.config = config
        self.document_store = document_store
        self.followups = followups or FollowupService(
            llm_service,
            model=config.generation.model,
            count=config.generation.followup_count,
        )
        self.few_shot = few_shot or FewShotService()

    # Topic handling

    async def resolve_topic(self, request: QuestionRequest, user_id: str) -> Optional[TopicScope]:
        if not request.topic_id or self.document_store is None:
            return None
        try:
            row = await self.document_store.get_topic(request.topic_id, user_id=user_id)
        except Exception as e:
            logger.warning("[AI] topic lookup failed for %s: %s", request.topic_id, e)
            return None
        if not row:
            return None

        strict = request.strict_topic_scope
        if strict is None:
            strict = bool(row.get("strict_scope", False))
        precheck = request.off_topic_precheck
        if precheck is None:
            precheck = row.get("off_topic_precheck")
        if precheck is None:
            precheck = self.config.generation.off_topic_precheck
        return TopicScope(
            name=str(row.get("name") or request.topic_id),
            description=row.get("description"),
            strict=bool(strict),
            off_topic_precheck=bool(precheck),
        )

    async def is_on_topic(self, question: str, topic: TopicScope, model: str) -> bool:
        """Yes/no classification; any failure lets the question through."""
        if self.llm_service is None or not self.llm_service.is_configured():
            return True
        messages = build_off_topic_check_messages(question, topic)
        try:
            result = await self.health.call(
                ServiceType.OPENAI,
                lambda: self.llm_service.complete(
                    messages, model=model, temperature=0.0, max_tokens=OFF_TOPIC_CHECK_MAX_TOKENS
                ),
            )
        except Exception as e:
            logger.warning("[AI] off-topic check failed, continuing: %s", e)
            return True
        on_topic = parse_off_topic_reply(result.text)
        logger.info("[AI] off-topic check for %r: %s", topic.name, "on topic" if on_topic else "off topic")
        return on_topic

    def refusal_response(self, topic: TopicScope, model: str) -> QuestionResponse:
        snapshot = self.health.snapshot()
        return QuestionResponse(
            answer=refusal_message(topic.name),
            model=model,
            follow_up_questions=[refusal_follow_up(topic.name)],
            degraded=snapshot["degraded"],
            degradation_level=snapshot["degradation_level"],
            off_topic=True,
        )

    # Preparation

    async def load_history(self, request: QuestionRequest, user_id: str) -> List[Dict[str, str]]:
        limit = self.config.generation.history_limit
        if request.conversation_history:
            return [{"role": t.role, "content": t.content} for t in request.conversation_history][-limit:]
        if not request.conversation_id or self.document_store is None:
            return []
        try:
            rows = await self.document_store.get_conversation_messages(
                request.conversation_id, user_id=user_id, limit=limit
            )
        except Exception as e:
            logger.warning("[AI] could not load history for %s: %s", request.conversation_id, e)
            return []
        return [{"role": r.get("role"), "content": r.get("content") or ""} for r in rows]

    def few_shot_text(self, request: QuestionRequest, question: str, context: RagContext, model: str) -> str:
        enabled = request.enable_few_shot
        if enabled is None:
            enabled = self.config.generation.enable_few_shot
        if not enabled:
            return ""
        try:
            selection = self.few_shot.select_examples(
                question,
                query_type=detect_query_type(question),
                has_documents=bool(context.document_contexts),
                has_web_results=bool(context.web_search_results),
                model=model,
            )
        except Exception as e:
            logger.warning("[AI] few-shot selection failed: %s", e)
            return ""
        return self.few_shot.format_examples_for_prompt(selection.examples)

    async def prepare(
        self, request: QuestionRequest, user_id: str
    ) -> Tuple[Optional[QuestionResponse], Optional[PreparedAnswer]]:
        """
        Resolve everything up to the completion call.

        Returns (refusal, None) when the off-topic pre-check rejects the
        question, otherwise (None, prepared).
        """
        question = validate_question(request.question)
        generation = self.config.generation
        options = build_rag_options(request, user_id, self.config)
        model = options.model
        temperature = generation.temperature if request.temperature is None else request.temperature
        max_tokens = request.max_tokens or generation.max_tokens

        topic = await self.resolve_topic(request, user_id)
        if topic is not None and topic.off_topic_precheck:
            if not await self.is_on_topic(question, topic, model):
                return self.refusal_response(topic, model), None

        context, history = await asyncio.gather(
            self.rag_service.retrieve_context(question, options),
            self.load_history(request, user_id),
        )

        mode = resolve_mode(
            enable_document_search=options.enable_document_search,
            enable_web_search=options.enable_web_search,
            topic=topic,
        )
        few_shot = self.few_shot_text(request, question, context, model)
        draft_prompt = build_system_prompt(
            mode=mode, additional_context=request.context, topic=topic, few_shot_text=few_shot
        )
        prompt_context = await self.rag_service.build_prompt_context(
            context,
            options,
            query=question,
            system_prompt=draft_prompt,
            max_response_tokens=max_tokens,
        )
        system_prompt = build_system_prompt(
            mode=mode,
            rag_context=prompt_context.text,
            additional_context=request.context,
            topic=topic,
            few_shot_text=few_shot,
        )
        sources = self.rag_service.extract_sources(prompt_context.context, options.citation_min_score)
        messages = build_messages(question, system_prompt, history, history_limit=generation.history_limit)

        logger.info(
            "[AI] prepared %s prompt: %d sources, %d history turns",
            mode.value,
            len(sources),
            len(history),
        )
        return None, PreparedAnswer(
            question=question,
            user_id=user_id,
            options=options,
            topic=topic,
            context=context,
            prompt_context=prompt_context,
            sources=sources,
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            conversation_id=request.conversation_id,
            stats=dict(context.stats, **prompt_context.stats),
        )

    # Post-processing

    async def citations_for(self, answer: str, sources: List[Source]) -> Dict[str, Any]:
        stage = await run_stage("citation_parsing", lambda: build_citation_payload(answer, sources), {})
        return stage.value

    async def persist(
        self,
        prepared_question: str,
        answer: str,
        *,
        user_id: str,
        conversation_id: Optional[str],
        topic_id: Optional[str],
        sources: List[Source],
        usage: Usage,
    ) -> None:
        if not conversation_id or self.document_store is None:
            return
        try:
            await self.document_store.create_message(
                conversation_id, role="user", content=prepared_question, user_id=user_id, topic_id=topic_id
            )
            await self.document_store.create_message(
                conversation_id,
                role="assistant",
                content=answer,
                user_id=user_id,
                topic_id=topic_id,
                sources=[s.model_dump(by_alias=True) for s in sources],
                usage=usage.model_dump(by_alias=True),
            )
        except Exception as e:
            logger.error("[AI] failed to persist conversation %s: %s", conversation_id, e)

    def _completion_error(self, error: BaseException) -> AppError:
        if isinstance(error, CircuitOpenError):
            return AppError("AI service is temporarily unavailable", status_code=503, code="AI_SERVICE_UNAVAILABLE")
        return map_completion_error(error)

    def _annotations(self, context: RagContext, degraded_answer: bool) -> Dict[str, Any]:
        snapshot = self.health.snapshot()
        return {
            "degraded": bool(context.degraded or snapshot["degraded"] or degraded_answer),
            "degradation_level": snapshot["degradation_level"],
            "partial": bool(context.partial or degraded_answer),
        }

    # Entry points

    async def answer_question(self, request: QuestionRequest, user_id: str) -> QuestionResponse:
        refusal, prepared = await self.prepare(request, user_id)
        if refusal is not None:
            await self.persist(
                validate_question(request.question),
                refusal.answer,
                user_id=user_id,
                conversation_id=request.conversation_id,
                topic_id=request.topic_id,
                sources=[],
                usage=refusal.usage,
            )
            return refusal

        degraded_answer = False
        usage = Usage()
        try:
            result = await self.health.call_with_retry(
                ServiceType.OPENAI,
                lambda: self.llm_service.complete(
                    prepared.messages,
                    model=prepared.model,
                    temperature=prepared.temperature,
                    max_tokens=prepared.max_tokens,
                ),
                label="completion",
            )
            raw_answer = result.text
            usage = Usage(**result.usage)
        except Exception as e:
            error = self._completion_error(e)
            if isinstance(error, ValidationError) or not prepared.sources:
                logger.error("[AI] completion failed: %s", e)
                raise error from e
            logger.warning("[AI] completion failed, answering from %d sources: %s", len(prepared.sources), e)
            raw_answer = degraded_answer_text(prepared.sources)
            degraded_answer = True

        topic_name = prepared.topic.name if prepared.topic else None
        followups = await self.followups.ensure_follow_ups(prepared.question, raw_answer, topic_name=topic_name)
        answer = followups.answer
        citations = await self.citations_for(answer, prepared.sources)

        await self.persist(
            prepared.question,
            answer,
            user_id=user_id,
            conversation_id=prepared.conversation_id,
            topic_id=prepared.options.topic_id,
            sources=prepared.sources,
            usage=usage,
        )

        return QuestionResponse(
            answer=answer,
            model=prepared.model,
            sources=prepared.sources,
            citations=citations,
            follow_up_questions=followups.questions,
            usage=usage,
            **self._annotations(prepared.context, degraded_answer),
        )

    async def answer_question_stream(self, request: QuestionRequest, user_id: str) -> AsyncIterator[StreamItem]:
        """
        Yield text chunks as they arrive, then metadata events.

        Strings are answer text; dicts are control events
        (followUpQuestions, sources, citations, done). Post-processing runs
        only after the upstream stream has finished.
        """
        refusal, prepared = await self.prepare(request, user_id)
        if refusal is not None:
            yield refusal.answer
            yield {"followUpQuestions": refusal.follow_up_questions}
            yield {"sources": []}
            yield {"citations": {}}
            await self.persist(
                validate_question(request.question),
                refusal.answer,
                user_id=user_id,
                conversation_id=request.conversation_id,
                topic_id=request.topic_id,
                sources=[],
                usage=refusal.usage,
            )
            yield {"done": True, "model": refusal.model, "offTopic": True, "usage": refusal.usage.model_dump(by_alias=True)}
            return

        chunks: List[str] = []
        usage_sink: Dict[str, int] = {}
        degraded_answer = False
        stream = self.health.stream(
            ServiceType.OPENAI,
            lambda: self.llm_service.stream(
                prepared.messages,
                model=prepared.model,
                temperature=prepared.temperature,
                max_tokens=prepared.max_tokens,
                usage_sink=usage_sink,
            ),
        )
        try:
            async for chunk in stream:
                chunks.append(chunk)
                yield chunk
        except Exception as e:
            error = self._completion_error(e)
            if chunks or isinstance(error, ValidationError) or not prepared.sources:
                logger.error("[AI] streaming completion failed: %s", e)
                raise error from e
            logger.warning("[AI] streaming completion failed, answering from sources: %s", e)
            fallback = degraded_answer_text(prepared.sources)
            chunks.append(fallback)
            degraded_answer = True
            yield fallback
        finally:
            await stream.aclose()

        full_answer = "".join(chunks)
        topic_name = prepared.topic.name if prepared.topic else None
        followups = await self.followups.ensure_follow_ups(prepared.question, full_answer, topic_name=topic_name)
        yield {"followUpQuestions": followups.questions}

        yield {"sources": [s.model_dump(by_alias=True) for s in prepared.sources]}
        citations = await self.citations_for(followups.answer, prepared.sources)
        yield {"citations": citations}

        usage = Usage(**usage_sink) if usage_sink else Usage()
        await self.persist(
            prepared.question,
            followups.answer,
            user_id=user_id,
            conversation_id=prepared.conversation_id,
            topic_id=prepared.options.topic_id,
            sources=prepared.sources,
            usage=usage,
        )

        annotations = self._annotations(prepared.context, degraded_answer)
        yield {
            "done": True,
            "model": prepared.model,
            "usage": usage.model_dump(by_alias=True),
            "degraded": annotations["degraded"],
            "degradationLevel": annotations["degradation_level"],
            "partial": annotations["partial"],
        }
