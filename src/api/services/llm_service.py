"""
LLM Service

Chat-completion gateway over langchain_openai.ChatOpenAI: one-shot
completion with token usage, and incremental streaming.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..config import settings
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    text: str
    usage: Dict[str, int] = field(default_factory=lambda: {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
    })


def extract_usage(message: Any) -> Optional[Dict[str, int]]:
    """Read token usage from a LangChain message or chunk, if it carries any."""
    um = getattr(message, "usage_metadata", None)
    if um:
        if isinstance(um, dict):
            input_t = um.get("input_tokens", 0) or 0
            output_t = um.get("output_tokens", 0) or 0
            total_t = um.get("total_tokens", 0) or 0
        else:
            input_t = getattr(um, "input_tokens", 0) or 0
            output_t = getattr(um, "output_tokens", 0) or 0
            total_t = getattr(um, "total_tokens", 0) or 0
        if input_t or output_t or total_t:
            return {
                "prompt_tokens": int(input_t),
                "completion_tokens": int(output_t),
                "total_tokens": int(total_t or input_t + output_t),
            }

    response_metadata = getattr(message, "response_metadata", None) or {}
    raw = response_metadata.get("token_usage") or response_metadata.get("usage")
    if isinstance(raw, dict) and raw:
        prompt = int(raw.get("prompt_tokens", 0) or 0)
        completion = int(raw.get("completion_tokens", 0) or 0)
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": int(raw.get("total_tokens", 0) or prompt + completion),
        }
    return None


def to_langchain_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


class LlmService:
    """Async wrapper around an OpenAI-compatible chat model"""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout_seconds: int = 60,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.base_url = base_url if base_url is not None else settings.openai_base_url
        self.default_model = default_model or settings.openai_model
        self.timeout_seconds = timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def get_llm(
        self,
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        streaming: bool = False,
    ):
        if not self.is_configured():
            raise ConfigurationError("OpenAI API key is not configured")

        from langchain_openai import ChatOpenAI

        kwargs: Dict[str, Any] = {
            "model": model or self.default_model,
            "temperature": temperature,
            "api_key": self.api_key,
            "streaming": streaming,
            "stream_usage": True,
            # Retries are handled by RetryService so circuit state stays accurate
            "max_retries": 0,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return ChatOpenAI(**kwargs)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        llm = self.get_llm(model=model, temperature=temperature, max_tokens=max_tokens)
        response = await asyncio.wait_for(
            llm.ainvoke(to_langchain_messages(messages)),
            timeout=self.timeout_seconds,
        )
        text = response.content if isinstance(response.content, str) else str(response.content or "")
        usage = extract_usage(response)
        result = CompletionResult(text=text.strip())
        if usage:
            result.usage = usage
        return result

    async def stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        usage_sink: Optional[Dict[str, int]] = None,
    ) -> AsyncIterator[str]:
        """
        Yield text deltas as they arrive.

        Usage (reported on the final chunk) is written into `usage_sink`.
        """
        llm = self.get_llm(model=model, temperature=temperature, max_tokens=max_tokens, streaming=True)
        async for chunk in llm.astream(to_langchain_messages(messages)):
            usage = extract_usage(chunk)
            if usage and usage_sink is not None:
                usage_sink.update(usage)
            content = getattr(chunk, "content", "")
            if isinstance(content, str) and content:
                yield content
