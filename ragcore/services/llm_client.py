"""
LLM Client
Non-streaming completions for internal reasoning and streamed answers for users,
over any OpenAI-compatible chat completions endpoint.
"""
import re
from typing import AsyncIterator, Dict, List, Optional, Sequence, Union

import structlog
from openai import AsyncOpenAI

from ragcore.config import Settings
from ragcore.errors import ConfigurationError
from ragcore.models.schemas import ChatMessage, StreamEvent
from ragcore.services.resilience import RetryPolicy, call_with_retry

logger = structlog.get_logger()

Messages = Union[str, Sequence[ChatMessage]]

_THINK_BLOCK = re.compile(r"<think>.*?(</think>|$)", re.DOTALL)


def strip_think_tags(text: str) -> str:
    """Remove ``<think>`` reasoning blocks (closed or dangling) from model output."""
    return _THINK_BLOCK.sub("", text).strip()


def _partial_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a prefix of ``tag``."""
    for size in range(min(len(text), len(tag) - 1), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ThinkTagFilter:
    """Incrementally drops ``<think>...</think>`` spans from a token stream."""

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self):
        self._buffer = ""
        self._inside = False

    def feed(self, text: str) -> str:
        self._buffer += text
        visible = []
        while self._buffer:
            if self._inside:
                end = self._buffer.find(self.CLOSE)
                if end == -1:
                    self._buffer = self._buffer[-(len(self.CLOSE) - 1):]
                    break
                self._buffer = self._buffer[end + len(self.CLOSE):]
                self._inside = False
            else:
                start = self._buffer.find(self.OPEN)
                if start == -1:
                    keep = _partial_suffix(self._buffer, self.OPEN)
                    cut = len(self._buffer) - keep
                    visible.append(self._buffer[:cut])
                    self._buffer = self._buffer[cut:]
                    break
                visible.append(self._buffer[:start])
                self._buffer = self._buffer[start + len(self.OPEN):]
                self._inside = True
        return "".join(visible)

    def flush(self) -> str:
        rest = "" if self._inside else self._buffer
        self._buffer = ""
        return rest


class LLMClient:
    """Generation interface used by every reasoning component."""

    def __init__(
        self,
        client: AsyncOpenAI,
        reasoning_model: str,
        answer_model: str,
        policy: Optional[RetryPolicy] = None,
        stream_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.reasoning_model = reasoning_model
        self.answer_model = answer_model
        self.policy = policy or RetryPolicy()
        self.stream_policy = stream_policy or RetryPolicy(attempts=2, initial_delay=3.0, timeout=45.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set")
        client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.llm_base_url)
        return cls(
            client=client,
            reasoning_model=settings.reasoning_model,
            answer_model=settings.answer_model,
            policy=RetryPolicy.from_settings(settings, settings.llm_timeout_seconds),
            stream_policy=RetryPolicy(
                attempts=2,
                initial_delay=3.0,
                max_delay=settings.retry_max_delay_seconds,
                timeout=settings.llm_stream_timeout_seconds,
            ),
        )

    def _build_messages(self, system_prompt: str, messages: Messages) -> List[Dict[str, str]]:
        payload = [{"role": "system", "content": system_prompt}]
        if isinstance(messages, str):
            payload.append({"role": "user", "content": messages})
        else:
            payload.extend({"role": m.role, "content": m.content} for m in messages)
        return payload

    async def complete(
        self,
        system_prompt: str,
        messages: Messages,
        temperature: float = 0.0,
        max_tokens: int = 512,
        model: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> str:
        """
        Run a non-streaming completion.

        Args:
            system_prompt: Instructions for the model
            messages: A single user prompt or a role-tagged history
            temperature: Sampling temperature
            max_tokens: Completion token cap
            model: Override of the reasoning model
            policy: Override of the retry/timeout policy

        Returns:
            Response text with reasoning blocks removed
        """
        payload = self._build_messages(system_prompt, messages)
        model_id = model or self.reasoning_model

        async def _call():
            response = await self.client.chat.completions.create(
                model=model_id,
                messages=payload,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            if not response.choices:
                return ""
            return response.choices[0].message.content or ""

        text = await call_with_retry(_call, policy or self.policy, label="llm.complete")
        return strip_think_tags(text)

    async def stream(
        self,
        system_prompt: str,
        messages: Messages,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        model: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream an answer as token events.

        Ends with exactly one ``done`` event carrying the full visible text,
        or one ``error`` event. Errors are reported as events, not raised.
        """
        payload = self._build_messages(system_prompt, messages)
        model_id = model or self.answer_model

        async def _open():
            return await self.client.chat.completions.create(
                model=model_id,
                messages=payload,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )

        try:
            response_stream = await call_with_retry(_open, self.stream_policy, label="llm.stream")
        except Exception as e:
            yield StreamEvent(type="error", error=str(e))
            return

        think_filter = ThinkTagFilter()
        parts: List[str] = []
        try:
            async for chunk in response_stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if not delta:
                    continue
                visible = think_filter.feed(delta)
                if visible:
                    parts.append(visible)
                    yield StreamEvent(type="token", content=visible)
        except Exception as e:
            logger.error("Stream interrupted", model=model_id, error=str(e))
            yield StreamEvent(type="error", error=str(e))
            return

        tail = think_filter.flush()
        if tail:
            parts.append(tail)
            yield StreamEvent(type="token", content=tail)

        yield StreamEvent(type="done", content="".join(parts).strip())
