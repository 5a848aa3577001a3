"""
Unit Tests for Retries, the LLM Client and the Embedding Service
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from ragcore.errors import EmbeddingCountMismatchError, UpstreamServiceError
from ragcore.models.schemas import EnrichedChunk
from ragcore.services.cache import InMemoryCache
from ragcore.services.embedding_service import EmbeddingService, chunk_embedding_text
from ragcore.services.llm_client import LLMClient, ThinkTagFilter, strip_think_tags
from ragcore.services.resilience import RetryPolicy, call_with_retry, is_transient_error

FAST = RetryPolicy(attempts=3, initial_delay=0, max_delay=0, timeout=1.0)


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def stream_of(*tokens, error=None):
    async def chunks():
        for token in tokens:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=token))])
        if error is not None:
            raise error
    return chunks()


def embedding_response(vectors):
    return SimpleNamespace(data=[SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)])


class TestTransientErrors:
    """Unit tests for is_transient_error."""

    @pytest.mark.parametrize("error", [
        StatusError(429),
        StatusError(503),
        asyncio.TimeoutError(),
        ConnectionError("reset"),
        httpx.ConnectTimeout("slow"),
        Exception("ECONNRESET while reading"),
        Exception("Rate limit reached"),
    ])
    def test_transient(self, error):
        assert is_transient_error(error) is True

    @pytest.mark.parametrize("error", [
        StatusError(400),
        StatusError(401),
        ValueError("invalid input"),
        KeyError("missing"),
    ])
    def test_permanent(self, error):
        assert is_transient_error(error) is False

    def test_openai_status_errors(self):
        """
        Expected: 5xx retried, 4xx other than 429 not
        """
        request = httpx.Request("POST", "https://api.example.com/v1/chat/completions")

        def api_error(status):
            return openai.APIStatusError("error", response=httpx.Response(status, request=request), body=None)

        assert is_transient_error(api_error(500)) is True
        assert is_transient_error(api_error(429)) is True
        assert is_transient_error(api_error(400)) is False


class TestCallWithRetry:
    """Unit tests for call_with_retry."""

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        """
        Expected: Two transient failures, then success on the third attempt
        """
        operation = AsyncMock(side_effect=[StatusError(503), StatusError(429), "ok"])

        assert await call_with_retry(operation, FAST, "test") == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_fails_immediately(self):
        """
        Expected: One attempt, UpstreamServiceError chaining the cause
        """
        operation = AsyncMock(side_effect=ValueError("bad request"))

        with pytest.raises(UpstreamServiceError) as exc_info:
            await call_with_retry(operation, FAST, "test")

        assert operation.await_count == 1
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self):
        """
        Expected: Exactly policy.attempts calls before giving up
        """
        operation = AsyncMock(side_effect=StatusError(503))

        with pytest.raises(UpstreamServiceError) as exc_info:
            await call_with_retry(operation, FAST, "test")

        assert operation.await_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.service == "test"

    @pytest.mark.asyncio
    async def test_timeout_is_enforced(self):
        """
        Expected: A hung call fails with a timeout cause
        """
        async def hang():
            await asyncio.sleep(5)

        policy = RetryPolicy(attempts=1, initial_delay=0, timeout=0.01)
        with pytest.raises(UpstreamServiceError) as exc_info:
            await call_with_retry(hang, policy, "slow")

        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)


class TestThinkTags:
    """Unit tests for reasoning-block removal."""

    def test_strip_closed_and_dangling_blocks(self):
        assert strip_think_tags("<think>plan</think>Answer") == "Answer"
        assert strip_think_tags("Answer <think>unfinished") == "Answer"
        assert strip_think_tags("Plain") == "Plain"

    def test_filter_handles_tags_split_across_tokens(self):
        """
        Expected: Tag fragments spanning tokens never leak
        """
        think_filter = ThinkTagFilter()
        pieces = ["<th", "ink>secret</thi", "nk>Hel", "lo <", "b>"]

        visible = "".join(think_filter.feed(p) for p in pieces) + think_filter.flush()

        assert visible == "Hello <b>"


class TestLLMClient:
    """Unit tests for LLMClient."""

    def make_client(self, create):
        openai_client = MagicMock()
        openai_client.chat.completions.create = create
        return LLMClient(
            openai_client,
            reasoning_model="small",
            answer_model="large",
            policy=FAST,
            stream_policy=RetryPolicy(attempts=1, initial_delay=0, timeout=1.0),
        )

    @pytest.mark.asyncio
    async def test_complete_strips_reasoning(self):
        """
        Expected:
        - System prompt first, then the user prompt
        - Reasoning model used
        - Think block removed
        """
        create = AsyncMock(return_value=completion("<think>hmm</think> Final answer"))
        llm = self.make_client(create)

        text = await llm.complete("sys", "question", temperature=0.0, max_tokens=64)

        assert text == "Final answer"
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "small"
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "question"},
        ]

    @pytest.mark.asyncio
    async def test_stream_emits_tokens_then_done(self):
        """
        Expected: Visible tokens, then one done event with the full text
        """
        create = AsyncMock(return_value=stream_of("<think>x</think>", "Hi", " there"))
        llm = self.make_client(create)

        events = [e async for e in llm.stream("sys", "question")]

        assert [e.type for e in events] == ["token", "token", "done"]
        assert events[-1].content == "Hi there"
        assert create.await_args.kwargs["model"] == "large"
        assert create.await_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_open_failure_is_error_event(self):
        """
        Expected: A single error event, nothing raised
        """
        llm = self.make_client(AsyncMock(side_effect=ValueError("bad request")))

        events = [e async for e in llm.stream("sys", "question")]

        assert len(events) == 1
        assert events[0].type == "error"
        assert "bad request" in events[0].error

    @pytest.mark.asyncio
    async def test_stream_interruption_is_error_event(self):
        """
        Expected: Tokens already sent, then an error event and no done
        """
        llm = self.make_client(AsyncMock(return_value=stream_of("Part", error=ConnectionError("reset"))))

        events = [e async for e in llm.stream("sys", "question")]

        assert [e.type for e in events] == ["token", "error"]


class TestEmbeddingService:
    """Unit tests for EmbeddingService."""

    def make_service(self, create, cache=None):
        client = MagicMock()
        client.embeddings.create = create
        return EmbeddingService(client, model="embed", dimensions=2, cache=cache, policy=FAST)

    @pytest.mark.asyncio
    async def test_order_follows_response_index(self):
        """
        Expected: Vectors re-ordered by the provider's index field
        """
        response = SimpleNamespace(data=[
            SimpleNamespace(index=1, embedding=[1.0, 1.0]),
            SimpleNamespace(index=0, embedding=[0.0, 0.0]),
        ])
        service = self.make_service(AsyncMock(return_value=response))

        assert await service.embed(["a", "b"]) == [[0.0, 0.0], [1.0, 1.0]]

    @pytest.mark.asyncio
    async def test_count_mismatch_raises(self):
        """
        Expected: EmbeddingCountMismatchError, never silently misaligned vectors
        """
        service = self.make_service(AsyncMock(return_value=embedding_response([[0.1, 0.2]])))

        with pytest.raises(EmbeddingCountMismatchError) as exc_info:
            await service.embed(["a", "b"])

        assert exc_info.value.expected == 2
        assert exc_info.value.received == 1

    @pytest.mark.asyncio
    async def test_large_inputs_are_batched(self):
        """
        Expected: 150 texts are sent as batches of 100 and 50
        """
        async def create(model, input, dimensions):
            return embedding_response([[float(len(input)), 0.0]] * len(input))

        mock = AsyncMock(side_effect=create)
        service = self.make_service(mock)

        vectors = await service.embed([f"t{i}" for i in range(150)])

        assert len(vectors) == 150
        assert [len(c.kwargs["input"]) for c in mock.await_args_list] == [100, 50]

    @pytest.mark.asyncio
    async def test_query_embedding_is_cached(self):
        """
        Expected: Second identical query is served from cache
        """
        mock = AsyncMock(return_value=embedding_response([[0.3, 0.4]]))
        service = self.make_service(mock, cache=InMemoryCache())

        first = await service.embed_query("same question")
        second = await service.embed_query("same question")

        assert first == second == [0.3, 0.4]
        assert mock.await_count == 1

    def test_chunk_text_includes_context(self):
        """
        Expected: Section and summary prepended to the content
        """
        chunk = EnrichedChunk(content="Body", section_title="Setup", summary="How to set up.")

        assert chunk_embedding_text(chunk) == "Section: Setup\n\nSummary: How to set up.\n\nBody"
