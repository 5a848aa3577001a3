"""
Shared Test Fixtures for the Retrieval and Reasoning Core

This file contains:
- Fake LLM and retrieval collaborators (no network)
- Search result builders
- A fully wired Services container over the fakes
- FastAPI TestClient setup
"""
import pytest
from typing import Callable, Dict, Generator, List, Optional
from unittest.mock import AsyncMock, Mock
from fastapi.testclient import TestClient
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ragcore.config import Settings
from ragcore.container import Services
from ragcore.errors import UpstreamServiceError
from ragcore.main import create_app
from ragcore.models.schemas import SearchResult, StreamEvent
from ragcore.reasoning.classifier import QueryClassifier
from ragcore.reasoning.decomposer import QueryDecomposer
from ragcore.reasoning.orchestrator import Orchestrator
from ragcore.services.background import BackgroundTaskRunner
from ragcore.services.cache import InMemoryCache
from ragcore.services.evaluator import ResponseEvaluator
from ragcore.services.rate_limiter import InMemoryRateLimiter


# ═══════════════════════════════════════════════════════════════
# FAKE COLLABORATORS
# ═══════════════════════════════════════════════════════════════

class FakeLLM:
    """
    Scripted stand-in for LLMClient.

    ``responses`` are consumed first, in order; an exception entry is raised.
    After that ``handler(system_prompt, messages)`` answers, if set.
    """

    def __init__(self):
        self.responses: List = []
        self.handler: Optional[Callable] = None
        self.calls: List[Dict] = []
        self.stream_tokens: List[str] = ["Hello", " there"]
        self.stream_error: Optional[str] = None

    async def complete(self, system_prompt, messages, temperature=0.0, max_tokens=512, model=None, policy=None):
        self.calls.append({
            "system": system_prompt,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "policy": policy,
        })
        if self.responses:
            response = self.responses.pop(0)
        elif self.handler is not None:
            response = self.handler(system_prompt, messages)
        else:
            response = ""
        if isinstance(response, BaseException):
            raise response
        return response

    async def stream(self, system_prompt, messages, temperature=0.7, max_tokens=2048, model=None):
        self.calls.append({"system": system_prompt, "messages": messages, "stream": True})
        for token in self.stream_tokens:
            yield StreamEvent(type="token", content=token)
        if self.stream_error:
            yield StreamEvent(type="error", error=self.stream_error)
            return
        yield StreamEvent(type="done", content="".join(self.stream_tokens).strip())


class FakeRetrieval:
    """Stand-in for RetrievalTool with canned results per query."""

    def __init__(self):
        self.results_by_query: Dict[str, List[SearchResult]] = {}
        self.failing: set = set()
        self.calls: List[str] = []

    async def retrieve(self, query, owner_id, filters=None, limit=5):
        self.calls.append(query)
        if query in self.failing:
            raise UpstreamServiceError("vector_store.query", f"search failed for {query}")
        return list(self.results_by_query.get(query, []))[:limit]


def build_result(document_id: str, chunk_index: int, score: float, content: Optional[str] = None, **extra) -> SearchResult:
    return SearchResult(
        content=content or f"Content of {document_id} chunk {chunk_index}",
        document_id=document_id,
        filename=f"{document_id}.md",
        chunk_index=chunk_index,
        score=score,
        **extra,
    )


# ═══════════════════════════════════════════════════════════════
# FAKE FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def fake_llm() -> FakeLLM:
    """Scripted LLM; configure ``responses`` or ``handler`` per test."""
    return FakeLLM()


@pytest.fixture
def fake_retrieval() -> FakeRetrieval:
    """Retrieval tool returning canned results per query."""
    return FakeRetrieval()


@pytest.fixture
def make_result() -> Callable[..., SearchResult]:
    """Builder for SearchResult objects."""
    return build_result


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from any local .env file, with tight rate limits."""
    return Settings(
        _env_file=None,
        rate_limit_search=2,
        rate_limit_chat=5,
        rate_limit_process=5,
    )


# ═══════════════════════════════════════════════════════════════
# SERVICE CONTAINER AND CLIENT FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def services(test_settings, fake_llm, fake_retrieval) -> Services:
    """Services container wired over the fakes."""
    orchestrator = Orchestrator(
        classifier=QueryClassifier(fake_llm, InMemoryCache()),
        decomposer=QueryDecomposer(fake_llm),
        retrieval=fake_retrieval,
    )
    ingestion = Mock()
    ingestion.run = AsyncMock(return_value=3)
    evaluation_store = Mock()
    evaluation_store.save = AsyncMock()
    analytics = Mock()
    analytics.track_query = AsyncMock()

    return Services(
        settings=test_settings,
        llm=fake_llm,
        cache=InMemoryCache(),
        rate_limiter=InMemoryRateLimiter(),
        retrieval=fake_retrieval,
        orchestrator=orchestrator,
        ingestion=ingestion,
        evaluator=ResponseEvaluator(fake_llm),
        evaluation_store=evaluation_store,
        analytics=analytics,
        background=BackgroundTaskRunner(),
    )


@pytest.fixture
def client(services) -> Generator[TestClient, None, None]:
    """Synchronous FastAPI test client over the fake services."""
    with TestClient(create_app(services=services)) as c:
        yield c


# ═══════════════════════════════════════════════════════════════
# TEST DATA FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def sample_user_id() -> str:
    """Test user ID."""
    return "test-user-12345"


@pytest.fixture
def sample_document_id() -> str:
    """Test document ID."""
    return "test-document-abcdef"


@pytest.fixture
def sample_markdown() -> str:
    """Markdown document with frontmatter, headings, a list, a table and code."""
    return """---
title: Onboarding Guide
author: "Platform Team"
---

# Getting Started

Welcome to the platform. This guide covers account setup and first steps.

## Accounts

- Create an account
- Verify your email
- Enable two-factor authentication

## Limits

| Plan | Requests |
|------|----------|
| Free | 100 |
| Pro  | 10000 |
"""
