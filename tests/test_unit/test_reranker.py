"""
Unit Tests for the LLM Reranker and the Retrieval Tool
"""
import json
from unittest.mock import AsyncMock, Mock

import pytest

from ragcore.errors import UpstreamServiceError
from ragcore.models.schemas import FeedbackScore, RerankOutcome, SearchFilters
from ragcore.reasoning.tools import MAX_FETCH, RetrievalTool, compare, summarize
from ragcore.services.reranker import Reranker, apply_feedback, parse_ranking


def ranking(*indices):
    return json.dumps({"ranking": list(indices)})


class TestParseRanking:
    """Unit tests for parse_ranking."""

    def test_invalid_entries_are_filtered(self):
        """
        Expected: Out-of-range, duplicate, bool and non-int entries dropped
        """
        response = json.dumps({"ranking": [2, 2, 7, -1, "1", True, 1.5, 0]})
        assert parse_ranking(response, 3) == [2, 0]

    @pytest.mark.parametrize("response", ['{"order": [0]}', '{"ranking": [9, 10]}', "nope"])
    def test_unusable_ranking_raises(self, response):
        """
        Expected: An exception the reranker turns into a fallback
        """
        with pytest.raises(Exception):
            parse_ranking(response, 3)


class TestReranker:
    """Unit tests for Reranker.rerank."""

    @pytest.mark.asyncio
    async def test_permutation_reorders_and_rescores(self, fake_llm, make_result):
        """
        Expected:
        - Order follows the model's ranking
        - Scores are 1 - rank/total
        """
        candidates = [make_result("d", i, 0.5) for i in range(4)]
        fake_llm.responses = [ranking(2, 0, 3, 1)]

        outcome = await Reranker(fake_llm).rerank("query", candidates, top_n=3)

        assert outcome.reranked is True
        assert [r.chunk_index for r in outcome.results] == [2, 0, 3]
        assert [r.score for r in outcome.results] == [1.0, 0.75, 0.5]

    @pytest.mark.asyncio
    async def test_failure_returns_original_top_n(self, fake_llm, make_result):
        """
        Expected: Model failure leaves retrieval order and scores unchanged
        """
        candidates = [make_result("d", i, 0.9 - i * 0.1) for i in range(5)]
        fake_llm.responses = [UpstreamServiceError("llm.complete", "boom")]

        outcome = await Reranker(fake_llm).rerank("query", candidates, top_n=3)

        assert outcome == RerankOutcome(results=candidates[:3], reranked=False)

    @pytest.mark.asyncio
    async def test_malformed_response_returns_original(self, fake_llm, make_result):
        """
        Expected: Unparseable ranking keeps the original order
        """
        candidates = [make_result("d", i, 0.5) for i in range(3)]
        fake_llm.responses = ["I would rank them 2, 0, 1"]

        outcome = await Reranker(fake_llm).rerank("query", candidates, top_n=2)

        assert outcome.reranked is False
        assert [r.chunk_index for r in outcome.results] == [0, 1]

    @pytest.mark.asyncio
    async def test_single_candidate_skips_model(self, fake_llm, make_result):
        """
        Expected: No model call for one candidate
        """
        outcome = await Reranker(fake_llm).rerank("query", [make_result("d", 0, 0.4)], top_n=5)

        assert fake_llm.calls == []
        assert outcome.reranked is False
        assert len(outcome.results) == 1

    @pytest.mark.asyncio
    async def test_partial_ranking_backfills(self, fake_llm, make_result):
        """
        Expected:
        - Ranked candidates first
        - Unranked ones fill up to top_n in retrieval order with score 0
        """
        candidates = [make_result("d", i, 0.5) for i in range(5)]
        fake_llm.responses = [ranking(3)]

        outcome = await Reranker(fake_llm).rerank("query", candidates, top_n=3)

        assert [r.chunk_index for r in outcome.results] == [3, 0, 1]
        assert [r.score for r in outcome.results] == [1.0, 0.0, 0.0]

    @pytest.mark.asyncio
    async def test_feedback_blended_after_ranking(self, fake_llm, make_result):
        """
        SCENARIO: Second-ranked chunk has strong positive feedback.

        Expected: Its boosted score is clamped to 1.0 and ties keep reranked order
        """
        candidates = [make_result("d", i, 0.5) for i in range(2)]
        fake_llm.responses = [ranking(0, 1)]
        feedback = {("d", 1): FeedbackScore(document_id="d", chunk_index=1, normalized_score=1.0, total_count=4)}

        outcome = await Reranker(fake_llm).rerank("query", candidates, top_n=2, feedback=feedback)

        # 0.5 + 1.0 * 0.15 = 0.65, still below the first chunk's 1.0
        assert [r.chunk_index for r in outcome.results] == [0, 1]
        assert outcome.results[1].score == pytest.approx(0.65)


class TestApplyFeedback:
    """Unit tests for apply_feedback."""

    def test_requires_minimum_signals(self, make_result):
        """
        Expected: A single vote does not move the score
        """
        results = [make_result("d", 0, 0.5)]
        feedback = {("d", 0): FeedbackScore(document_id="d", chunk_index=0, normalized_score=1.0, total_count=1)}

        assert apply_feedback(results, feedback)[0].score == 0.5

    def test_negative_feedback_reorders_and_clamps(self, make_result):
        """
        Expected:
        - Downvoted chunk drops below its neighbour
        - Scores stay within [0, 1]
        """
        results = [make_result("d", 0, 0.1), make_result("d", 1, 0.05)]
        feedback = {("d", 0): FeedbackScore(document_id="d", chunk_index=0, normalized_score=-1.0, total_count=5)}

        adjusted = apply_feedback(results, feedback)

        assert [r.chunk_index for r in adjusted] == [1, 0]
        assert adjusted[1].score == 0.0


class TestRetrievalTool:
    """Unit tests for RetrievalTool.retrieve."""

    def build_tool(self, results):
        embeddings = Mock()
        embeddings.embed_query = AsyncMock(return_value=[0.1, 0.2])
        vector_store = Mock()
        vector_store.search = AsyncMock(return_value=results)
        hybrid_search = Mock()
        hybrid_search.search = AsyncMock(return_value=results)
        reranker = Mock()
        reranker.rerank = AsyncMock(return_value=RerankOutcome(results=results[:1], reranked=True))
        feedback_store = Mock()
        feedback_store.get_scores = AsyncMock(return_value={})
        tool = RetrievalTool(embeddings, vector_store, hybrid_search, reranker, feedback_store)
        return tool, vector_store, hybrid_search, reranker, feedback_store

    @pytest.mark.asyncio
    async def test_vector_path_overfetches_and_reranks(self, make_result):
        """
        Expected:
        - Vector search with limit * 2 candidates
        - Feedback requested for the candidate keys
        - Reranker output returned
        """
        results = [make_result("d", 0, 0.9), make_result("d", 1, 0.8)]
        tool, vector_store, hybrid_search, reranker, feedback_store = self.build_tool(results)

        out = await tool.retrieve("query", "user-1", limit=5)

        vector_store.search.assert_awaited_once_with([0.1, 0.2], "user-1", 10)
        hybrid_search.search.assert_not_awaited()
        feedback_store.get_scores.assert_awaited_once_with("user-1", [("d", 0), ("d", 1)])
        assert reranker.rerank.await_args.args[2] == 5
        assert out == results[:1]

    @pytest.mark.asyncio
    async def test_active_filters_use_hybrid_search(self, make_result):
        """
        Expected: Hybrid search with the filters; fetch limit capped at 20
        """
        results = [make_result("d", 0, 0.9), make_result("d", 1, 0.8)]
        tool, vector_store, hybrid_search, _, _ = self.build_tool(results)
        filters = SearchFilters(file_type="pdf")

        await tool.retrieve("query", "user-1", filters, limit=15)

        hybrid_search.search.assert_awaited_once_with([0.1, 0.2], "user-1", MAX_FETCH, filters)
        vector_store.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_filters_use_vector_search(self, make_result):
        """
        Expected: An empty SearchFilters object does not switch to hybrid search
        """
        tool, vector_store, hybrid_search, _, _ = self.build_tool([make_result("d", 0, 0.9)] * 2)

        await tool.retrieve("query", "user-1", SearchFilters(document_ids=[]))

        vector_store.search.assert_awaited_once()
        hybrid_search.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_result_skips_rerank(self, make_result):
        """
        Expected: No feedback lookup or rerank for one candidate
        """
        results = [make_result("d", 0, 0.9)]
        tool, _, _, reranker, feedback_store = self.build_tool(results)

        out = await tool.retrieve("query", "user-1")

        assert out == results
        reranker.rerank.assert_not_awaited()
        feedback_store.get_scores.assert_not_awaited()


class TestSummarizeCompare:
    """Unit tests for the summarize and compare tools."""

    @pytest.mark.asyncio
    async def test_summarize_without_chunks(self, fake_llm):
        """
        Expected: Fixed message and no model call
        """
        assert await summarize(fake_llm, [], "pricing") == "No relevant content found to summarize."
        assert fake_llm.calls == []

    @pytest.mark.asyncio
    async def test_summarize_and_compare_call_model(self, fake_llm, make_result):
        """
        Expected: Chunk content and labels reach the prompt
        """
        fake_llm.handler = lambda system, prompt: "result"
        chunk_a = [make_result("a", 0, 0.9, content="Plan A costs 10.")]
        chunk_b = [make_result("b", 0, 0.9, content="Plan B costs 20.")]

        assert await summarize(fake_llm, chunk_a, "cost") == "result"
        assert await compare(fake_llm, "Plan A", chunk_a, "Plan B", chunk_b, "cost") == "result"

        assert "Plan A costs 10." in fake_llm.calls[0]["messages"]
        assert "Plan B costs 20." in fake_llm.calls[1]["messages"]
        assert "Plan A" in fake_llm.calls[1]["messages"]
