"""
Response Evaluator
Scores a generated answer for faithfulness, relevance and completeness using
three concurrent LLM checks, and stores the result.
"""
import asyncio
from typing import Any, List, Optional

import structlog

from ragcore.models.schemas import CheckResult, EvaluationResult, QueryCategory, RAGContext
from ragcore.reasoning.output_parsing import extract_json_object, string_list
from ragcore.services.llm_client import LLMClient

logger = structlog.get_logger()

FAITHFULNESS_WEIGHT = 0.4
RELEVANCE_WEIGHT = 0.35
COMPLETENESS_WEIGHT = 0.25

PASSING_CHECK = CheckResult(score=1.0, issues=[])
FAILED_CHECK = CheckResult(score=0.0, issues=["evaluation failed"])

_SCORE_FORMAT = """Reply with JSON only:
{"score": 0.0-1.0, "issues": ["specific issue", "another issue"]}

Use an empty issues array when there is nothing to report."""

FAITHFULNESS_SYSTEM_PROMPT = """You judge whether an AI answer is grounded in the source excerpts it was given.

Scale from 0.0 to 1.0:
- 1.0: every claim is supported by the excerpts
- 0.7-0.9: mostly grounded, minor unsupported details or reasonable inferences
- 0.4-0.6: a mix of supported and unsupported claims
- 0.1-0.3: mostly unsupported
- 0.0: entirely made up

Look for claims absent from the excerpts, invented figures, dates or names, information credited to the wrong source, and fabricated citations.

""" + _SCORE_FORMAT

RELEVANCE_SYSTEM_PROMPT = """You judge whether an AI answer actually answers the user's question.

Scale from 0.0 to 1.0:
- 1.0: answers the question directly and fully
- 0.7-0.9: answers the main question with small gaps
- 0.4-0.6: answers only part of it
- 0.1-0.3: related to the topic but does not answer
- 0.0: off-topic

Look for misread questions, vague or generic answers, and missing actionable information.

""" + _SCORE_FORMAT

COMPLETENESS_SYSTEM_PROMPT = """You judge whether an AI answer uses the important information available in the source excerpts.

Scale from 0.0 to 1.0:
- 1.0: covers all relevant information in the excerpts
- 0.7-0.9: covers most key points
- 0.4-0.6: misses significant information
- 0.1-0.3: barely uses the excerpts
- 0.0: ignores the excerpts

Look for omitted facts, missing details that would improve the answer, and ignored sources.

""" + _SCORE_FORMAT


def _sources(contexts: List[RAGContext]) -> str:
    return "\n\n---\n\n".join(
        f"[Source {i}: {c.filename}]\n{c.content[:600]}" for i, c in enumerate(contexts, 1)
    )


def _with_sources(query: str, response: str, contexts: List[RAGContext], task: str) -> str:
    return (
        f'User query: "{query}"\n\nAI answer:\n{response[:1500]}\n\n'
        f"Source excerpts:\n{_sources(contexts)}\n\n{task}"
    )


def parse_check(raw: str) -> CheckResult:
    parsed = extract_json_object(raw)
    try:
        score = float(parsed.get("score"))
    except (TypeError, ValueError):
        score = 0.0
    return CheckResult(score=min(max(score, 0.0), 1.0), issues=string_list(parsed.get("issues"), 20))


class ResponseEvaluator:

    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def _check(self, system_prompt: str, user_prompt: str, name: str) -> CheckResult:
        try:
            raw = await self.llm.complete(system_prompt, user_prompt, temperature=0.0, max_tokens=256)
            return parse_check(raw)
        except Exception as e:
            logger.error("Evaluation check failed", check=name, error=str(e))
            return FAILED_CHECK

    async def evaluate(
        self,
        query: str,
        response: str,
        contexts: List[RAGContext],
        category: QueryCategory,
    ) -> EvaluationResult:
        """Run the three checks concurrently and combine them into a weighted score."""
        if category == "conversational" or not contexts:
            return EvaluationResult(
                faithfulness=PASSING_CHECK,
                relevance=PASSING_CHECK,
                completeness=PASSING_CHECK,
                overall=1.0,
            )

        faithfulness, relevance, completeness = await asyncio.gather(
            self._check(
                FAITHFULNESS_SYSTEM_PROMPT,
                _with_sources(query, response, contexts, "Evaluate faithfulness."),
                "faithfulness",
            ),
            self._check(
                RELEVANCE_SYSTEM_PROMPT,
                f'User query: "{query}"\n\nAI answer:\n{response[:1500]}\n\nEvaluate relevance.',
                "relevance",
            ),
            self._check(
                COMPLETENESS_SYSTEM_PROMPT,
                _with_sources(query, response, contexts, "Evaluate completeness."),
                "completeness",
            ),
        )

        overall = (
            faithfulness.score * FAITHFULNESS_WEIGHT
            + relevance.score * RELEVANCE_WEIGHT
            + completeness.score * COMPLETENESS_WEIGHT
        )
        logger.info(
            "Response evaluated",
            faithfulness=round(faithfulness.score, 2),
            relevance=round(relevance.score, 2),
            completeness=round(completeness.score, 2),
            overall=round(overall, 2),
        )
        return EvaluationResult(
            faithfulness=faithfulness,
            relevance=relevance,
            completeness=completeness,
            overall=overall,
        )


class EvaluationStore:
    """Persists evaluation results to the ``evaluation_results`` table."""

    TABLE = "evaluation_results"

    def __init__(self, supabase: Any):
        self.supabase = supabase

    async def save(
        self,
        user_id: str,
        query: str,
        category: QueryCategory,
        model: str,
        result: EvaluationResult,
        session_id: Optional[str] = None,
    ) -> None:
        row = {
            "user_id": user_id,
            "session_id": session_id,
            "query_text": query[:500],
            "query_category": category,
            "model": model,
            "faithfulness_score": result.faithfulness.score,
            "relevance_score": result.relevance.score,
            "completeness_score": result.completeness.score,
            "overall_score": result.overall,
            "issues": {
                "faithfulness": result.faithfulness.issues,
                "relevance": result.relevance.issues,
                "completeness": result.completeness.issues,
            },
        }
        await asyncio.to_thread(lambda: self.supabase.table(self.TABLE).insert(row).execute())
