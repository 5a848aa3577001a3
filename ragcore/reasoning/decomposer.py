"""
Query Decomposer
Breaks a complex query into at most four focused sub-queries.
"""
import structlog

from ragcore.models.schemas import DecompositionResult
from ragcore.reasoning.output_parsing import extract_json_object, string_list
from ragcore.reasoning.prompts import DECOMPOSER_SYSTEM_PROMPT, build_decomposer_prompt
from ragcore.services.llm_client import LLMClient

logger = structlog.get_logger()

MAX_SUB_QUERIES = 4
DEFAULT_SYNTHESIS_INSTRUCTION = "Combine the retrieved information into one comprehensive answer."


def fallback_decomposition(query: str) -> DecompositionResult:
    return DecompositionResult(
        sub_queries=[query],
        strategy="parallel",
        synthesis_instruction=DEFAULT_SYNTHESIS_INSTRUCTION,
    )


class QueryDecomposer:

    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def decompose(self, query: str) -> DecompositionResult:
        """Decompose ``query``; falls back to the query itself on any failure."""
        try:
            response = await self.llm.complete(
                DECOMPOSER_SYSTEM_PROMPT,
                build_decomposer_prompt(query),
                temperature=0.0,
                max_tokens=512,
            )
            parsed = extract_json_object(response)
            sub_queries = string_list(parsed.get("subQueries"), MAX_SUB_QUERIES)
            if not sub_queries:
                raise ValueError("Decomposition returned no sub-queries")

            strategy = parsed.get("strategy")
            result = DecompositionResult(
                sub_queries=sub_queries,
                strategy=strategy if strategy in ("parallel", "sequential") else "parallel",
                synthesis_instruction=str(parsed.get("synthesisInstruction") or DEFAULT_SYNTHESIS_INSTRUCTION),
            )
        except Exception as e:
            logger.error("Query decomposition failed, using original query", error=str(e))
            return fallback_decomposition(query)

        logger.info(
            "Query decomposed",
            count=len(result.sub_queries),
            strategy=result.strategy,
            sub_queries=result.sub_queries,
        )
        return result
