"""
Prompt templates for the reasoning engine.
"""
from typing import List, Sequence, Tuple

from ragcore.models.schemas import ChatMessage, RAGContext
from ragcore.reasoning.prompt_guard import (
    INSTRUCTION_ANCHOR,
    sanitize_for_prompt,
    wrap_document,
    wrap_user_input,
)

CLASSIFIER_HISTORY_TURNS = 6


# ─────────────────────────────────────────────────────────────
# Classifier
# ─────────────────────────────────────────────────────────────

CLASSIFIER_SYSTEM_PROMPT = """You classify user queries for a document question-answering system. Pick exactly one category.

Categories:
1. "simple": a direct question one document lookup can answer. E.g. "What is X?", "How does Y work?", "What does the policy say about Z?"
2. "complex": needs several lookups, a comparison, a synthesis or a multi-part answer. E.g. "Compare A and B", "Summarize everything about Z", "How do X, Y and Z relate?"
3. "conversational": needs no lookup at all. Greetings, thanks, requests to rephrase or clarify an earlier answer, questions about the assistant itself. E.g. "Thanks!", "Can you rephrase that?", "Hi", "What did you mean?"

Rules:
- A follow-up about "that" or "it" that asks to clarify or reword the previous answer is "conversational"
- A follow-up about "that" or "it" that asks a NEW question needing the documents is "simple" or "complex"
- Between simple and complex, prefer "simple" when unsure
- Reply with JSON only

JSON format:
{"category": "simple"|"complex"|"conversational", "reasoning": "short explanation", "suggestedApproach": "retrieval hint"}""" + INSTRUCTION_ANCHOR


def build_classifier_prompt(query: str, history: Sequence[ChatMessage]) -> str:
    recent = list(history)[-CLASSIFIER_HISTORY_TURNS:]
    history_text = ""
    if recent:
        lines = "\n".join(f"{m.role}: {m.content[:200]}" for m in recent)
        history_text = f"\nRecent conversation:\n{lines}\n"

    return (
        f"{history_text}Current user query:\n"
        f"{wrap_user_input(sanitize_for_prompt(query))}\n\n"
        "Classify this query."
    )


# ─────────────────────────────────────────────────────────────
# Decomposer
# ─────────────────────────────────────────────────────────────

DECOMPOSER_SYSTEM_PROMPT = """You split complex questions into focused search queries for a document retrieval system. Produce 2 to 4 sub-queries that can each be answered by one document lookup.

Rules:
- Every sub-query must be a clear, standalone search query
- Together the sub-queries must cover the whole original question
- Use "parallel" when sub-queries are independent and "sequential" when later ones build on earlier ones
- Give a synthesis instruction describing how to combine the findings into one answer
- Never produce more than 4 sub-queries
- Reply with JSON only

JSON format:
{"subQueries": ["query 1", "query 2"], "strategy": "parallel"|"sequential", "synthesisInstruction": "how to combine the results"}""" + INSTRUCTION_ANCHOR


def build_decomposer_prompt(query: str) -> str:
    return (
        "Complex query:\n"
        f"{wrap_user_input(sanitize_for_prompt(query))}\n\n"
        "Break this into focused sub-queries."
    )


# ─────────────────────────────────────────────────────────────
# Summarize / compare tools
# ─────────────────────────────────────────────────────────────

SUMMARIZER_SYSTEM_PROMPT = (
    "You summarize document excerpts. Given excerpts and a focus topic, write a short, "
    "factual summary of what the excerpts say about the topic and name the documents it "
    "comes from."
)

COMPARATOR_SYSTEM_PROMPT = (
    "You compare two groups of document excerpts. Lay out similarities, differences and "
    "notable points in a structured way, sticking to the facts and naming the source "
    "documents."
)


def build_summarizer_prompt(chunks: Sequence[Tuple[str, str]], focus: str) -> str:
    """``chunks`` are (content, filename) pairs."""
    excerpts = "\n\n".join(
        f"[{i}: {filename}] {content[:500]}" for i, (content, filename) in enumerate(chunks, 1)
    )
    return f"Focus: {focus}\n\nDocument excerpts:\n{excerpts}\n\nWrite a focused summary."


def build_comparator_prompt(
    label_a: str,
    chunks_a: Sequence[Tuple[str, str]],
    label_b: str,
    chunks_b: Sequence[Tuple[str, str]],
    criteria: str,
) -> str:
    def _group(chunks):
        return "\n".join(
            f"[{i}: {filename}] {content[:400]}" for i, (content, filename) in enumerate(chunks, 1)
        )

    return (
        f"Comparison criteria: {criteria}\n\n"
        f"Group A - {label_a}:\n{_group(chunks_a)}\n\n"
        f"Group B - {label_b}:\n{_group(chunks_b)}\n\n"
        "Compare these groups."
    )


# ─────────────────────────────────────────────────────────────
# Answer generation
# ─────────────────────────────────────────────────────────────

CONVERSATIONAL_SYSTEM_PROMPT = (
    "You are a helpful assistant. This message does not need a document search, so answer "
    "from the conversation so far. Keep it friendly and brief. If the user seems to want "
    "something from their documents, tell them you can search their knowledge base when "
    "they ask a specific question."
) + INSTRUCTION_ANCHOR


def _format_sources(contexts: List[RAGContext], with_sub_query: bool) -> str:
    blocks = []
    for i, ctx in enumerate(contexts, 1):
        section = f" > {ctx.section_title}" if ctx.section_title else ""
        header = (
            f"[Source {i}: {ctx.filename}{section} "
            f"(relevance: {round(ctx.score * 100)}%, type: {ctx.chunk_type})]"
        )
        if with_sub_query and ctx.sub_query:
            header += f'\nRetrieved for: "{ctx.sub_query}"'
        if ctx.summary:
            header += f"\nSummary: {ctx.summary}"
        blocks.append(f"{header}\n{wrap_document(ctx.content, ctx.filename)}")
    return "\n\n---\n\n".join(blocks)


def build_rag_prompt(contexts: List[RAGContext]) -> str:
    return f"""You are a helpful assistant with access to the user's personal knowledge base. Answer using the excerpts from their documents below.

INSTRUCTIONS:
1. Ground your answer in the provided excerpts first
2. If the excerpts do not cover the question fully, say so plainly
3. Cite with bracketed numbers such as [1] or [2] that match the source numbers. Do not write filenames or section titles inline
4. Use the summaries to orient yourself quickly in each excerpt
5. Be concise but complete
6. If you add general knowledge that is not in the excerpts, label it as such

CONTEXT FROM USER'S DOCUMENTS:
{_format_sources(contexts, with_sub_query=False)}

---

Remember: prefer the user's documents and cite only with [1], [2] style references.""" + INSTRUCTION_ANCHOR


def build_complex_rag_prompt(contexts: List[RAGContext], synthesis_instruction: str) -> str:
    instruction = sanitize_for_prompt(synthesis_instruction, 500)
    return f"""You are a helpful assistant with access to the user's personal knowledge base. This question needs several pieces of information combined into one answer.

SYNTHESIS INSTRUCTION: {instruction}

INSTRUCTIONS:
1. Structure your answer according to the synthesis instruction
2. Ground every statement in the provided excerpts
3. Cite with bracketed numbers such as [1] or [2] that match the source numbers. Do not write filenames or section titles inline
4. Point out clearly which parts of the question the excerpts cannot answer
5. Organize multi-part answers with headings or bullet points

CONTEXT FROM USER'S DOCUMENTS:
{_format_sources(contexts, with_sub_query=True)}

---

Remember: follow the synthesis instruction and cite only with [1], [2] style references.""" + INSTRUCTION_ANCHOR
