"""
Query Rewriter

Uses the chat model to turn a follow-up question into a standalone search
query (single mode) or into three complementary queries (multi mode, used
by the quality depth). A pure greeting yields the 'not_needed' sentinel,
which means no search should run.
"""

import re
import logging
from typing import List, Dict, Optional

logger = logging.getLogger(__name__)

NOT_NEEDED = 'not_needed'

_THINK_RE = re.compile(r'<think>.*?</think>', re.DOTALL)

QUERY_GENERATOR_PROMPT = """You are a financial news search query optimizer. You will be given a conversation and a follow-up question about financial news, markets, or business.

Your task is to rephrase the follow-up question into an optimized search query for a financial news article database.

Rules:
1. If it is a simple greeting (Hi, Hello, How are you) without a question, return `not_needed`.
2. Rephrase the question to be a standalone search query optimized for semantic search.
3. Keep the query concise (under 50 words) and focused on the key financial concepts.
4. Preserve important financial terms, company names, and specific metrics.
5. Use the language of the original question.
6. Return the query inside the `question` XML block, e.g. <question>query</question>."""

MULTI_QUERY_GENERATOR_PROMPT = """You are a financial news deep research query optimizer. You will be given a conversation and a follow-up question about financial news, markets, or business.

Your task is to generate 3 different search queries that together cover the user's question from multiple angles. These queries will be used for semantic search against a financial news article database.

Strategy:
- Query 1: Direct rephrasing of the user's question (most specific)
- Query 2: Broader context or related industry/market perspective
- Query 3: Alternative phrasing using different terminology or another language

Rules:
1. If it is a simple greeting without a question, return `not_needed` in the first question block.
2. Each query should be concise (under 50 words).
3. Preserve important financial terms, company names, and specific metrics.
4. Return each query inside separate XML blocks: <question1>, <question2>, <question3>."""


def strip_reasoning(text: str) -> str:
    """Remove <think>...</think> blocks emitted by reasoning models."""
    return _THINK_RE.sub('', text or '')


def extract_tag(text: str, tag: str) -> Optional[str]:
    """
    Return the stripped content of the first <tag>...</tag> block.

    An unclosed opening tag takes the rest of the text.
    """
    match = re.search(rf'<{tag}>(.*?)</{tag}>', text, re.DOTALL)
    if match:
        return match.group(1).strip()

    opening = text.find(f'<{tag}>')
    if opening >= 0:
        return text[opening + len(tag) + 2:].strip()
    return None


def format_history(history: Optional[List[Dict[str, str]]]) -> str:
    if not history:
        return ""
    lines = []
    for turn in history:
        role = turn.get('role', 'user').capitalize()
        lines.append(f"{role}: {turn.get('content', '')}")
    return "\n".join(lines)


def parse_single(output: str) -> Optional[str]:
    """
    Parse single-query model output.

    Returns:
        The rewritten query, or None for not_needed
    """
    cleaned = strip_reasoning(output)
    question = extract_tag(cleaned, 'question')
    if question is None:
        question = cleaned.strip()

    if question == NOT_NEEDED or not question:
        return None
    return question


def parse_multi(output: str) -> List[str]:
    """
    Parse multi-query model output.

    Returns:
        Up to three non-empty queries; empty when the first is not_needed
    """
    cleaned = strip_reasoning(output)
    queries = [extract_tag(cleaned, f'question{i}') for i in (1, 2, 3)]

    if queries[0] == NOT_NEEDED:
        return []

    queries = [q for q in queries if q and q != NOT_NEEDED]
    if not queries:
        # Model ignored the numbered tags; fall back to single parsing
        single = parse_single(cleaned)
        return [single] if single else []
    return queries


class QueryRewriter:
    """LLM-driven query rewriting."""

    def __init__(self, llm):
        """
        Args:
            llm: Chat model exposing invoke(prompt) (e.g. ChatOllama with temperature 0)
        """
        self.llm = llm

    def _build_prompt(self, system_prompt: str, query: str, history) -> str:
        return f"""{system_prompt}

<conversation>
{format_history(history)}
</conversation>

<query>
{query}
</query>"""

    def _invoke(self, prompt: str) -> str:
        response = self.llm.invoke(prompt)
        return response.content if hasattr(response, 'content') else str(response)

    def rewrite(self, query: str, history: Optional[List[Dict[str, str]]] = None) -> Optional[str]:
        """
        Rewrite a follow-up question into a standalone search query.

        Returns:
            Search query, or None when no search is needed
        """
        output = self._invoke(self._build_prompt(QUERY_GENERATOR_PROMPT, query, history))
        rewritten = parse_single(output)
        logger.info(f"Rewritten query: {rewritten[:80] if rewritten else NOT_NEEDED}")
        return rewritten

    def rewrite_multi(self, query: str, history: Optional[List[Dict[str, str]]] = None) -> List[str]:
        """
        Generate up to three complementary search queries.

        Returns:
            Queries, most direct first; empty when no search is needed
        """
        output = self._invoke(self._build_prompt(MULTI_QUERY_GENERATOR_PROMPT, query, history))
        queries = parse_multi(output)
        logger.info(f"Generated {len(queries)} search queries")
        for i, q in enumerate(queries, 1):
            logger.debug(f"  Q{i}: {q[:80]}")
        return queries
