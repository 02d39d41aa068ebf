"""
Answer Streamer for Question Answering over Financial News

Orchestrates the retrieval-augmented answer pipeline:
1. Query rewriting (single query, or three queries in quality mode)
2. Vector retrieval and hydration (concurrent for multiple queries)
3. Similarity reranking
4. Prompt construction with numbered sources
5. Streamed LLM answer

The stream is a generator of events: one 'sources' event, then 'response'
chunks, then 'end'. Closing the generator cancels the answer.
"""

import re
import time
import logging
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any, Iterator

from langchain_core.documents import Document

from .modes import get_search_params, normalize_mode, category_for_focus

logger = logging.getLogger(__name__)

NO_RESULTS_ANSWER = (
    "Sorry, no news articles relevant to your question were found. "
    "Please try a different question."
)


def document_to_source(doc: Document) -> Dict[str, Any]:
    return {'page_content': doc.page_content, 'metadata': dict(doc.metadata)}


def format_context(documents: List[Document]) -> str:
    """Number documents for citation: '1. Title (2024-05-01) content'."""
    return "\n".join(
        f"{i}. {doc.metadata.get('title', '')} ({doc.metadata.get('pub_date', '')}) {doc.page_content}"
        for i, doc in enumerate(documents, 1)
    )


class AnswerStreamer:
    """
    Retrieval-augmented answering with streamed output.

    Combines query rewriting, semantic search over article embeddings,
    reranking and LLM generation with numbered source citations.
    """

    def __init__(
        self,
        llm,
        rewriter,
        searcher,
        reranker,
        response_language: str = "English",
        system_instructions: str = ""
    ):
        """
        Initialize the answer streamer.

        Args:
            llm: Chat model exposing stream(prompt) (e.g. ChatOllama)
            rewriter: QueryRewriter
            searcher: ArticleSearcher
            reranker: Reranker
            response_language: Language the answer must be written in
            system_instructions: Extra user-supplied instructions for the prompt
        """
        self.llm = llm
        self.rewriter = rewriter
        self.searcher = searcher
        self.reranker = reranker
        self.response_language = response_language
        self.system_instructions = system_instructions

    def _build_prompt(
        self,
        question: str,
        context: str,
        history: Optional[List[Dict[str, str]]] = None
    ) -> str:
        """
        Build the complete prompt for the LLM.

        Args:
            question: User's question
            context: Numbered source documents
            history: Conversation history

        Returns:
            Complete prompt string
        """
        system_prompt = f"""You are a financial news analysis assistant. You provide accurate, well-sourced answers based on the financial news articles provided as context.

IMPORTANT: Your response MUST be in {self.response_language}.

Your answers must be:
- Informative and relevant: thoroughly address the question using the article context.
- Well-structured: use Markdown headings where helpful and a professional tone. Do not start with a title.
- Cited: cite every fact with [number] notation matching the numbered articles below.
- Grounded: do not use knowledge outside the provided context.

If no relevant articles are provided, say that nothing relevant was found."""

        if self.system_instructions:
            system_prompt += f"\n\nUSER INSTRUCTIONS:\n{self.system_instructions}"

        history_text = ""
        if history:
            history_text = "\n\nPREVIOUS CONVERSATION:\n"
            for turn in history:
                role = turn['role'].capitalize()
                history_text += f"{role}: {turn['content']}\n"

        now = datetime.now(timezone.utc).isoformat()

        return f"""{system_prompt}{history_text}

<context>
{context}
</context>

Current date & time in ISO format (UTC timezone) is: {now}.

QUESTION: {question}

ANSWER:"""

    def retrieve(
        self,
        query: str,
        history: Optional[List[Dict[str, str]]] = None,
        focus: str = 'all',
        mode: str = 'balanced'
    ) -> Dict[str, Any]:
        """
        Rewrite, search and rerank without generating an answer.

        Returns:
            {'search_query': str or None, 'searched': bool, 'documents': [...]}
            search_query is None when the question needs no search.
        """
        params = get_search_params(mode)
        category = category_for_focus(focus)

        try:
            if params.multi_query:
                queries = self.rewriter.rewrite_multi(query, history)
            else:
                rewritten = self.rewriter.rewrite(query, history)
                queries = [rewritten] if rewritten else []
        except Exception as e:
            logger.error(f"Query rewriting failed, searching with the original question: {e}")
            queries = [query]

        if not queries:
            return {'search_query': None, 'searched': False, 'documents': []}

        search_query = queries[0]
        if len(queries) > 1:
            documents = self.searcher.search_many(queries, top_k=params.top_k, category=category)
        else:
            try:
                documents = self.searcher.search(search_query, top_k=params.top_k, category=category)
            except Exception as e:
                logger.error(f"Search failed: {e}")
                documents = []

        logger.info(f"[{normalize_mode(mode)}] Search '{search_query[:80]}' returned {len(documents)} documents")

        if documents:
            documents = self.reranker.rerank(search_query, documents, mode)

        return {'search_query': search_query, 'searched': True, 'documents': documents}

    def stream(
        self,
        query: str,
        history: Optional[List[Dict[str, str]]] = None,
        focus: str = 'all',
        mode: str = 'balanced'
    ) -> Iterator[Dict[str, Any]]:
        """
        Answer a question as a stream of events.

        Args:
            query: User's question
            history: Conversation turns ({'role', 'content'})
            focus: Focus mode key ('all' searches every category)
            mode: Depth mode (fast, balanced, quality)

        Yields:
            {'type': 'sources', 'data': [...]} once,
            {'type': 'response', 'data': chunk} per answer chunk,
            {'type': 'end'} last

        Raises:
            ValueError: If query is empty
        """
        if not query or not query.strip():
            raise ValueError("Question cannot be empty")

        retrieval = self.retrieve(query, history, focus, mode)
        documents = retrieval['documents']

        yield {'type': 'sources', 'data': [document_to_source(doc) for doc in documents]}

        if retrieval['searched'] and not documents:
            yield {'type': 'response', 'data': NO_RESULTS_ANSWER}
            yield {'type': 'end'}
            return

        prompt = self._build_prompt(query, format_context(documents), history)

        for chunk in self.llm.stream(prompt):
            content = chunk.content if hasattr(chunk, 'content') else str(chunk)
            if content:
                yield {'type': 'response', 'data': content}

        yield {'type': 'end'}

    def _extract_citations(
        self,
        answer: str,
        sources: List[Dict[str, Any]]
    ) -> List[Dict[str, str]]:
        """
        Match [n] citations in the answer to sources.

        Falls back to every source when the answer cites none.
        """
        citations = []
        seen_urls = set()

        cited_numbers = sorted({int(n) for n in re.findall(r'\[(\d+)\]', answer)})
        cited = [sources[n - 1] for n in cited_numbers if 1 <= n <= len(sources)]

        for source in cited or sources:
            url = source['metadata'].get('url', '')
            if url and url not in seen_urls:
                citations.append({'title': source['metadata'].get('title', ''), 'url': url})
                seen_urls.add(url)

        return citations

    def answer(
        self,
        query: str,
        history: Optional[List[Dict[str, str]]] = None,
        focus: str = 'all',
        mode: str = 'balanced'
    ) -> Dict[str, Any]:
        """
        Collect a streamed answer into a single result.

        Returns:
            Dictionary with question, answer, sources (cited), documents
            and response_time
        """
        start_time = time.time()
        sources: List[Dict[str, Any]] = []
        chunks: List[str] = []

        for event in self.stream(query, history, focus, mode):
            if event['type'] == 'sources':
                sources = event['data']
            elif event['type'] == 'response':
                chunks.append(event['data'])

        answer = "".join(chunks)
        return {
            'question': query,
            'answer': answer,
            'sources': self._extract_citations(answer, sources),
            'documents': sources,
            'response_time': time.time() - start_time,
        }
