"""
Tests for the streamed answer pipeline.

The chat model, rewriter, searcher and reranker are mocked so each stage can
be observed in isolation.
"""

from unittest.mock import Mock

import pytest
from langchain_core.documents import Document

from finnews_rag.query.answer_streamer import (
    AnswerStreamer,
    NO_RESULTS_ANSWER,
    format_context,
)


def document(n, title=None):
    return Document(
        page_content=f"Content {n}",
        metadata={
            'title': title or f"Article {n}",
            'url': f"https://x.com/{n}",
            'pub_date': '2024-05-01',
            'article_id': str(n),
        },
    )


def chunks(*parts):
    return [Mock(content=part) for part in parts]


@pytest.fixture
def llm():
    llm = Mock()
    llm.stream.return_value = chunks("Rates ", "rose [1].")
    return llm


@pytest.fixture
def rewriter():
    rewriter = Mock()
    rewriter.rewrite.return_value = "fed rate decision"
    rewriter.rewrite_multi.return_value = ["q1", "q2", "q3"]
    return rewriter


@pytest.fixture
def searcher():
    searcher = Mock()
    searcher.search.return_value = [document(1), document(2)]
    searcher.search_many.return_value = [document(1), document(2), document(3)]
    return searcher


@pytest.fixture
def reranker():
    reranker = Mock()
    reranker.rerank.side_effect = lambda query, docs, mode: docs
    return reranker


@pytest.fixture
def streamer(llm, rewriter, searcher, reranker):
    return AnswerStreamer(llm, rewriter, searcher, reranker)


class TestFormatContext:
    """Numbered context for citations."""

    def test_numbering(self):
        context = format_context([document(1), document(2)])
        assert context.splitlines() == [
            "1. Article 1 (2024-05-01) Content 1",
            "2. Article 2 (2024-05-01) Content 2",
        ]

    def test_empty(self):
        assert format_context([]) == ""


class TestStream:
    """Event stream contract."""

    def test_event_order(self, streamer):
        events = list(streamer.stream("What did the Fed do?"))

        assert [e['type'] for e in events] == ['sources', 'response', 'response', 'end']
        assert len(events[0]['data']) == 2
        assert events[0]['data'][0]['metadata']['url'] == "https://x.com/1"
        assert "".join(e['data'] for e in events if e['type'] == 'response') == "Rates rose [1]."

    def test_sources_precede_llm_call(self, streamer, llm):
        stream = streamer.stream("What did the Fed do?")
        first = next(stream)

        assert first['type'] == 'sources'
        llm.stream.assert_not_called()
        stream.close()

    def test_zero_documents_gives_canned_answer(self, streamer, searcher, llm):
        searcher.search.return_value = []

        events = list(streamer.stream("Obscure question"))

        assert events == [
            {'type': 'sources', 'data': []},
            {'type': 'response', 'data': NO_RESULTS_ANSWER},
            {'type': 'end'},
        ]
        llm.stream.assert_not_called()

    def test_all_documents_filtered_gives_canned_answer(self, streamer, reranker, llm):
        reranker.rerank.side_effect = lambda query, docs, mode: []

        events = list(streamer.stream("Question"))
        assert events[1]['data'] == NO_RESULTS_ANSWER
        llm.stream.assert_not_called()

    def test_greeting_answers_without_search(self, streamer, rewriter, searcher, llm):
        rewriter.rewrite.return_value = None
        llm.stream.return_value = chunks("Hello! Ask me about markets.")

        events = list(streamer.stream("Hi there"))

        searcher.search.assert_not_called()
        llm.stream.assert_called_once()
        assert events[0] == {'type': 'sources', 'data': []}
        assert events[1]['data'] == "Hello! Ask me about markets."

    def test_empty_question(self, streamer):
        with pytest.raises(ValueError):
            list(streamer.stream("   "))

    def test_prompt_contains_context_and_history(self, streamer, llm):
        history = [{'role': 'user', 'content': 'Earlier question'}]
        list(streamer.stream("What did the Fed do?", history=history))

        prompt = llm.stream.call_args.args[0]
        assert "1. Article 1 (2024-05-01) Content 1" in prompt
        assert "User: Earlier question" in prompt
        assert "QUESTION: What did the Fed do?" in prompt
        assert "English" in prompt

    def test_empty_chunks_skipped(self, streamer, llm):
        llm.stream.return_value = chunks("a", "", "b")
        events = list(streamer.stream("q"))
        assert [e['data'] for e in events if e['type'] == 'response'] == ["a", "b"]


class TestRetrieve:
    """Mode-dependent retrieval."""

    def test_balanced_uses_single_query(self, streamer, rewriter, searcher, reranker):
        result = streamer.retrieve("q", mode='balanced')

        rewriter.rewrite_multi.assert_not_called()
        searcher.search.assert_called_once_with("fed rate decision", top_k=10, category=None)
        reranker.rerank.assert_called_once()
        assert result['search_query'] == "fed rate decision"
        assert result['searched'] is True

    def test_quality_uses_multi_query(self, streamer, searcher):
        result = streamer.retrieve("q", mode='quality')

        searcher.search_many.assert_called_once_with(["q1", "q2", "q3"], top_k=15, category=None)
        assert len(result['documents']) == 3

    def test_fast_top_k(self, streamer, searcher):
        streamer.retrieve("q", mode='fast')
        assert searcher.search.call_args.kwargs['top_k'] == 5

    def test_focus_filters_category(self, streamer, searcher):
        streamer.retrieve("q", focus='real_estate')
        assert searcher.search.call_args.kwargs['category'] == 'real_estate'

    def test_rewriter_failure_uses_original_question(self, streamer, rewriter, searcher):
        rewriter.rewrite.side_effect = RuntimeError("llm down")

        result = streamer.retrieve("original question")
        assert result['search_query'] == "original question"
        assert searcher.search.call_args.args[0] == "original question"

    def test_search_failure_yields_no_documents(self, streamer, searcher):
        searcher.search.side_effect = RuntimeError("index down")
        result = streamer.retrieve("q")
        assert result['documents'] == []
        assert result['searched'] is True

    def test_multi_query_single_result_uses_search(self, streamer, rewriter, searcher):
        rewriter.rewrite_multi.return_value = ["only"]
        streamer.retrieve("q", mode='quality')
        searcher.search_many.assert_not_called()
        searcher.search.assert_called_once_with("only", top_k=15, category=None)


class TestAnswer:
    """Collected answers."""

    def test_collects_answer_and_citations(self, streamer):
        result = streamer.answer("What did the Fed do?")

        assert result['answer'] == "Rates rose [1]."
        assert result['sources'] == [{'title': 'Article 1', 'url': 'https://x.com/1'}]
        assert len(result['documents']) == 2
        assert result['response_time'] >= 0

    def test_uncited_answer_lists_all_sources(self, streamer, llm):
        llm.stream.return_value = chunks("No citations here.")
        result = streamer.answer("q")
        assert [s['url'] for s in result['sources']] == ["https://x.com/1", "https://x.com/2"]

    def test_out_of_range_citation_ignored(self, streamer, llm):
        llm.stream.return_value = chunks("See [2] and [9].")
        result = streamer.answer("q")
        assert result['sources'] == [{'title': 'Article 2', 'url': 'https://x.com/2'}]
