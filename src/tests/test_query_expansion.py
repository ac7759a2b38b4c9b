"""
Unit tests for HyDE expansion and keyword extraction.
"""

import pytest

from rag_tenant_qa.completion import TokenUsage
from rag_tenant_qa.errors import ProviderError
from rag_tenant_qa.query_expansion import (
    KeywordExtractor,
    QueryExpander,
    clean_keywords,
    extract_basic_keywords,
)

from fakes import FakeCompletionProvider


class TestBasicKeywords:

    def test_drops_stop_words_and_short_tokens(self):
        keywords = extract_basic_keywords("What was the total revenue in Q3 of 2024?")

        assert keywords == ["total", "revenue", "2024"]

    def test_deduplicates_in_order(self):
        assert extract_basic_keywords("revenue growth, revenue margin") == ["revenue", "growth", "margin"]

    def test_clean_keywords(self):
        assert clean_keywords("Revenue, Q3; revenue\nsales!", 10) == ["revenue", "q3", "sales"]

    def test_clean_keywords_limit(self):
        assert clean_keywords("a b c d e", 3) == ["a", "b", "c"]


class TestQueryExpander:
    """Test HyDE expansion and its fallbacks."""

    @pytest.mark.asyncio
    async def test_returns_hypothetical_passage(self):
        provider = FakeCompletionProvider({"hyde": "  Revenue was 150 million.  "})
        usage = TokenUsage()

        expanded = await QueryExpander(provider).expand("What was revenue?", usage)

        assert expanded == "Revenue was 150 million."
        assert usage.completion == 10

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        provider = FakeCompletionProvider({"hyde": ProviderError("timeout", provider="fake")})

        assert await QueryExpander(provider).expand("What was revenue?") == "What was revenue?"

    @pytest.mark.asyncio
    async def test_empty_output_falls_back(self):
        provider = FakeCompletionProvider({"hyde": "   "})

        assert await QueryExpander(provider).expand("What was revenue?") == "What was revenue?"

    @pytest.mark.asyncio
    async def test_disabled_makes_no_call(self):
        provider = FakeCompletionProvider()

        result = await QueryExpander(provider).expand("What was revenue?", enabled=False)

        assert result == "What was revenue?"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_without_provider(self):
        assert await QueryExpander(None).expand("question") == "question"


class TestKeywordExtractor:
    """Test model keyword extraction and its fallbacks."""

    @pytest.mark.asyncio
    async def test_uses_model_keywords(self):
        provider = FakeCompletionProvider({"keywords": "revenue q3 2024 sales"})

        keywords = await KeywordExtractor(provider).extract("How much did we sell in Q3?")

        assert keywords == ["revenue", "q3", "2024", "sales"]

    @pytest.mark.asyncio
    async def test_failure_uses_basic_extraction(self):
        provider = FakeCompletionProvider({"keywords": RuntimeError("boom")})

        keywords = await KeywordExtractor(provider).extract("quarterly revenue growth")

        assert keywords == ["quarterly", "revenue", "growth"]

    @pytest.mark.asyncio
    async def test_empty_output_uses_basic_extraction(self):
        provider = FakeCompletionProvider({"keywords": " ,, "})

        keywords = await KeywordExtractor(provider).extract("quarterly revenue growth")

        assert keywords == ["quarterly", "revenue", "growth"]

    @pytest.mark.asyncio
    async def test_disabled_makes_no_call(self):
        provider = FakeCompletionProvider({"keywords": "ignored"})

        keywords = await KeywordExtractor(provider).extract("quarterly revenue", enabled=False)

        assert keywords == ["quarterly", "revenue"]
        assert provider.calls == []
