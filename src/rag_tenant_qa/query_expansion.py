"""
Query expansion for retrieval.

- HyDE: generate a short hypothetical passage that answers the question and
  embed it instead of the raw question.
- Keyword extraction: turn the question into search terms for keyword search,
  with a deterministic fallback when the model is unavailable.

Both degrade silently to the raw question; neither failure aborts a request.
"""

import logging
import re
from typing import List, Optional

from rag_tenant_qa.completion import CompletionOptions, CompletionProvider, TokenUsage
from rag_tenant_qa.config import HYDE_SYSTEM_PROMPT, KEYWORD_SYSTEM_PROMPT, QueryExpansionConfig

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "as", "is", "was", "are", "were", "be", "been", "what",
    "which", "who", "whom", "how", "why", "when", "where", "does", "did", "do",
    "can", "could", "would", "should", "will", "this", "that", "these", "those",
    "our", "their", "its", "your", "you", "about", "tell", "me", "please",
    "explain", "summarize", "give", "there", "has", "have", "had", "into",
})

_NON_WORD = re.compile(r"[^\w\s]")


def extract_basic_keywords(question: str) -> List[str]:
    """
    Deterministic keyword extraction.

    Lowercases, strips punctuation, drops stop words and tokens of two
    characters or fewer, and keeps first-occurrence order.
    """
    tokens = _NON_WORD.sub(" ", question.lower()).split()
    seen = set()
    keywords = []
    for token in tokens:
        if len(token) <= 2 or token in STOP_WORDS or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
    return keywords


def clean_keywords(text: str, max_keywords: int = 15) -> List[str]:
    """Normalize model output into unique lowercase alphanumeric keywords."""
    tokens = _NON_WORD.sub(" ", text.lower()).split()
    seen = set()
    keywords = []
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        keywords.append(token)
    return keywords[:max_keywords]


class QueryExpander:
    """Generates hypothetical document passages (HyDE)."""

    def __init__(self,
                 provider: Optional[CompletionProvider],
                 config: Optional[QueryExpansionConfig] = None):
        self.provider = provider
        self.config = config or QueryExpansionConfig()

    async def expand(self,
                     question: str,
                     usage: Optional[TokenUsage] = None,
                     enabled: bool = True) -> str:
        """
        Return a hypothetical passage answering the question.

        Falls back to the question itself when disabled, when no provider is
        configured, on any provider error, or on empty output.
        """
        if not enabled or self.provider is None:
            return question

        messages = [
            {"role": "system", "content": HYDE_SYSTEM_PROMPT},
            {"role": "user", "content": question},
        ]
        options = CompletionOptions(
            max_tokens=self.config.hyde_max_tokens,
            temperature=self.config.hyde_temperature,
            model=self.config.model,
        )

        try:
            result = await self.provider.complete(messages, options)
        except Exception as e:
            logger.warning(f"HyDE generation failed, using original question: {e}")
            return question

        if usage is not None:
            usage.add_completion(result.usage)

        hypothetical = result.text.strip()
        if not hypothetical:
            return question

        logger.debug(f"Generated hypothetical passage ({len(hypothetical)} chars)")
        return hypothetical


class KeywordExtractor:
    """Extracts search keywords for the keyword branch of hybrid search."""

    def __init__(self,
                 provider: Optional[CompletionProvider],
                 config: Optional[QueryExpansionConfig] = None):
        self.provider = provider
        self.config = config or QueryExpansionConfig()

    async def extract(self,
                      question: str,
                      usage: Optional[TokenUsage] = None,
                      enabled: bool = True) -> List[str]:
        if not enabled or self.provider is None:
            return extract_basic_keywords(question)

        messages = [
            {"role": "system", "content": KEYWORD_SYSTEM_PROMPT},
            {"role": "user", "content": question},
        ]
        options = CompletionOptions(
            max_tokens=self.config.keyword_max_tokens,
            temperature=self.config.keyword_temperature,
            model=self.config.model,
        )

        try:
            result = await self.provider.complete(messages, options)
        except Exception as e:
            logger.warning(f"Keyword extraction failed, using basic extraction: {e}")
            return extract_basic_keywords(question)

        if usage is not None:
            usage.add_completion(result.usage)

        keywords = clean_keywords(result.text, self.config.max_keywords)
        if not keywords:
            return extract_basic_keywords(question)

        logger.debug(f"Extracted keywords: {' '.join(keywords)}")
        return keywords
